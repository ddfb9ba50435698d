from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from services.errors import ValidationFailed

INVALID_JSON_MESSAGE = "Invalid JSON in config field"
NOT_AN_OBJECT_MESSAGE = "Config must be a JSON object, not an array or scalar"
TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigParseError(ValueError):
    pass


def parse_json_config(raw: Any) -> dict[str, Any]:
    """Decode a free-text JSON config field; blank input means an empty object."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    text = str(raw)
    if not text.strip():
        return {}
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        raise ConfigParseError(INVALID_JSON_MESSAGE) from None
    if not isinstance(decoded, dict):
        raise ConfigParseError(NOT_AN_OBJECT_MESSAGE)
    return decoded


def encode_json_config(config: Mapping[str, Any] | None) -> str:
    if not config:
        return ""
    return json.dumps(dict(config))


def parse_decimal(raw: Any) -> Decimal | None:
    """Lenient fixed-point parse; anything not wholly numeric becomes None."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    text = str(raw).strip()
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def parse_int(raw: Any, default: int | None = None) -> int | None:
    if isinstance(raw, bool):
        return default
    if isinstance(raw, int):
        return raw
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return default


def parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in TRUE_VALUES


def clean_text(raw: Any) -> str | None:
    text = str(raw or "").strip()
    return text or None


def encode_opinions(opinions: Mapping[str, Any] | None) -> str:
    if not opinions:
        return ""
    return "\n".join(f"{key}: {value}" for key, value in opinions.items())


def decode_opinions(raw: Any) -> dict[str, str]:
    if isinstance(raw, dict):
        return {str(key): str(value) for key, value in raw.items()}
    opinions: dict[str, str] = {}
    for line in str(raw or "").splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        opinions[key.strip()] = value.strip()
    return opinions


def string_form(params: Mapping[str, Any], fields: tuple[str, ...]) -> dict[str, str]:
    """Submitted values for ``fields`` as strings, for echoing a form back."""
    form: dict[str, str] = {}
    for name in fields:
        value = params.get(name)
        form[name] = "" if value is None else str(value)
    return form


def format_errors(exc: ValidationFailed) -> str:
    return exc.format()
