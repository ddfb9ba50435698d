from __future__ import annotations

from dataclasses import dataclass
from typing import Union

BUILTIN_KEY_PREFIX = "builtin:"
BUILTIN_URL_PREFIX = "builtin-"


@dataclass(frozen=True)
class Builtin:
    """A resource defined in code rather than stored in the database."""

    id: str

    @property
    def key(self) -> str:
        return f"{BUILTIN_KEY_PREFIX}{self.id}"

    @property
    def url_id(self) -> str:
        return f"{BUILTIN_URL_PREFIX}{self.id}"


@dataclass(frozen=True)
class Persisted:
    id: int

    @property
    def key(self) -> str:
        return str(self.id)

    @property
    def url_id(self) -> str:
        return str(self.id)


ResourceRef = Union[Builtin, Persisted]


def parse_ref(raw: object) -> ResourceRef:
    """Turn a wire identifier into a tagged reference.

    Accepts ``builtin:<id>`` (storage form), ``builtin-<id>`` (URL form) and
    positive integers or their string form. Anything else raises ValueError.
    """
    if isinstance(raw, (Builtin, Persisted)):
        return raw
    if isinstance(raw, bool):
        raise ValueError(f"Invalid resource id: {raw!r}")
    if isinstance(raw, int):
        if raw <= 0:
            raise ValueError(f"Invalid resource id: {raw!r}")
        return Persisted(raw)
    text = str(raw or "").strip()
    for prefix in (BUILTIN_KEY_PREFIX, BUILTIN_URL_PREFIX):
        if text.startswith(prefix):
            builtin_id = text[len(prefix) :].strip()
            if not builtin_id:
                raise ValueError(f"Invalid resource id: {raw!r}")
            return Builtin(builtin_id)
    try:
        value = int(text)
    except ValueError:
        raise ValueError(f"Invalid resource id: {raw!r}") from None
    if value <= 0:
        raise ValueError(f"Invalid resource id: {raw!r}")
    return Persisted(value)


def parse_optional_ref(raw: object) -> ResourceRef | None:
    try:
        return parse_ref(raw)
    except ValueError:
        return None
