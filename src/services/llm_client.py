from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from core.config import Config
from core.models import LLMModel

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class LLMClientError(RuntimeError):
    pass


@dataclass(frozen=True)
class ToolRequest:
    """A function call the model asked for."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatResult:
    content: str
    tool_calls: list[ToolRequest] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cached_tokens: int = 0
    raw: dict[str, Any] = field(default_factory=dict)


def _safe_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def _extract_message_content(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, list):
        return "".join(
            str(part.get("text") or "") for part in content if isinstance(part, dict)
        )
    return str(content or "")


def _extract_tool_calls(payload: dict[str, Any]) -> list[ToolRequest]:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return []
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return []
    requests = []
    for index, item in enumerate(message.get("tool_calls") or []):
        function = item.get("function") if isinstance(item, dict) else None
        if not isinstance(function, dict) or not function.get("name"):
            continue
        raw_arguments = function.get("arguments")
        if isinstance(raw_arguments, dict):
            arguments = raw_arguments
        else:
            try:
                arguments = json.loads(raw_arguments or "{}")
            except (TypeError, json.JSONDecodeError):
                arguments = {"_raw": str(raw_arguments)}
            if not isinstance(arguments, dict):
                arguments = {"value": arguments}
        requests.append(
            ToolRequest(
                id=str(item.get("id") or f"call_{index}"),
                name=str(function["name"]),
                arguments=arguments,
            )
        )
    return requests


def _extract_usage(payload: dict[str, Any]) -> dict[str, int]:
    usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
    prompt_details = usage.get("prompt_tokens_details") or {}
    completion_details = usage.get("completion_tokens_details") or {}
    return {
        "input_tokens": _safe_int(usage.get("prompt_tokens")),
        "output_tokens": _safe_int(usage.get("completion_tokens")),
        "cached_tokens": _safe_int(prompt_details.get("cached_tokens")),
        "reasoning_tokens": _safe_int(completion_details.get("reasoning_tokens")),
    }


def chat_completion(
    model: LLMModel,
    messages: list[dict[str, Any]],
    *,
    tools: list[dict[str, Any]] | None = None,
    timeout: float | None = None,
) -> ChatResult:
    """POST an OpenAI-compatible chat completion for ``model``."""
    provider = model.provider
    provider_config = dict(provider.provider_config or {}) if provider else {}
    model_config = dict(model.model_config or {})
    base_url = str(provider_config.get("base_url") or DEFAULT_BASE_URL).rstrip("/")
    endpoint = f"{base_url}/chat/completions"
    payload: dict[str, Any] = {"model": model.model_id, "messages": messages}
    for key in ("temperature", "max_tokens", "top_p"):
        if model_config.get(key) is not None:
            payload[key] = model_config[key]
    if tools:
        payload["tools"] = tools
    headers = {"Content-Type": "application/json"}
    api_key = str((provider.api_key if provider else "") or "").strip()
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    request_obj = Request(
        endpoint,
        data=json.dumps(payload).encode("utf-8"),
        headers=headers,
        method="POST",
    )
    timeout = timeout if timeout is not None else Config.LLM_REQUEST_TIMEOUT_SECONDS
    try:
        with urlopen(request_obj, timeout=timeout) as response:
            body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="replace")
        logger.warning("Chat completion failed model=%s status=%s", model.model_id, exc.code)
        raise LLMClientError(error_body or str(exc)) from exc
    except URLError as exc:
        logger.warning("Chat completion unreachable endpoint=%s: %s", endpoint, exc)
        raise LLMClientError(str(exc)) from exc
    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as exc:
        raise LLMClientError("Invalid JSON from chat completion endpoint") from exc
    if not isinstance(decoded, dict):
        raise LLMClientError("Unexpected chat completion payload")
    return ChatResult(
        content=_extract_message_content(decoded),
        tool_calls=_extract_tool_calls(decoded),
        raw=decoded,
        **_extract_usage(decoded),
    )
