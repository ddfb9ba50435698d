from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from core.config import Config

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "studioctl", "version": "1"}
SESSION_HEADER = "Mcp-Session-Id"


class MCPClientError(RuntimeError):
    pass


@dataclass(frozen=True)
class MCPTool:
    name: str
    description: str | None = None
    input_schema: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": dict(self.input_schema),
        }


@dataclass(frozen=True)
class ToolOutput:
    text: str
    is_error: bool = False


def _extract_sse_json(lines: Iterable[str], request_id: int) -> dict[str, Any] | None:
    for line in lines:
        if not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if not payload:
            continue
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and data.get("id") == request_id:
            return data
    return None


class MCPSession:
    """One JSON-RPC session against a streamable-HTTP MCP endpoint.

    Responses may come back as plain JSON or as an SSE stream; both are read.
    """

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        headers: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout if timeout is not None else Config.MCP_REQUEST_TIMEOUT_SECONDS
        self.headers = {
            "Accept": "application/json, text/event-stream",
            "Content-Type": "application/json",
        }
        for key, value in (headers or {}).items():
            if value is not None:
                self.headers[str(key)] = str(value)
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        self.session_id: str | None = None
        self._ids = itertools.count(1)

    def _post(self, payload: dict[str, Any]) -> tuple[dict[str, str], str, str]:
        headers = dict(self.headers)
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        request_obj = Request(
            self.url,
            data=json.dumps(payload).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urlopen(request_obj, timeout=self.timeout) as response:
                header_map = {key: value for key, value in response.headers.items()}
                body = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            logger.warning("MCP %s failed url=%s status=%s", payload.get("method"), self.url, exc.code)
            raise MCPClientError(f"MCP server returned HTTP {exc.code}") from exc
        except URLError as exc:
            logger.warning("MCP server unreachable url=%s: %s", self.url, exc)
            raise MCPClientError(str(exc.reason)) from exc
        content_type = ""
        for key, value in header_map.items():
            if key.lower() == "content-type":
                content_type = value.lower()
            elif key.lower() == SESSION_HEADER.lower() and value.strip():
                self.session_id = value.strip()
        return header_map, content_type, body

    def request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        request_id = next(self._ids)
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params
        _, content_type, body = self._post(payload)
        if "text/event-stream" in content_type:
            data = _extract_sse_json(body.splitlines(), request_id)
        else:
            try:
                data = json.loads(body) if body.strip() else None
            except json.JSONDecodeError as exc:
                raise MCPClientError(f"Invalid JSON from MCP {method}") from exc
        if not isinstance(data, dict):
            raise MCPClientError(f"No response to MCP {method}")
        if isinstance(data.get("error"), dict):
            raise MCPClientError(str(data["error"].get("message") or "MCP error"))
        result = data.get("result")
        return result if isinstance(result, dict) else {}

    def notify(self, method: str) -> None:
        self._post({"jsonrpc": "2.0", "method": method})

    def initialize(self) -> dict[str, Any]:
        result = self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "clientInfo": CLIENT_INFO,
                "capabilities": {},
            },
        )
        self.notify("notifications/initialized")
        return result


def open_session(server: Any, *, timeout: float | None = None) -> MCPSession:
    session = MCPSession(
        server.url,
        api_key=getattr(server, "api_key", None),
        headers=getattr(server, "headers", None),
        timeout=timeout,
    )
    session.initialize()
    return session


def _parse_tool(item: Any) -> MCPTool | None:
    if not isinstance(item, dict) or not str(item.get("name") or "").strip():
        return None
    schema = item.get("inputSchema")
    return MCPTool(
        name=str(item["name"]).strip(),
        description=str(item.get("description") or "") or None,
        input_schema=schema if isinstance(schema, dict) else {},
    )


def list_tools(server: Any, *, timeout: float | None = None) -> list[MCPTool]:
    """``tools/list`` against a persisted server, following pagination cursors."""
    session = open_session(server, timeout=timeout)
    tools: list[MCPTool] = []
    cursor: str | None = None
    while True:
        result = session.request("tools/list", {"cursor": cursor} if cursor else None)
        for item in result.get("tools") or []:
            tool = _parse_tool(item)
            if tool is not None:
                tools.append(tool)
        cursor = result.get("nextCursor")
        if not cursor:
            break
    logger.debug("MCP server %s lists %s tool(s)", server.url, len(tools))
    return tools


def _content_text(result: dict[str, Any]) -> str:
    parts = []
    for item in result.get("content") or []:
        if isinstance(item, dict) and item.get("type") == "text":
            parts.append(str(item.get("text") or ""))
        elif isinstance(item, dict):
            parts.append(json.dumps(item, sort_keys=True))
    if not parts and result.get("structuredContent") is not None:
        parts.append(json.dumps(result["structuredContent"], sort_keys=True))
    return "\n".join(parts)


def call_tool(
    server: Any,
    name: str,
    arguments: dict[str, Any] | None = None,
    *,
    timeout: float | None = None,
) -> ToolOutput:
    session = open_session(server, timeout=timeout)
    result = session.request("tools/call", {"name": name, "arguments": arguments or {}})
    return ToolOutput(text=_content_text(result), is_error=bool(result.get("isError")))
