from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Callable, Iterable

from sqlalchemy.orm import Session

from core.config import Config
from core.db import session_scope, utcnow
from core.models import (
    ENTITY_STATUS_ACTIVE,
    MESSAGE_ROLE_ASSISTANT,
    MESSAGE_ROLE_USER,
    MESSAGE_STATUS_COMPLETE,
    MESSAGE_STATUS_FAILED,
    MESSAGE_STATUS_STREAMING,
    TOOL_CALL_STATUS_APPROVED,
    TOOL_CALL_STATUS_COMPLETED,
    TOOL_CALL_STATUS_FAILED,
    TOOL_CALL_STATUS_PENDING,
    ChatMessage,
    Conversation,
    LLMModel,
    MCPServer,
    ToolCall,
)
from core.refs import Persisted, parse_ref
from services import chat, llm_client, mcp_client, mcp_servers, usage
from services.errors import NotFound
from services.realtime_events import emit_chat_updated

logger = logging.getLogger(__name__)

ChatExecutor = Callable[
    [LLMModel, list[dict[str, Any]], list[dict[str, Any]]], llm_client.ChatResult
]
ToolCaller = Callable[[MCPServer, str, dict[str, Any]], mcp_client.ToolOutput]

_FUNCTION_NAME = re.compile(r"^s(\d+)__(.+)$")


def default_chat_executor(
    model: LLMModel, messages: list[dict[str, Any]], tools: list[dict[str, Any]]
) -> llm_client.ChatResult:
    return llm_client.chat_completion(model, messages, tools=tools or None)


def default_tool_caller(
    server: MCPServer, name: str, arguments: dict[str, Any]
) -> mcp_client.ToolOutput:
    return mcp_client.call_tool(server, name, arguments)


def function_name(server_id: int, tool_name: str) -> str:
    """Model-facing name of a server tool; tool names repeat across servers."""
    return f"s{server_id}__{tool_name}"


def split_function_name(name: str) -> tuple[int, str] | None:
    match = _FUNCTION_NAME.match(name or "")
    if match is None:
        return None
    return int(match.group(1)), match.group(2)


def _tool_specs(
    session: Session, user_id: int, server_keys: Iterable[str]
) -> list[dict[str, Any]]:
    specs: list[dict[str, Any]] = []
    for key in server_keys:
        try:
            ref = parse_ref(key)
        except ValueError:
            continue
        if not isinstance(ref, Persisted):
            continue
        try:
            server = mcp_servers.get_server(session, ref.id, user_id)
        except NotFound:
            logger.info("Selected server %s is gone; skipping", key)
            continue
        if server.status != ENTITY_STATUS_ACTIVE:
            continue
        try:
            tools = mcp_client.list_tools(server)
        except mcp_client.MCPClientError as exc:
            logger.warning("Tools of server %s are unavailable: %s", server.id, exc)
            continue
        for tool in tools:
            specs.append(
                {
                    "type": "function",
                    "function": {
                        "name": function_name(server.id, tool.name),
                        "description": tool.description or "",
                        "parameters": tool.input_schema
                        or {"type": "object", "properties": {}},
                    },
                }
            )
    return specs


def _history(conversation: Conversation, messages: list[ChatMessage]) -> list[dict[str, Any]]:
    history: list[dict[str, Any]] = []
    if conversation.system_prompt:
        history.append({"role": "system", "content": conversation.system_prompt})
    for message in messages:
        if message.role == MESSAGE_ROLE_USER:
            history.append({"role": "user", "content": message.content})
            continue
        if message.role != MESSAGE_ROLE_ASSISTANT or message.status != MESSAGE_STATUS_COMPLETE:
            continue
        entry: dict[str, Any] = {"role": "assistant", "content": message.content or ""}
        if message.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.tool_use_id,
                    "type": "function",
                    "function": {
                        "name": _model_name(call),
                        "arguments": json.dumps(call.arguments or {}, sort_keys=True),
                    },
                }
                for call in message.tool_calls
            ]
        history.append(entry)
        for call in message.tool_calls:
            history.append(
                {"role": "tool", "tool_call_id": call.tool_use_id, "content": call.output or ""}
            )
    return history


def _model_name(call: ToolCall) -> str:
    if call.server_ref:
        try:
            ref = parse_ref(call.server_ref)
        except ValueError:
            return call.tool_name
        if isinstance(ref, Persisted):
            return function_name(ref.id, call.tool_name)
    return call.tool_name


def _run_approved_calls(
    session: Session, conversation_id: int, user_id: int, tool_caller: ToolCaller
) -> None:
    for call in chat.approved_tool_calls(session, conversation_id):
        try:
            if not call.server_ref:
                raise mcp_client.MCPClientError(f"Unknown tool: {call.tool_name}")
            server = mcp_servers.resolve_server(session, parse_ref(call.server_ref), user_id)
            if not isinstance(server, MCPServer):
                raise mcp_client.MCPClientError("Built-in servers expose no remote tools")
            output = tool_caller(server, call.tool_name, dict(call.arguments or {}))
        except Exception as exc:
            logger.warning("Tool call %s failed: %s", call.tool_use_id, exc)
            call.status = TOOL_CALL_STATUS_FAILED
            call.output = f"Tool call failed: {exc}"
        else:
            call.status = (
                TOOL_CALL_STATUS_FAILED if output.is_error else TOOL_CALL_STATUS_COMPLETED
            )
            call.output = output.text
        call.completed_at = utcnow()
    session.flush()


def _fail(message_id: int, error: str) -> str:
    with session_scope() as session:
        message = session.get(ChatMessage, message_id)
        if message is None:
            return MESSAGE_STATUS_FAILED
        if message.status == MESSAGE_STATUS_STREAMING:
            chat.fail_message(message, error)
            session.flush()
            emit_chat_updated(message)
        return message.status


def _record(
    message_id: int,
    user_id: int,
    result: llm_client.ChatResult,
    latency_ms: int,
    *,
    auto_confirm: bool,
) -> tuple[str, int | None]:
    """Store a model reply; returns its status and the follow-up message id, if any."""
    with session_scope() as session:
        message = session.get(ChatMessage, message_id)
        if message is None:
            return MESSAGE_STATUS_FAILED, None
        if message.status != MESSAGE_STATUS_STREAMING:
            logger.info("Reply %s is %s; discarding model output", message_id, message.status)
            return message.status, None
        conversation = message.conversation
        message.content = result.content
        message.input_tokens = result.input_tokens
        message.output_tokens = result.output_tokens
        message.latency_ms = latency_ms
        usage.record_usage(
            session,
            user_id=user_id,
            model=conversation.llm_model,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            reasoning_tokens=result.reasoning_tokens,
            cached_tokens=result.cached_tokens,
        )
        for request in result.tool_calls:
            route = split_function_name(request.name)
            if route is None:
                ToolCall.create(
                    session,
                    message_id=message.id,
                    tool_use_id=request.id,
                    tool_name=request.name,
                    arguments=request.arguments,
                    status=TOOL_CALL_STATUS_FAILED,
                    output=f"Unknown tool: {request.name}",
                    completed_at=utcnow(),
                )
                continue
            ToolCall.create(
                session,
                message_id=message.id,
                tool_use_id=request.id,
                server_ref=Persisted(route[0]).key,
                tool_name=route[1],
                arguments=request.arguments,
                status=TOOL_CALL_STATUS_APPROVED if auto_confirm else TOOL_CALL_STATUS_PENDING,
            )
        message.status = MESSAGE_STATUS_COMPLETE
        message.completed_at = utcnow()
        session.flush()
        follow_up = None
        if message.tool_calls and not chat.pending_tool_calls(session, conversation.id):
            follow_up = chat.start_reply(session, conversation).id
        emit_chat_updated(message)
        logger.info(
            "Reply %s complete tool_calls=%s follow_up=%s",
            message.id,
            len(message.tool_calls),
            follow_up,
        )
        return message.status, follow_up


def _round(
    message_id: int,
    user_id: int,
    server_keys: tuple[str, ...],
    auto_confirm: bool,
    executor: ChatExecutor,
    tool_caller: ToolCaller,
) -> tuple[str, int | None] | None:
    with session_scope() as session:
        message = session.get(ChatMessage, message_id)
        if message is None or message.status != MESSAGE_STATUS_STREAMING:
            logger.info("Reply %s not generated; it is no longer streaming", message_id)
            return None
        conversation = message.conversation
        if conversation.user_id != user_id:
            logger.warning("Reply %s does not belong to user %s", message_id, user_id)
            return None
        _run_approved_calls(session, conversation.id, user_id, tool_caller)

    with session_scope() as session:
        conversation = session.get(ChatMessage, message_id).conversation
        model = conversation.llm_model
        if model is None:
            raise llm_client.LLMClientError("Conversation has no model configured")
        history = _history(conversation, chat.list_messages(session, conversation.id))
        tools = _tool_specs(session, user_id, server_keys)
        started = time.monotonic()
        result = executor(model, history, tools)
        latency_ms = int((time.monotonic() - started) * 1000)

    return _record(message_id, user_id, result, latency_ms, auto_confirm=auto_confirm)


def respond(
    message_id: int,
    user_id: int,
    *,
    server_keys: Iterable[str] = (),
    auto_confirm: bool = False,
    executor: ChatExecutor | None = None,
    tool_caller: ToolCaller | None = None,
) -> str | None:
    """Fill a streaming reply, following tool rounds the user already approved.

    Returns the final message status, or None when the reply was not eligible.
    """
    executor = executor or default_chat_executor
    tool_caller = tool_caller or default_tool_caller
    keys = tuple(server_keys or ())
    current = message_id
    for _ in range(Config.CHAT_MAX_TOOL_ROUNDS):
        try:
            outcome = _round(current, user_id, keys, auto_confirm, executor, tool_caller)
        except Exception as exc:
            logger.exception("Reply %s failed", current)
            return _fail(current, str(exc))
        if outcome is None:
            return None
        status, follow_up = outcome
        if follow_up is None:
            return status
        current = follow_up
    logger.warning(
        "Reply %s stopped after %s tool rounds", message_id, Config.CHAT_MAX_TOOL_ROUNDS
    )
    return _fail(current, "Tool round limit reached")
