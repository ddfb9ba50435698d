from __future__ import annotations

import logging
from typing import Any, Mapping

from core.db import session_scope
from core.refs import Persisted, parse_ref
from services import chat, mcp_client, mcp_servers, tasks
from services.errors import InvalidState, NotFound, ServiceError, Unavailable
from web.panels.dispatcher import EventContext, Outcome
from web.panels.forms import parse_bool, parse_int
from web.panels.panel import Panel
from web.panels.payloads import chat_message_payload, conversation_payload, model_payload
from web.panels.router import LoadContext, TabSpec
from web.panels.state import Notice
from web.panels.studio import cancel_delete, confirm_delete, confirmed_delete

logger = logging.getLogger(__name__)

# Tool picker state travels in the tab params so it survives navigation.
TOOL_PARAMS = ("picker", "servers", "auto_confirm")


def _selected_servers(params: Mapping[str, Any]) -> list[str]:
    raw = str(params.get("servers") or "")
    return [key for key in (part.strip() for part in raw.split(",")) if key]


def _tool_params(params: Mapping[str, Any], **changes: Any) -> dict[str, Any]:
    kept = {key: params[key] for key in TOOL_PARAMS if params.get(key)}
    kept.update(changes)
    return {key: value for key, value in kept.items() if value}


def _load_tools(ctx: LoadContext) -> dict[str, Any]:
    selected = _selected_servers(ctx.params)
    picker_open = parse_bool(ctx.param("picker"))
    servers = []
    for entry in mcp_servers.server_catalog(ctx.session, ctx.user_id, active_only=True):
        item = {**entry.to_payload(), "selected": entry.ref.key in selected}
        if picker_open:
            item.update(_server_tools(ctx, entry))
        servers.append(item)
    return {
        "picker_open": picker_open,
        "auto_confirm": parse_bool(ctx.param("auto_confirm")),
        "selected": selected,
        "servers": servers,
    }


def _server_tools(ctx: LoadContext, entry: mcp_servers.ToolServerEntry) -> dict[str, Any]:
    if entry.builtin:
        return {"tools": [], "error": None}
    try:
        server = mcp_servers.get_server(ctx.session, entry.ref.id, ctx.user_id)
        tools = mcp_client.list_tools(server)
    except (NotFound, mcp_client.MCPClientError) as exc:
        logger.info("Tool listing for %s failed: %s", entry.ref.key, exc)
        return {"tools": [], "error": "Could not list tools"}
    return {"tools": [tool.to_payload() for tool in tools], "error": None}


def _load_conversations(ctx: LoadContext) -> dict[str, Any]:
    return {
        "conversations": [
            conversation_payload(item)
            for item in chat.list_conversations(ctx.session, ctx.user_id)
        ],
        "models": [model_payload(model) for model in chat.chat_models(ctx.session, ctx.user_id)],
        "tools": _load_tools(ctx),
    }


def _load_conversation(ctx: LoadContext) -> dict[str, Any]:
    raw = ctx.param("id")
    conversation_id = parse_int(raw)
    if conversation_id is None:
        raise NotFound("Conversation", raw)
    conversation = chat.get_conversation(ctx.session, conversation_id, ctx.user_id)
    messages = chat.list_messages(ctx.session, conversation.id)
    pending = chat.pending_tool_calls(ctx.session, conversation.id)
    return {
        "conversation": conversation_payload(conversation),
        "messages": [chat_message_payload(message) for message in messages],
        "streaming": chat.streaming_message(ctx.session, conversation.id) is not None,
        "pending_tool_calls": [call.tool_use_id for call in pending],
        "conversations": [
            conversation_payload(item)
            for item in chat.list_conversations(ctx.session, ctx.user_id)
        ],
        "tools": _load_tools(ctx),
    }


def _conversation_id(ctx: EventContext) -> int | None:
    if ctx.view.tab != "conversation":
        return None
    return parse_int(ctx.view.params.get("id"))


def _enqueue(ctx: EventContext, reply_id: int) -> None:
    tasks.enqueue_reply(
        ctx.session,
        reply_id,
        ctx.user_id,
        server_keys=_selected_servers(ctx.view.params),
        auto_confirm=parse_bool(ctx.view.params.get("auto_confirm")),
    )


def new_conversation(ctx: EventContext) -> Outcome:
    return ctx.navigate("conversations", **_tool_params(ctx.view.params))


def select_conversation(ctx: EventContext) -> Outcome:
    conversation_id = parse_int(ctx.param("id"))
    if conversation_id is None:
        return ctx.unchanged()
    return ctx.navigate("conversation", id=conversation_id, **_tool_params(ctx.view.params))


def send_message(ctx: EventContext) -> Outcome:
    content = str(ctx.param("content") or "").strip()
    if not content:
        return ctx.unchanged()
    conversation_id = _conversation_id(ctx)
    try:
        # Committed before the task is enqueued so the worker can read it.
        with session_scope() as session:
            if conversation_id is None:
                conversation_id = chat.create_conversation(
                    session,
                    {
                        "title": chat.truncate_title(content),
                        "llm_model_id": parse_int(ctx.param("llm_model_id")),
                        "user_id": ctx.user_id,
                    },
                ).id
            chat.send_message(session, conversation_id, ctx.user_id, content)
            conversation = chat.get_conversation(session, conversation_id, ctx.user_id)
            reply_id = chat.start_reply(session, conversation).id
    except InvalidState as exc:
        return ctx.update(ctx.view, Notice.error(str(exc)))
    except ServiceError as exc:
        logger.info("Message from user %s was not sent: %s", ctx.user_id, exc)
        return ctx.update(ctx.view, Notice.error("Failed to send message"))
    notice = None
    try:
        _enqueue(ctx, reply_id)
    except ServiceError as exc:
        logger.info("Reply %s was not enqueued: %s", reply_id, exc)
        notice = Notice.error("Failed to send message")
    return ctx.navigate(
        "conversation", notice, id=conversation_id, **_tool_params(ctx.view.params)
    )


def cancel_stream(ctx: EventContext) -> Outcome:
    conversation_id = _conversation_id(ctx)
    if conversation_id is None:
        return ctx.unchanged()
    try:
        tasks.cancel_reply(ctx.session, conversation_id, ctx.user_id)
    except InvalidState:
        return ctx.update(ctx.view, Notice.error("No response is being generated"))
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Could not cancel response"))
    return ctx.reload(Notice.info("Response cancelled"))


def retry_message(ctx: EventContext) -> Outcome:
    conversation_id = _conversation_id(ctx)
    if conversation_id is None:
        return ctx.unchanged()
    try:
        with session_scope() as session:
            reply_id = chat.retry_reply(session, conversation_id, ctx.user_id).id
    except InvalidState as exc:
        return ctx.update(ctx.view, Notice.error(str(exc)))
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Could not retry"))
    try:
        _enqueue(ctx, reply_id)
    except ServiceError:
        return ctx.reload(Notice.error("Could not retry"))
    return ctx.reload()


def _decide(ctx: EventContext, *, approved: bool) -> Outcome:
    conversation_id = _conversation_id(ctx)
    tool_use_id = str(ctx.param("tool_use_id") or "").strip()
    if conversation_id is None or not tool_use_id:
        return ctx.unchanged()
    reply_id = None
    try:
        with session_scope() as session:
            _, all_decided = chat.decide_tool_call(
                session, conversation_id, ctx.user_id, tool_use_id, approved=approved
            )
            if all_decided:
                conversation = chat.get_conversation(session, conversation_id, ctx.user_id)
                reply_id = chat.start_reply(session, conversation).id
    except InvalidState as exc:
        return ctx.update(ctx.view, Notice.error(str(exc)))
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Could not record decision"))
    if reply_id is not None:
        try:
            _enqueue(ctx, reply_id)
        except Unavailable:
            return ctx.reload(Notice.error("Could not continue the conversation"))
    return ctx.reload()


def approve_tool_call(ctx: EventContext) -> Outcome:
    return _decide(ctx, approved=True)


def reject_tool_call(ctx: EventContext) -> Outcome:
    return _decide(ctx, approved=False)


def toggle_tool_picker(ctx: EventContext) -> Outcome:
    opened = "" if parse_bool(ctx.view.params.get("picker")) else "1"
    return ctx.reload(picker=opened)


def toggle_server(ctx: EventContext) -> Outcome:
    try:
        ref = parse_ref(ctx.param("id"))
    except ValueError:
        return ctx.unchanged()
    selected = _selected_servers(ctx.view.params)
    if ref.key in selected:
        selected.remove(ref.key)
    else:
        if isinstance(ref, Persisted):
            try:
                mcp_servers.get_server(ctx.session, ref.id, ctx.user_id)
            except NotFound:
                return ctx.update(ctx.view, Notice.error("Server not found"))
        selected.append(ref.key)
    return ctx.reload(servers=",".join(selected))


def toggle_auto_confirm(ctx: EventContext) -> Outcome:
    enabled = "" if parse_bool(ctx.view.params.get("auto_confirm")) else "1"
    return ctx.reload(auto_confirm=enabled)


def clear_tools(ctx: EventContext) -> Outcome:
    return ctx.reload(servers="", auto_confirm="")


def refresh_tools(ctx: EventContext) -> Outcome:
    return ctx.reload()


CHAT_TABS = [
    TabSpec("conversations", _load_conversations),
    TabSpec("conversation", _load_conversation, fallback="conversations"),
]

CHAT_HANDLERS = {
    "new_conversation": new_conversation,
    "select_conversation": select_conversation,
    "send_message": send_message,
    "confirm_delete_conversation": confirm_delete("conversation"),
    "cancel_delete_conversation": cancel_delete("conversation"),
    "delete_conversation": confirmed_delete(
        "conversation",
        chat.archive_conversation,
        "conversations",
        deleted="Conversation deleted",
        failed="Failed to delete conversation",
    ),
    "cancel_stream": cancel_stream,
    "retry_message": retry_message,
    "approve_tool_call": approve_tool_call,
    "reject_tool_call": reject_tool_call,
    "toggle_tool_picker": toggle_tool_picker,
    "toggle_server": toggle_server,
    "toggle_auto_confirm": toggle_auto_confirm,
    "clear_tools": clear_tools,
    "refresh_tools": refresh_tools,
}

panel = Panel.build("chat", CHAT_TABS, CHAT_HANDLERS, default_tab="conversations")
