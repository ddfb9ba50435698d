from __future__ import annotations

import logging
from typing import Any, Mapping

from core.builtins import BUILTIN_SERVERS
from core.refs import Builtin, parse_ref
from services import mcp_client, mcp_servers
from services.errors import Forbidden, NotFound, ServiceError, ValidationFailed
from web.panels.dispatcher import EventContext, Outcome
from web.panels.forms import (
    ConfigParseError,
    clean_text,
    encode_json_config,
    format_errors,
    parse_bool,
    parse_json_config,
    string_form,
)
from web.panels.panel import Panel
from web.panels.payloads import mcp_server_payload
from web.panels.router import LoadContext, TabSpec
from web.panels.state import Existing, New, Notice

logger = logging.getLogger(__name__)

MCP_FORM_FIELDS = ("name", "url", "api_key", "description", "headers", "global")

SERVER_NOT_FOUND = "Server not found"
BUILTIN_LOCKED = "Built-in servers cannot be changed"


def _load_servers(ctx: LoadContext) -> dict[str, Any]:
    return {
        "servers": [
            *(server.to_payload() for server in BUILTIN_SERVERS),
            *(
                mcp_server_payload(server)
                for server in mcp_servers.list_servers(ctx.session, ctx.user_id)
            ),
        ],
        "inspecting": None,
    }


def _server_ref(ctx: EventContext):
    try:
        return parse_ref(ctx.param("id"))
    except ValueError:
        return None


def _mcp_attrs(params: Mapping[str, Any]) -> dict[str, Any]:
    attrs: dict[str, Any] = {
        "name": params.get("name"),
        "url": params.get("url"),
        "description": clean_text(params.get("description")),
        "headers": parse_json_config(params.get("headers")),
        "global_server": parse_bool(params.get("global")),
    }
    if params.get("api_key"):
        attrs["api_key"] = params["api_key"]
    return attrs


def show_add_mcp(ctx: EventContext) -> Outcome:
    return ctx.update(ctx.view.start_editing("mcp", New(), form=string_form({}, MCP_FORM_FIELDS)))


def edit_mcp(ctx: EventContext) -> Outcome:
    ref = _server_ref(ctx)
    if isinstance(ref, Builtin):
        return ctx.update(ctx.view, Notice.error(BUILTIN_LOCKED))
    try:
        if ref is None:
            raise NotFound("Server", ctx.param("id"))
        server = mcp_servers.get_server(ctx.session, ref.id, ctx.user_id)
    except NotFound:
        return ctx.update(ctx.view, Notice.error(SERVER_NOT_FOUND))
    form = {
        "name": server.name,
        "url": server.url,
        "api_key": "",
        "description": server.description or "",
        "headers": encode_json_config(server.headers),
        "global": "true" if server.global_server else "false",
    }
    return ctx.update(ctx.view.start_editing("mcp", Existing(server.id), form=form))


def close_mcp_modal(ctx: EventContext) -> Outcome:
    return ctx.update(ctx.view.stop_editing("mcp"))


def save_mcp(ctx: EventContext) -> Outcome:
    target = ctx.view.editing.get("mcp")
    form = string_form(ctx.params, MCP_FORM_FIELDS)
    form["api_key"] = ""
    try:
        attrs = _mcp_attrs(ctx.params)
        if isinstance(target, Existing):
            mcp_servers.update_server(ctx.session, target.id, ctx.user_id, attrs)
        else:
            mcp_servers.create_server(ctx.session, {**attrs, "user_id": ctx.user_id})
    except ValidationFailed as exc:
        message = format_errors(exc)
    except ConfigParseError as exc:
        message = f"headers: {exc}"
    except ServiceError as exc:
        logger.info("Saving MCP server for user %s failed: %s", ctx.user_id, exc)
        message = "Failed to save server"
    else:
        return ctx.navigate("mcp_servers", Notice.info("Server saved"))
    return ctx.update(ctx.view.keep_form("mcp", form), Notice.error(message))


def _owned_change(ctx: EventContext, action, failure: str):
    ref = _server_ref(ctx)
    if isinstance(ref, Builtin):
        return None, Notice.error(BUILTIN_LOCKED)
    try:
        if ref is None:
            raise NotFound("Server", ctx.param("id"))
        return action(ctx.session, ref.id, ctx.user_id), None
    except NotFound:
        return None, Notice.error(SERVER_NOT_FOUND)
    except Forbidden:
        # Global servers are visible to everyone but only their owner may change them.
        return None, Notice.error(failure)


def delete_mcp(ctx: EventContext) -> Outcome:
    _, notice = _owned_change(ctx, mcp_servers.delete_server, "Failed to delete server")
    if notice is not None:
        return ctx.update(ctx.view, notice)
    return ctx.reload(Notice.info("Server deleted"))


def toggle_mcp_status(ctx: EventContext) -> Outcome:
    server, notice = _owned_change(ctx, mcp_servers.toggle_status, "Failed to update status")
    if notice is not None:
        return ctx.update(ctx.view, notice)
    return ctx.reload(Notice.info(f"Server {server.status}"))


def inspect_tools(ctx: EventContext) -> Outcome:
    ref = _server_ref(ctx)
    try:
        if ref is None:
            raise NotFound("Server", ctx.param("id"))
        server = mcp_servers.resolve_server(ctx.session, ref, ctx.user_id)
    except NotFound:
        return ctx.update(ctx.view, Notice.error(SERVER_NOT_FOUND))
    inspecting: dict[str, Any] = {"id": ref.key, "name": server.name, "tools": [], "error": None}
    if isinstance(ref, Builtin):
        # Built-in servers are assignable but expose no remote tool listing.
        return ctx.update(ctx.view.with_data(inspecting=inspecting))
    try:
        tools = mcp_client.list_tools(server)
    except mcp_client.MCPClientError as exc:
        inspecting["error"] = str(exc)
        return ctx.update(
            ctx.view.with_data(inspecting=inspecting), Notice.error("Could not list tools")
        )
    inspecting["tools"] = [tool.to_payload() for tool in tools]
    return ctx.update(ctx.view.with_data(inspecting=inspecting))


def close_tools_modal(ctx: EventContext) -> Outcome:
    return ctx.update(ctx.view.with_data(inspecting=None))


TOOLS_TABS = [TabSpec("mcp_servers", _load_servers)]

TOOLS_HANDLERS = {
    "show_add_mcp": show_add_mcp,
    "edit_mcp": edit_mcp,
    "close_mcp_modal": close_mcp_modal,
    "save_mcp": save_mcp,
    "delete_mcp": delete_mcp,
    "toggle_mcp_status": toggle_mcp_status,
    "inspect_tools": inspect_tools,
    "close_tools_modal": close_tools_modal,
}

panel = Panel.build("tools", TOOLS_TABS, TOOLS_HANDLERS, default_tab="mcp_servers")
