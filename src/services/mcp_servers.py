from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from core.builtins import BUILTIN_SERVERS, BuiltinServer, find_builtin_server
from core.models import (
    ENTITY_STATUS_ACTIVE,
    ENTITY_STATUS_INACTIVE,
    ENTITY_STATUSES,
    AgentTool,
    MCPServer,
)
from core.refs import Builtin, Persisted, ResourceRef
from services.errors import Forbidden, NotFound, Validator

logger = logging.getLogger(__name__)

SERVER_FIELDS = (
    "name",
    "url",
    "description",
    "api_key",
    "headers",
    "status",
    "global_server",
)
URL_SCHEMES = ("http://", "https://")


@dataclass(frozen=True)
class ToolServerEntry:
    """One assignable tool server, built-in or persisted."""

    ref: ResourceRef
    name: str
    description: str | None = None

    @property
    def builtin(self) -> bool:
        return isinstance(self.ref, Builtin)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.ref.key,
            "name": self.name,
            "description": self.description,
            "builtin": self.builtin,
        }


def list_servers(session: Session, user_id: int) -> list[MCPServer]:
    return list(
        session.execute(
            select(MCPServer)
            .where(or_(MCPServer.user_id == user_id, MCPServer.global_server.is_(True)))
            .order_by(MCPServer.name)
        ).scalars()
    )


def get_server(session: Session, server_id: int, user_id: int) -> MCPServer:
    server = session.get(MCPServer, server_id)
    if server is None or (server.user_id != user_id and not server.global_server):
        raise NotFound("Server", server_id)
    return server


def _validate(values: dict[str, Any]) -> None:
    validator = Validator()
    validator.required("name", values.get("name"))
    validator.required("url", values.get("url"))
    url = str(values.get("url") or "").strip()
    if url and not url.startswith(URL_SCHEMES):
        validator.add("url", "must start with http:// or https://")
    validator.inclusion("status", values.get("status"), ENTITY_STATUSES)
    if not isinstance(values.get("headers"), dict):
        validator.add("headers", "must be a map")
    validator.check()


def _owned(server: MCPServer, user_id: int) -> MCPServer:
    if server.user_id != user_id:
        raise Forbidden("server")
    return server


def create_server(session: Session, attrs: dict[str, Any]) -> MCPServer:
    values = {key: attrs[key] for key in SERVER_FIELDS if key in attrs}
    values.setdefault("status", ENTITY_STATUS_ACTIVE)
    values.setdefault("headers", {})
    _validate(values)
    server = MCPServer.create(
        session,
        name=str(values["name"]).strip(),
        url=str(values["url"]).strip(),
        description=values.get("description") or None,
        api_key=values.get("api_key") or None,
        headers=values["headers"],
        status=values["status"],
        global_server=bool(values.get("global_server", False)),
        user_id=attrs["user_id"],
    )
    logger.info("Created MCP server %s", server.id)
    return server


def update_server(
    session: Session, server_id: int, user_id: int, attrs: dict[str, Any]
) -> MCPServer:
    server = _owned(get_server(session, server_id, user_id), user_id)
    values = {key: attrs[key] for key in SERVER_FIELDS if key in attrs}
    # A blank key keeps the stored one.
    if not values.get("api_key"):
        values.pop("api_key", None)
    merged = {
        "name": server.name,
        "url": server.url,
        "status": server.status,
        "headers": server.headers or {},
        **values,
    }
    _validate(merged)
    for key, value in values.items():
        setattr(server, key, value)
    server.name = str(server.name).strip()
    server.url = str(server.url).strip()
    server.description = server.description or None
    server.global_server = bool(server.global_server)
    session.flush()
    logger.info("Updated MCP server %s", server.id)
    return server


def delete_server(session: Session, server_id: int, user_id: int) -> None:
    server = _owned(get_server(session, server_id, user_id), user_id)
    session.execute(AgentTool.__table__.delete().where(AgentTool.mcp_server_id == server.id))
    session.delete(server)
    session.flush()
    logger.info("Deleted MCP server %s", server_id)


def toggle_status(session: Session, server_id: int, user_id: int) -> MCPServer:
    server = _owned(get_server(session, server_id, user_id), user_id)
    server.status = (
        ENTITY_STATUS_INACTIVE if server.status == ENTITY_STATUS_ACTIVE else ENTITY_STATUS_ACTIVE
    )
    session.flush()
    logger.info("MCP server %s is now %s", server.id, server.status)
    return server


def resolve_server(
    session: Session, ref: ResourceRef, user_id: int
) -> BuiltinServer | MCPServer:
    if isinstance(ref, Builtin):
        builtin = find_builtin_server(ref)
        if builtin is None:
            raise NotFound("Server", ref.key)
        return builtin
    return get_server(session, ref.id, user_id)


def server_catalog(
    session: Session, user_id: int, *, active_only: bool = False
) -> list[ToolServerEntry]:
    catalog = [
        ToolServerEntry(ref=server.ref, name=server.name, description=server.description)
        for server in BUILTIN_SERVERS
    ]
    catalog.extend(
        ToolServerEntry(
            ref=Persisted(server.id), name=server.name, description=server.description
        )
        for server in list_servers(session, user_id)
        if not active_only or server.status == ENTITY_STATUS_ACTIVE
    )
    return catalog
