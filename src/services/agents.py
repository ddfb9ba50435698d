from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from core.builtins import find_builtin_server
from core.models import AGENT_STRATEGIES, Agent, AgentTool
from core.refs import Builtin, Persisted, ResourceRef, parse_optional_ref
from services import llm_registry, mcp_servers
from services.errors import Conflict, NotFound, Validator
from services.mcp_servers import ToolServerEntry

logger = logging.getLogger(__name__)

AGENT_FIELDS = (
    "name",
    "description",
    "backstory",
    "opinions",
    "system_prompt",
    "strategy",
    "llm_model_id",
)


def _validate(
    session: Session, values: dict[str, Any], *, user_id: int, exclude_id: int | None
) -> None:
    validator = Validator()
    validator.required("name", values.get("name"))
    validator.inclusion("strategy", values.get("strategy"), AGENT_STRATEGIES)
    if not isinstance(values.get("opinions", {}), dict):
        validator.add("opinions", "must be a map")
    model_id = values.get("llm_model_id")
    if model_id is not None:
        try:
            llm_registry.get_model(session, int(model_id), user_id)
        except (TypeError, ValueError, NotFound):
            validator.add("llm_model_id", "does not exist")
    name = str(values.get("name") or "").strip()
    if name:
        stmt = select(Agent.id).where(Agent.name == name, Agent.user_id == user_id)
        if exclude_id is not None:
            stmt = stmt.where(Agent.id != exclude_id)
        if session.execute(stmt).first():
            validator.add("name", "has already been taken")
    validator.check()


def list_agents(session: Session, user_id: int) -> list[Agent]:
    return list(
        session.execute(
            select(Agent)
            .options(selectinload(Agent.llm_model))
            .where(Agent.user_id == user_id)
            .order_by(Agent.name)
        ).scalars()
    )


def get_agent(session: Session, agent_id: int, user_id: int) -> Agent:
    agent = session.get(Agent, agent_id)
    if agent is None or agent.user_id != user_id:
        raise NotFound("Agent", agent_id)
    return agent


def create_agent(session: Session, attrs: dict[str, Any]) -> Agent:
    values = {key: attrs[key] for key in AGENT_FIELDS if key in attrs}
    values.setdefault("strategy", "react")
    values.setdefault("opinions", {})
    user_id = attrs.get("user_id")
    _validate(session, values, user_id=user_id, exclude_id=None)
    values["name"] = str(values["name"]).strip()
    agent = Agent.create(session, user_id=user_id, config={}, **values)
    logger.info("Created agent %s", agent.id)
    return agent


def update_agent(
    session: Session, agent_id: int, user_id: int, attrs: dict[str, Any]
) -> Agent:
    agent = get_agent(session, agent_id, user_id)
    values = {key: attrs[key] for key in AGENT_FIELDS if key in attrs}
    merged = {"name": agent.name, "strategy": agent.strategy, **values}
    _validate(session, merged, user_id=user_id, exclude_id=agent.id)
    for key, value in values.items():
        setattr(agent, key, value)
    agent.name = str(agent.name).strip()
    session.flush()
    logger.info("Updated agent %s", agent.id)
    return agent


def delete_agent(session: Session, agent_id: int, user_id: int) -> None:
    agent = get_agent(session, agent_id, user_id)
    session.delete(agent)
    session.flush()
    logger.info("Deleted agent %s", agent_id)


def assigned_refs(agent: Agent) -> list[ResourceRef]:
    refs: list[ResourceRef] = [Persisted(tool.mcp_server_id) for tool in agent.tools]
    for raw in agent.builtin_server_ids:
        ref = parse_optional_ref(raw)
        if isinstance(ref, Builtin):
            refs.append(ref)
    return refs


def available_servers(
    agent: Agent, catalog: Iterable[ToolServerEntry]
) -> list[ToolServerEntry]:
    assigned = set(assigned_refs(agent))
    return [entry for entry in catalog if entry.ref not in assigned]


def add_tool(session: Session, agent_id: int, ref: ResourceRef, user_id: int) -> Agent:
    agent = get_agent(session, agent_id, user_id)
    if isinstance(ref, Builtin):
        if find_builtin_server(ref) is None:
            raise NotFound("Server", ref.key)
        existing = agent.builtin_server_ids
        if ref.key not in existing:
            agent.config = {**(agent.config or {}), "builtin_server_ids": [*existing, ref.key]}
    else:
        mcp_servers.get_server(session, ref.id, user_id)
        if any(tool.mcp_server_id == ref.id for tool in agent.tools):
            raise Conflict("already_assigned", "Server already assigned")
        agent.tools.append(AgentTool(mcp_server_id=ref.id))
    session.flush()
    logger.info("Assigned server %s to agent %s", ref.key, agent.id)
    return agent


def remove_tool(
    session: Session, agent_id: int, ref: ResourceRef, user_id: int
) -> Agent:
    agent = get_agent(session, agent_id, user_id)
    if isinstance(ref, Builtin):
        existing = agent.builtin_server_ids
        if ref.key not in existing:
            raise NotFound("Server", ref.key)
        agent.config = {
            **(agent.config or {}),
            "builtin_server_ids": [item for item in existing if item != ref.key],
        }
    else:
        tool = next(
            (item for item in agent.tools if item.mcp_server_id == ref.id), None
        )
        if tool is None:
            raise NotFound("Server", ref.key)
        agent.tools.remove(tool)
    session.flush()
    logger.info("Removed server %s from agent %s", ref.key, agent.id)
    return agent
