from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from core.models import TEAM_AGGREGATION_STRATEGIES, TOPOLOGIES, Agent, Team, TeamMember
from services.agents import get_agent
from services.errors import Conflict, NotFound, Validator

logger = logging.getLogger(__name__)

TEAM_FIELDS = (
    "name",
    "description",
    "shared_context",
    "default_topology",
    "aggregation_strategy",
)


def _validate(
    session: Session, values: dict[str, Any], *, user_id: int, exclude_id: int | None
) -> None:
    validator = Validator()
    validator.required("name", values.get("name"))
    validator.inclusion("default_topology", values.get("default_topology"), TOPOLOGIES)
    validator.inclusion(
        "aggregation_strategy",
        values.get("aggregation_strategy"),
        TEAM_AGGREGATION_STRATEGIES,
    )
    name = str(values.get("name") or "").strip()
    if name:
        stmt = select(Team.id).where(Team.name == name, Team.user_id == user_id)
        if exclude_id is not None:
            stmt = stmt.where(Team.id != exclude_id)
        if session.execute(stmt).first():
            validator.add("name", "has already been taken")
    validator.check()


def list_teams(session: Session, user_id: int) -> list[Team]:
    return list(
        session.execute(
            select(Team)
            .options(selectinload(Team.members).selectinload(TeamMember.agent))
            .where(Team.user_id == user_id)
            .order_by(Team.name)
        ).scalars()
    )


def get_team(session: Session, team_id: int, user_id: int) -> Team:
    team = session.get(Team, team_id)
    if team is None or team.user_id != user_id:
        raise NotFound("Team", team_id)
    return team


def create_team(session: Session, attrs: dict[str, Any]) -> Team:
    values = {key: attrs[key] for key in TEAM_FIELDS if key in attrs}
    values.setdefault("default_topology", "pipeline")
    values.setdefault("aggregation_strategy", "last")
    user_id = attrs.get("user_id")
    _validate(session, values, user_id=user_id, exclude_id=None)
    values["name"] = str(values["name"]).strip()
    team = Team.create(session, user_id=user_id, **values)
    logger.info("Created team %s", team.id)
    return team


def update_team(
    session: Session, team_id: int, user_id: int, attrs: dict[str, Any]
) -> Team:
    team = get_team(session, team_id, user_id)
    values = {key: attrs[key] for key in TEAM_FIELDS if key in attrs}
    merged = {
        "name": team.name,
        "default_topology": team.default_topology,
        "aggregation_strategy": team.aggregation_strategy,
        **values,
    }
    _validate(session, merged, user_id=user_id, exclude_id=team.id)
    for key, value in values.items():
        setattr(team, key, value)
    team.name = str(team.name).strip()
    session.flush()
    logger.info("Updated team %s", team.id)
    return team


def delete_team(session: Session, team_id: int, user_id: int) -> None:
    team = get_team(session, team_id, user_id)
    session.delete(team)
    session.flush()
    logger.info("Deleted team %s", team_id)


def add_member(
    session: Session,
    team_id: int,
    agent_id: int,
    user_id: int,
    *,
    role: str = "worker",
    description: str | None = None,
) -> Team:
    team = get_team(session, team_id, user_id)
    get_agent(session, agent_id, user_id)
    if any(member.agent_id == agent_id for member in team.members):
        raise Conflict("already_member", "Agent already on team")
    position = max((member.position for member in team.members), default=-1) + 1
    team.members.append(
        TeamMember(
            agent_id=agent_id,
            role=(role or "worker").strip() or "worker",
            description=description,
            position=position,
        )
    )
    session.flush()
    logger.info("Added agent %s to team %s", agent_id, team_id)
    return team


def remove_member(session: Session, team_id: int, agent_id: int, user_id: int) -> Team:
    team = get_team(session, team_id, user_id)
    member = next((item for item in team.members if item.agent_id == agent_id), None)
    if member is None:
        raise NotFound("Member", agent_id)
    team.members.remove(member)
    session.flush()
    logger.info("Removed agent %s from team %s", agent_id, team_id)
    return team


def available_agents(team: Team, agents: Iterable[Agent]) -> list[Agent]:
    member_ids = {member.agent_id for member in team.members}
    return [agent for agent in agents if agent.id not in member_ids]
