from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from core.models import Group, GroupMembership, User
from services.errors import Conflict, NotFound, Validator

logger = logging.getLogger(__name__)


def list_all_groups(session: Session) -> list[Group]:
    return list(session.execute(select(Group).order_by(Group.name)).scalars())


def get_group(session: Session, group_id: int) -> Group:
    group = session.get(Group, group_id)
    if group is None:
        raise NotFound("Group", group_id)
    return group


def create_group(session: Session, name: str, created_by_id: int) -> Group:
    cleaned = str(name or "").strip()
    validator = Validator()
    validator.required("name", cleaned)
    if cleaned and session.execute(
        select(Group.id).where(Group.name == cleaned)
    ).first():
        validator.add("name", "has already been taken")
    validator.check()
    group = Group.create(session, name=cleaned, created_by_id=created_by_id)
    GroupMembership.create(
        session, group_id=group.id, user_id=created_by_id, role="owner"
    )
    logger.info("Created group %s", group.id)
    return group


def delete_group(session: Session, group_id: int) -> None:
    group = get_group(session, group_id)
    session.delete(group)
    session.flush()
    logger.info("Deleted group %s", group_id)


def list_members(session: Session, group_id: int) -> list[GroupMembership]:
    get_group(session, group_id)
    return list(
        session.execute(
            select(GroupMembership)
            .options(selectinload(GroupMembership.user))
            .where(GroupMembership.group_id == group_id)
            .order_by(GroupMembership.id)
        ).scalars()
    )


def add_member(session: Session, group_id: int, user_id: int) -> GroupMembership:
    get_group(session, group_id)
    if session.get(User, user_id) is None:
        raise NotFound("User", user_id)
    existing = session.execute(
        select(GroupMembership).where(
            GroupMembership.group_id == group_id,
            GroupMembership.user_id == user_id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise Conflict("already_member", "User is already a member")
    return GroupMembership.create(session, group_id=group_id, user_id=user_id)


def remove_member(session: Session, group_id: int, user_id: int) -> None:
    membership = session.execute(
        select(GroupMembership).where(
            GroupMembership.group_id == group_id,
            GroupMembership.user_id == user_id,
        )
    ).scalar_one_or_none()
    if membership is None:
        raise NotFound("Membership", (group_id, user_id))
    session.delete(membership)
    session.flush()
