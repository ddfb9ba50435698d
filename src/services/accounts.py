from __future__ import annotations

import logging
import secrets
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from core.config import Config
from core.db import utcnow
from core.models import (
    ACCENT_COLORS,
    USER_ROLES,
    USER_ROLE_ADMIN,
    USER_ROLE_USER,
    Invitation,
    User,
)
from services.errors import Conflict, InvalidState, NotFound, ValidationFailed, Validator

logger = logging.getLogger(__name__)

INVITATION_TTL = timedelta(days=7)


def _normalize_email(email: str | None) -> str:
    return str(email or "").strip().lower()


def _check_password_length(field: str, password: str | None) -> None:
    if len(password or "") < Config.MIN_PASSWORD_LENGTH:
        raise ValidationFailed(
            {field: [f"should be at least {Config.MIN_PASSWORD_LENGTH} character(s)"]}
        )


def list_users(session: Session) -> list[User]:
    return list(session.execute(select(User).order_by(User.email)).scalars())


def get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFound("User", user_id)
    return user


def get_user_by_email(session: Session, email: str) -> User | None:
    normalized = _normalize_email(email)
    if not normalized:
        return None
    return session.execute(
        select(User).where(func.lower(User.email) == normalized)
    ).scalar_one_or_none()


def create_user(
    session: Session,
    *,
    email: str,
    password: str,
    name: str | None = None,
    role: str = USER_ROLE_USER,
) -> User:
    validator = Validator()
    normalized = _normalize_email(email)
    validator.required("email", normalized)
    if normalized and "@" not in normalized:
        validator.add("email", "must have the @ sign and no spaces")
    validator.inclusion("role", role, USER_ROLES)
    if len(password or "") < Config.MIN_PASSWORD_LENGTH:
        validator.add(
            "password",
            f"should be at least {Config.MIN_PASSWORD_LENGTH} character(s)",
        )
    if normalized and get_user_by_email(session, normalized) is not None:
        validator.add("email", "has already been taken")
    validator.check()
    user = User.create(
        session,
        email=normalized,
        name=(name or "").strip() or None,
        password_hash=generate_password_hash(password),
        role=role,
    )
    logger.info("Created user %s role=%s", user.id, role)
    return user


def authenticate(session: Session, email: str, password: str) -> User | None:
    user = get_user_by_email(session, email)
    if user is None or not user.password_hash:
        return None
    if not check_password_hash(user.password_hash, password or ""):
        return None
    return user


def update_role(session: Session, user_id: int, role: str) -> User:
    if role not in USER_ROLES:
        raise ValidationFailed({"role": ["is invalid"]})
    user = get_user(session, user_id)
    user.role = role
    session.flush()
    logger.info("Set role for user %s to %s", user_id, role)
    return user


def promote(session: Session, user_id: int) -> User:
    return update_role(session, user_id, USER_ROLE_ADMIN)


def demote(session: Session, user_id: int) -> User:
    return update_role(session, user_id, USER_ROLE_USER)


def set_temporary_password(session: Session, user_id: int, password: str) -> User:
    _check_password_length("password", password)
    user = get_user(session, user_id)
    user.password_hash = generate_password_hash(password)
    user.force_password_change = True
    session.flush()
    logger.info("Temporary password set for user %s", user_id)
    return user


def change_password(
    session: Session, user_id: int, current_password: str, new_password: str
) -> User:
    user = get_user(session, user_id)
    if not user.password_hash or not check_password_hash(
        user.password_hash, current_password or ""
    ):
        raise InvalidState("invalid_current_password", "Current password is incorrect")
    _check_password_length("new_password", new_password)
    user.password_hash = generate_password_hash(new_password)
    user.force_password_change = False
    session.flush()
    return user


def set_accent_color(session: Session, user_id: int, color: str) -> User:
    if color not in ACCENT_COLORS:
        raise ValidationFailed({"accent_color": ["is invalid"]})
    user = get_user(session, user_id)
    user.accent_color = color
    session.flush()
    return user


def list_invitations(session: Session) -> list[Invitation]:
    return list(
        session.execute(
            select(Invitation).order_by(Invitation.created_at.desc(), Invitation.id.desc())
        ).scalars()
    )


def create_invitation(session: Session, email: str, created_by_id: int) -> Invitation:
    normalized = _normalize_email(email)
    validator = Validator()
    validator.required("email", normalized)
    if normalized and "@" not in normalized:
        validator.add("email", "must have the @ sign and no spaces")
    validator.check()
    invitation = Invitation.create(
        session,
        email=normalized,
        token=secrets.token_urlsafe(24),
        created_by_id=created_by_id,
        expires_at=utcnow() + INVITATION_TTL,
    )
    logger.info("Created invitation %s for %s", invitation.id, normalized)
    return invitation


def revoke_invitation(session: Session, invitation_id: int) -> None:
    invitation = session.get(Invitation, invitation_id)
    if invitation is None:
        raise NotFound("Invitation", invitation_id)
    if invitation.used_at is not None:
        raise Conflict("already_used", "Cannot revoke a used invitation")
    session.delete(invitation)
    session.flush()
    logger.info("Revoked invitation %s", invitation_id)
