from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.models import ServerSettings

logger = logging.getLogger(__name__)


def get_settings(session: Session) -> ServerSettings:
    settings = session.execute(
        select(ServerSettings).order_by(ServerSettings.id).limit(1)
    ).scalar_one_or_none()
    if settings is None:
        settings = ServerSettings.create(session, registration_open=True)
    return settings


def registration_open(session: Session) -> bool:
    return bool(get_settings(session).registration_open)


def toggle_registration(session: Session) -> ServerSettings:
    settings = get_settings(session)
    settings.registration_open = not settings.registration_open
    session.flush()
    logger.info("Registration open set to %s", settings.registration_open)
    return settings
