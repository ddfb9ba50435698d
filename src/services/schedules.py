from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from celery.schedules import ParseException, crontab
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from core.db import as_utc, utcnow
from core.models import ENTITY_STATUS_ACTIVE, ENTITY_STATUSES, TOPOLOGIES, Run, Schedule
from services import runs
from services.errors import NotFound, Validator
from services.teams import get_team

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = (
    "name",
    "description",
    "cron_expression",
    "timezone",
    "enabled",
    "status",
    "prompt",
    "topology",
    "team_id",
    "timeout_ms",
    "max_iterations",
)
CRON_FIELD_COUNTS = (5, 6)
CRON_FIELD_MESSAGE = "must be a valid cron expression (5 or 6 fields)"


def cron_fields(expression: str) -> list[str] | None:
    """Split a cron expression; a 6-field form carries a leading seconds field."""
    parts = str(expression or "").split()
    if len(parts) not in CRON_FIELD_COUNTS:
        return None
    return parts[-5:]


def build_crontab(expression: str, tz_name: str = "UTC", *, now: datetime | None = None):
    fields = cron_fields(expression)
    if fields is None:
        raise ValueError(CRON_FIELD_MESSAGE)
    tz = ZoneInfo(tz_name or "UTC")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    local_now = (now or utcnow()).astimezone(tz)
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
        nowfun=lambda: local_now,
    )


def validate_cron(expression: str | None) -> str | None:
    """Return an error message for ``expression`` or None when it is usable."""
    if cron_fields(expression or "") is None:
        return CRON_FIELD_MESSAGE
    try:
        build_crontab(expression or "")
    except (ParseException, ValueError):
        return "is invalid"
    return None


def compute_next_run(
    expression: str, tz_name: str = "UTC", *, now: datetime | None = None
) -> datetime:
    """Next fire time after ``now``, evaluated in ``tz_name`` and returned in UTC."""
    now = as_utc(now) or utcnow()
    schedule = build_crontab(expression, tz_name, now=now)
    local_now = now.astimezone(ZoneInfo(tz_name or "UTC"))
    remaining = schedule.remaining_estimate(local_now)
    return (local_now + remaining).astimezone(timezone.utc)


def _validate(
    session: Session, values: dict[str, Any], *, user_id: int, exclude_id: int | None
) -> None:
    validator = Validator()
    validator.required("name", values.get("name"))
    validator.required("prompt", values.get("prompt"))
    validator.required("cron_expression", values.get("cron_expression"))
    if values.get("cron_expression"):
        message = validate_cron(values["cron_expression"])
        if message:
            validator.add("cron_expression", message)
    try:
        ZoneInfo(values.get("timezone") or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        validator.add("timezone", "is invalid")
    validator.inclusion("topology", values.get("topology"), TOPOLOGIES)
    validator.inclusion("status", values.get("status"), ENTITY_STATUSES)
    validator.positive_int("timeout_ms", values.get("timeout_ms"))
    validator.positive_int("max_iterations", values.get("max_iterations"))
    team_id = values.get("team_id")
    if team_id is not None:
        try:
            get_team(session, int(team_id), user_id)
        except (TypeError, ValueError, NotFound):
            validator.add("team_id", "does not exist")
    name = str(values.get("name") or "").strip()
    if name:
        stmt = select(Schedule.id).where(Schedule.name == name, Schedule.user_id == user_id)
        if exclude_id is not None:
            stmt = stmt.where(Schedule.id != exclude_id)
        if session.execute(stmt).first():
            validator.add("name", "has already been taken")
    validator.check()


def _refresh_next_run(schedule: Schedule, *, now: datetime | None = None) -> None:
    if schedule.enabled and schedule.status == ENTITY_STATUS_ACTIVE:
        schedule.next_run_at = compute_next_run(
            schedule.cron_expression, schedule.timezone, now=now
        )
    else:
        schedule.next_run_at = None


def list_schedules(session: Session, user_id: int) -> list[Schedule]:
    return list(
        session.execute(
            select(Schedule)
            .options(selectinload(Schedule.team))
            .where(Schedule.user_id == user_id)
            .order_by(Schedule.name)
        ).scalars()
    )


def get_schedule(session: Session, schedule_id: int, user_id: int) -> Schedule:
    schedule = session.get(Schedule, schedule_id)
    if schedule is None or schedule.user_id != user_id:
        raise NotFound("Schedule", schedule_id)
    return schedule


def create_schedule(session: Session, attrs: dict[str, Any]) -> Schedule:
    values = {
        key: attrs[key] for key in SCHEDULE_FIELDS if key in attrs and attrs[key] is not None
    }
    values.setdefault("timezone", "UTC")
    values.setdefault("topology", "pipeline")
    values.setdefault("enabled", True)
    values.setdefault("status", ENTITY_STATUS_ACTIVE)
    user_id = attrs.get("user_id")
    _validate(session, values, user_id=user_id, exclude_id=None)
    values["name"] = str(values["name"]).strip()
    values["cron_expression"] = " ".join(str(values["cron_expression"]).split())
    schedule = Schedule(user_id=user_id, **values)
    _refresh_next_run(schedule)
    schedule.save(session)
    logger.info("Created schedule %s next_run_at=%s", schedule.id, schedule.next_run_at)
    return schedule


def update_schedule(
    session: Session, schedule_id: int, user_id: int, attrs: dict[str, Any]
) -> Schedule:
    schedule = get_schedule(session, schedule_id, user_id)
    values = {
        key: attrs[key] for key in SCHEDULE_FIELDS if key in attrs and attrs[key] is not None
    }
    merged = {
        "name": schedule.name,
        "prompt": schedule.prompt,
        "cron_expression": schedule.cron_expression,
        "timezone": schedule.timezone,
        **values,
    }
    _validate(session, merged, user_id=user_id, exclude_id=schedule.id)
    for key, value in values.items():
        setattr(schedule, key, value)
    schedule.name = str(schedule.name).strip()
    schedule.cron_expression = " ".join(str(schedule.cron_expression).split())
    _refresh_next_run(schedule)
    session.flush()
    logger.info("Updated schedule %s", schedule.id)
    return schedule


def delete_schedule(session: Session, schedule_id: int, user_id: int) -> None:
    schedule = get_schedule(session, schedule_id, user_id)
    session.delete(schedule)
    session.flush()
    logger.info("Deleted schedule %s", schedule_id)


def toggle_schedule(session: Session, schedule_id: int, user_id: int) -> Schedule:
    schedule = get_schedule(session, schedule_id, user_id)
    schedule.enabled = not schedule.enabled
    _refresh_next_run(schedule)
    session.flush()
    logger.info("Schedule %s enabled=%s", schedule.id, schedule.enabled)
    return schedule


def list_due_schedules(session: Session, now: datetime | None = None) -> list[Schedule]:
    now = as_utc(now) or utcnow()
    return list(
        session.execute(
            select(Schedule)
            .where(
                Schedule.enabled.is_(True),
                Schedule.status == ENTITY_STATUS_ACTIVE,
                Schedule.next_run_at.is_not(None),
                Schedule.next_run_at <= now,
            )
            .order_by(Schedule.next_run_at)
        ).scalars()
    )


def fire_schedule(
    session: Session, schedule: Schedule, now: datetime | None = None
) -> Run:
    """Create the run for a due schedule and advance its next fire time."""
    now = as_utc(now) or utcnow()
    run = runs.create_run(
        session,
        {
            "name": f"{schedule.name} @ {now.strftime('%Y-%m-%d %H:%M')}",
            "description": schedule.description,
            "prompt": schedule.prompt,
            "topology": schedule.topology,
            "team_id": schedule.team_id,
            "timeout_ms": schedule.timeout_ms,
            "max_iterations": schedule.max_iterations,
            "context": {"schedule_id": schedule.id},
            "user_id": schedule.user_id,
        },
    )
    schedule.last_run_at = now
    _refresh_next_run(schedule, now=now)
    session.flush()
    logger.info(
        "Schedule %s fired run %s next_run_at=%s",
        schedule.id,
        run.id,
        schedule.next_run_at,
    )
    return run
