from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from core.db import utcnow
from core.models import (
    RUN_CANCELLABLE_STATUSES,
    RUN_LOG_LEVELS,
    RUN_STATUS_CANCELLED,
    RUN_STATUS_PENDING,
    RUN_STATUSES,
    TOPOLOGIES,
    Run,
    RunLog,
    RunTask,
)
from services.errors import InvalidState, NotFound, Validator
from services.teams import get_team

logger = logging.getLogger(__name__)

RUN_FIELDS = (
    "name",
    "description",
    "prompt",
    "topology",
    "team_id",
    "timeout_ms",
    "max_iterations",
    "context",
)


def _validate(session: Session, values: dict[str, Any], *, user_id: int) -> None:
    validator = Validator()
    validator.required("name", values.get("name"))
    validator.required("prompt", values.get("prompt"))
    validator.required("user_id", user_id)
    validator.inclusion("topology", values.get("topology"), TOPOLOGIES)
    validator.inclusion("status", values.get("status"), RUN_STATUSES)
    validator.positive_int("timeout_ms", values.get("timeout_ms"))
    validator.positive_int("max_iterations", values.get("max_iterations"))
    team_id = values.get("team_id")
    if team_id is not None:
        try:
            get_team(session, int(team_id), user_id)
        except (TypeError, ValueError, NotFound):
            validator.add("team_id", "does not exist")
    validator.check()


def list_runs(session: Session, user_id: int) -> list[Run]:
    return list(
        session.execute(
            select(Run)
            .options(selectinload(Run.team))
            .where(Run.user_id == user_id)
            .order_by(Run.created_at.desc(), Run.id.desc())
        ).scalars()
    )


def get_run(session: Session, run_id: int, user_id: int) -> Run:
    run = session.get(Run, run_id)
    if run is None or run.user_id != user_id:
        raise NotFound("Run", run_id)
    return run


def create_run(session: Session, attrs: dict[str, Any]) -> Run:
    values = {key: attrs[key] for key in RUN_FIELDS if key in attrs and attrs[key] is not None}
    values.setdefault("topology", "pipeline")
    values.setdefault("context", {})
    user_id = attrs.get("user_id")
    _validate(session, values, user_id=user_id)
    values["name"] = str(values["name"]).strip()
    run = Run.create(session, user_id=user_id, status=RUN_STATUS_PENDING, **values)
    logger.info("Created run %s for user %s", run.id, user_id)
    return run


def clone_run(session: Session, run_id: int, user_id: int) -> Run:
    original = get_run(session, run_id, user_id)
    return create_run(
        session,
        {
            "name": original.name,
            "description": original.description,
            "prompt": original.prompt,
            "topology": original.topology,
            "team_id": original.team_id,
            "timeout_ms": original.timeout_ms,
            "max_iterations": original.max_iterations,
            "context": dict(original.context or {}),
            "user_id": user_id,
        },
    )


def delete_run(session: Session, run_id: int, user_id: int) -> None:
    run = get_run(session, run_id, user_id)
    session.delete(run)
    session.flush()
    logger.info("Deleted run %s", run_id)


def request_cancel(session: Session, run_id: int, user_id: int) -> Run:
    """Flag a run for cancellation; the executing task stops at its next checkpoint."""
    run = get_run(session, run_id, user_id)
    if run.status not in RUN_CANCELLABLE_STATUSES:
        raise InvalidState("not_running", "Run is not running")
    run.cancel_requested = True
    run.status = RUN_STATUS_CANCELLED
    run.completed_at = utcnow()
    session.flush()
    logger.info("Cancellation requested for run %s task=%s", run_id, run.task_id)
    return run


def add_log(
    session: Session,
    run_id: int,
    level: str,
    step: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> RunLog:
    if level not in RUN_LOG_LEVELS:
        level = "info"
    return RunLog.create(
        session,
        run_id=run_id,
        level=level,
        step=step,
        message=message,
        details=details or {},
    )


def list_logs(session: Session, run_id: int) -> list[RunLog]:
    return list(
        session.execute(
            select(RunLog).where(RunLog.run_id == run_id).order_by(RunLog.id)
        ).scalars()
    )


def get_log(session: Session, run_id: int, log_id: int, user_id: int) -> RunLog:
    get_run(session, run_id, user_id)
    log = session.get(RunLog, log_id)
    if log is None or log.run_id != run_id:
        raise NotFound("Log", log_id)
    return log


def list_tasks(session: Session, run_id: int) -> list[RunTask]:
    return list(
        session.execute(
            select(RunTask).where(RunTask.run_id == run_id).order_by(RunTask.position)
        ).scalars()
    )
