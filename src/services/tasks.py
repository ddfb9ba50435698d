from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from core.config import Config
from core.db import init_db, init_engine, session_scope, utcnow
from core.models import (
    MESSAGE_STATUS_STREAMING,
    RUN_STATUS_FAILED,
    RUN_STATUS_PENDING,
    ChatMessage,
    Run,
)
from services import chat, chat_runner, runner, runs, schedules
from services.celery_app import celery_app
from services.errors import InvalidState, ServiceError, Unavailable
from services.realtime_events import emit_chat_updated, emit_run_updated

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="services.tasks.execute_run")
def execute_run(self, run_id: int, user_id: int) -> str | None:
    init_engine(Config.SQLALCHEMY_DATABASE_URI)
    init_db()
    logger.info("Executing run %s task=%s", run_id, self.request.id)
    return runner.execute(run_id, user_id)


@celery_app.task(bind=True, name="services.tasks.tick_schedules")
def tick_schedules(self) -> dict[str, int]:
    init_engine(Config.SQLALCHEMY_DATABASE_URI)
    init_db()

    now = utcnow()
    fired: list[tuple[int, int]] = []
    with session_scope() as session:
        for schedule in schedules.list_due_schedules(session, now):
            run = schedules.fire_schedule(session, schedule, now)
            fired.append((run.id, schedule.user_id))
    for run_id, user_id in fired:
        with session_scope() as session:
            try:
                start_run(session, run_id, user_id)
            except ServiceError as exc:
                logger.warning("Scheduled run %s was not started: %s", run_id, exc)
    if fired:
        logger.info("Schedule tick fired %s run(s)", len(fired))
    return {"fired": len(fired)}


def start_run(session: Session, run_id: int, user_id: int) -> Run:
    """Enqueue a committed pending run and remember its Celery task id."""
    run = runs.get_run(session, run_id, user_id)
    if run.status != RUN_STATUS_PENDING:
        raise InvalidState("not_pending", "Run can only be started when pending")
    try:
        result = execute_run.delay(run.id, user_id)
    except Exception as exc:
        logger.exception("Could not enqueue run %s", run.id)
        _mark_enqueue_failed(session, run, exc)
        raise Unavailable("enqueue_failed", "Could not enqueue run") from exc
    run.task_id = result.id
    session.flush()
    logger.info("Enqueued run %s task=%s", run.id, run.task_id)
    return run


def _mark_enqueue_failed(session: Session, run: Run, exc: Exception) -> None:
    run.status = RUN_STATUS_FAILED
    run.error = f"Could not enqueue run: {exc}"
    run.completed_at = utcnow()
    runs.add_log(session, run.id, "error", "enqueue", run.error)
    session.flush()
    emit_run_updated(run)


def cancel_run(session: Session, run_id: int, user_id: int) -> Run:
    run = runs.request_cancel(session, run_id, user_id)
    if Config.CELERY_REVOKE_ON_CANCEL and run.task_id:
        celery_app.control.revoke(run.task_id)
        logger.info("Revoked task %s for run %s", run.task_id, run.id)
    emit_run_updated(run)
    return run


@celery_app.task(bind=True, name="services.tasks.generate_reply")
def generate_reply(
    self,
    message_id: int,
    user_id: int,
    server_keys: list[str] | None = None,
    auto_confirm: bool = False,
) -> str | None:
    init_engine(Config.SQLALCHEMY_DATABASE_URI)
    init_db()
    logger.info("Generating reply %s task=%s", message_id, self.request.id)
    return chat_runner.respond(
        message_id, user_id, server_keys=server_keys or (), auto_confirm=auto_confirm
    )


def enqueue_reply(
    session: Session,
    message_id: int,
    user_id: int,
    *,
    server_keys: tuple[str, ...] | list[str] = (),
    auto_confirm: bool = False,
) -> ChatMessage:
    """Enqueue a committed streaming reply and remember its Celery task id."""
    message = session.get(ChatMessage, message_id)
    if message is None:
        raise InvalidState("missing", "Reply no longer exists")
    chat.get_conversation(session, message.conversation_id, user_id)
    if message.status != MESSAGE_STATUS_STREAMING:
        raise InvalidState("not_streaming", "Reply is not awaiting generation")
    try:
        result = generate_reply.delay(message.id, user_id, list(server_keys), auto_confirm)
    except Exception as exc:
        logger.exception("Could not enqueue reply %s", message.id)
        chat.fail_message(message, f"Could not enqueue reply: {exc}")
        session.flush()
        emit_chat_updated(message)
        raise Unavailable("enqueue_failed", "Could not enqueue reply") from exc
    message.task_id = result.id
    session.flush()
    logger.info("Enqueued reply %s task=%s", message.id, message.task_id)
    return message


def cancel_reply(session: Session, conversation_id: int, user_id: int) -> ChatMessage:
    message = chat.cancel_stream(session, conversation_id, user_id)
    if Config.CELERY_REVOKE_ON_CANCEL and message.task_id:
        celery_app.control.revoke(message.task_id)
        logger.info("Revoked task %s for reply %s", message.task_id, message.id)
    emit_chat_updated(message)
    return message
