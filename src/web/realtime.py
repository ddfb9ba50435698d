from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Iterable

from flask import Flask, request, session
from flask_socketio import SocketIO, disconnect, join_room, leave_room
from sqlalchemy import select

from core.config import Config
from core.db import session_scope
from core.models import Conversation, Run

REALTIME_NAMESPACE = "/rt"
RUN_ROOM_PREFIX = "run"
CONVERSATION_ROOM_PREFIX = "conversation"
PANEL_SESSION_ROOM_PREFIX = "panel_session"

logger = logging.getLogger(__name__)

socketio = SocketIO(
    async_mode=Config.SOCKETIO_ASYNC_MODE,
    message_queue=Config.SOCKETIO_MESSAGE_QUEUE or None,
)

_connections_lock = Lock()
# sid -> user id for sockets that passed the login check.
_connections: dict[str, int] = {}


def connection_count() -> int:
    with _connections_lock:
        return len(_connections)


def _cors_origins(raw: str) -> str | list[str]:
    origins = [item.strip() for item in (raw or "").split(",") if item.strip()]
    if not origins or origins == ["*"]:
        return "*"
    return origins


def init_socketio(app: Flask) -> None:
    socketio.init_app(
        app,
        async_mode=app.config["SOCKETIO_ASYNC_MODE"],
        message_queue=(app.config["SOCKETIO_MESSAGE_QUEUE"] or "").strip() or None,
        cors_allowed_origins=_cors_origins(app.config["SOCKETIO_CORS_ALLOWED_ORIGINS"]),
        path=app.config["SOCKETIO_PATH"] or "socket.io",
        ping_interval=app.config["SOCKETIO_PING_INTERVAL"],
        ping_timeout=app.config["SOCKETIO_PING_TIMEOUT"],
    )
    app.extensions["studioctl.socketio"] = socketio


def emit_realtime(
    event_name: str,
    payload: dict[str, Any] | None = None,
    *,
    room: str | None = None,
    namespace: str = REALTIME_NAMESPACE,
) -> None:
    try:
        socketio.emit(event_name, payload or {}, room=room, namespace=namespace)
    except Exception:
        logger.exception("Realtime emit of %s to room %s failed", event_name, room)


def authorized_rooms(
    requested: Iterable[Any], *, user_id: int, panel_session_id: str | None
) -> list[str]:
    """Filter ``requested`` room keys down to the ones this user may join.

    A panel session room is only the caller's own session; run and
    conversation rooms need a row owned by the caller.
    """
    rooms: list[str] = []
    run_ids: dict[int, str] = {}
    conversation_ids: dict[int, str] = {}
    for raw in requested:
        room = str(raw or "").strip()
        prefix, _, suffix = room.partition(":")
        if not suffix or room in rooms:
            continue
        if prefix == PANEL_SESSION_ROOM_PREFIX:
            if panel_session_id and suffix == panel_session_id:
                rooms.append(room)
        elif prefix == RUN_ROOM_PREFIX and suffix.isdigit():
            run_ids[int(suffix)] = room
        elif prefix == CONVERSATION_ROOM_PREFIX and suffix.isdigit():
            conversation_ids[int(suffix)] = room
    if run_ids:
        with session_scope() as db:
            owned = db.execute(
                select(Run.id).where(Run.id.in_(list(run_ids)), Run.user_id == user_id)
            ).scalars()
            rooms.extend(run_ids[run_id] for run_id in owned)
    if conversation_ids:
        with session_scope() as db:
            owned = db.execute(
                select(Conversation.id).where(
                    Conversation.id.in_(list(conversation_ids)),
                    Conversation.user_id == user_id,
                )
            ).scalars()
            rooms.extend(conversation_ids[conversation_id] for conversation_id in owned)
    return rooms


def _requested_rooms(payload: Any) -> list[Any]:
    if not isinstance(payload, dict) or not isinstance(payload.get("rooms"), list):
        return []
    return payload["rooms"]


def _session_identity() -> tuple[int | None, str | None]:
    from web.views.shared import SESSION_PANEL_KEY, SESSION_USER_KEY

    return session.get(SESSION_USER_KEY), session.get(SESSION_PANEL_KEY)


@socketio.on("connect", namespace=REALTIME_NAMESPACE)
def _on_connect(auth: dict[str, Any] | None = None):
    user_id, _ = _session_identity()
    if user_id is None:
        logger.info("Rejected anonymous socket %s", request.sid)
        return False
    with _connections_lock:
        _connections[request.sid] = int(user_id)
    logger.debug("Socket %s connected for user %s", request.sid, user_id)
    return None


@socketio.on("disconnect", namespace=REALTIME_NAMESPACE)
def _on_disconnect(*_args: Any):
    with _connections_lock:
        _connections.pop(request.sid, None)
    logger.debug("Socket %s disconnected", request.sid)


@socketio.on("rt.subscribe", namespace=REALTIME_NAMESPACE)
def _on_subscribe(payload: dict[str, Any] | None = None):
    user_id, panel_session_id = _session_identity()
    if user_id is None:
        disconnect()
        return {"ok": False, "rooms": []}
    rooms = authorized_rooms(
        _requested_rooms(payload), user_id=int(user_id), panel_session_id=panel_session_id
    )
    for room in rooms:
        join_room(room)
    logger.debug("Socket %s joined %s", request.sid, rooms)
    return {"ok": True, "rooms": rooms}


@socketio.on("rt.unsubscribe", namespace=REALTIME_NAMESPACE)
def _on_unsubscribe(payload: dict[str, Any] | None = None):
    rooms = [str(room) for room in _requested_rooms(payload) if room]
    for room in rooms:
        leave_room(room)
    return {"ok": True, "rooms": rooms}
