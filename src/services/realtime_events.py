from __future__ import annotations

import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from core.models import TOOL_CALL_STATUS_PENDING, ChatMessage, Run
from web.realtime import (
    CONVERSATION_ROOM_PREFIX,
    PANEL_SESSION_ROOM_PREFIX,
    REALTIME_NAMESPACE,
    RUN_ROOM_PREFIX,
    emit_realtime,
)

EVENT_CONTRACT_VERSION = "v1"

_sequence_lock = Lock()
_sequence_counters: dict[str, int] = {}


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _next_sequence(stream_key: str) -> int:
    with _sequence_lock:
        current = int(_sequence_counters.get(stream_key, 0)) + 1
        _sequence_counters[stream_key] = current
        return current


def room_key(prefix: str, value: int | str | None) -> str | None:
    suffix = str(value).strip() if value is not None else ""
    if not suffix:
        return None
    return f"{prefix}:{suffix}"


def build_event_envelope(
    *,
    event_type: str,
    entity_kind: str,
    entity_id: int | str | None,
    room: str | None = None,
    payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    event_id = str(uuid.uuid4())
    normalized_entity_id = str(entity_id).strip() if entity_id is not None else ""
    stream_key = (
        f"{entity_kind}:{normalized_entity_id}"
        if normalized_entity_id
        else f"{event_type}:global"
    )
    return {
        "contract_version": EVENT_CONTRACT_VERSION,
        "event_id": event_id,
        "sequence": _next_sequence(stream_key),
        "emitted_at": _utcnow_iso(),
        "event_type": event_type,
        "entity_kind": entity_kind,
        "entity_id": normalized_entity_id,
        "room": room,
        "payload": payload or {},
    }


def emit_contract_event(
    *,
    event_type: str,
    entity_kind: str,
    entity_id: int | str | None,
    room: str | None = None,
    payload: dict[str, Any] | None = None,
    namespace: str = REALTIME_NAMESPACE,
) -> dict[str, Any]:
    envelope = build_event_envelope(
        event_type=event_type,
        entity_kind=entity_kind,
        entity_id=entity_id,
        room=room,
        payload=payload,
    )
    emit_realtime(event_type, envelope, room=room, namespace=namespace)
    return envelope


def emit_run_updated(run: Run) -> dict[str, Any]:
    return emit_contract_event(
        event_type="run.updated",
        entity_kind="run",
        entity_id=run.id,
        room=room_key(RUN_ROOM_PREFIX, run.id),
        payload={
            "id": run.id,
            "status": run.status,
            "error": run.error,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        },
    )


def emit_panel_refreshed(session_id: str, panel: str, tab: str) -> dict[str, Any]:
    return emit_contract_event(
        event_type="panel.refreshed",
        entity_kind="panel_session",
        entity_id=session_id,
        room=room_key(PANEL_SESSION_ROOM_PREFIX, session_id),
        payload={"panel": panel, "tab": tab},
    )


def emit_chat_updated(message: ChatMessage) -> dict[str, Any]:
    return emit_contract_event(
        event_type="chat.updated",
        entity_kind="conversation",
        entity_id=message.conversation_id,
        room=room_key(CONVERSATION_ROOM_PREFIX, message.conversation_id),
        payload={
            "conversation_id": message.conversation_id,
            "message_id": message.id,
            "status": message.status,
            "error": message.error,
            "pending_tool_calls": sum(
                1 for call in message.tool_calls if call.status == TOOL_CALL_STATUS_PENDING
            ),
        },
    )
