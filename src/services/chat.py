from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from core.db import utcnow
from core.models import (
    CONVERSATION_STATUS_ACTIVE,
    CONVERSATION_STATUS_ARCHIVED,
    MESSAGE_ROLE_ASSISTANT,
    MESSAGE_ROLE_USER,
    MESSAGE_STATUS_FAILED,
    MESSAGE_STATUS_STREAMING,
    MODEL_TYPE_INFERENCE,
    TOOL_CALL_STATUS_APPROVED,
    TOOL_CALL_STATUS_PENDING,
    TOOL_CALL_STATUS_REJECTED,
    ChatMessage,
    Conversation,
    LLMModel,
    ToolCall,
)
from services import llm_registry
from services.errors import InvalidState, NotFound, Validator

logger = logging.getLogger(__name__)

TITLE_LIMIT = 50
REJECTED_OUTPUT = "Tool call rejected by user"


def truncate_title(content: str) -> str:
    """First line of the opening message, shortened to fit a sidebar entry."""
    text = (content or "").strip()
    line = text.splitlines()[0].strip() if text else ""
    if len(line) > TITLE_LIMIT:
        return line[: TITLE_LIMIT - 3] + "..."
    return line or "New conversation"


def list_conversations(session: Session, user_id: int) -> list[Conversation]:
    return list(
        session.execute(
            select(Conversation)
            .where(
                Conversation.user_id == user_id,
                Conversation.status == CONVERSATION_STATUS_ACTIVE,
            )
            .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
        ).scalars()
    )


def get_conversation(session: Session, conversation_id: int, user_id: int) -> Conversation:
    conversation = session.get(Conversation, conversation_id)
    if (
        conversation is None
        or conversation.user_id != user_id
        or conversation.status != CONVERSATION_STATUS_ACTIVE
    ):
        raise NotFound("Conversation", conversation_id)
    return conversation


def chat_models(session: Session, user_id: int) -> list[LLMModel]:
    return [
        model
        for model in llm_registry.list_active_models(session, user_id)
        if model.model_type == MODEL_TYPE_INFERENCE
    ]


def create_conversation(session: Session, attrs: dict[str, Any]) -> Conversation:
    user_id = attrs["user_id"]
    validator = Validator()
    validator.required("title", attrs.get("title"))
    validator.check()
    model_id = attrs.get("llm_model_id")
    if model_id is not None:
        model = llm_registry.get_model(session, model_id, user_id)
    else:
        models = chat_models(session, user_id)
        if not models:
            raise InvalidState("no_model", "No model available")
        model = models[0]
    conversation = Conversation.create(
        session,
        title=str(attrs["title"]).strip(),
        system_prompt=attrs.get("system_prompt") or None,
        llm_model_id=model.id,
        user_id=user_id,
    )
    logger.info("Created conversation %s model=%s", conversation.id, model.id)
    return conversation


def archive_conversation(session: Session, conversation_id: int, user_id: int) -> None:
    conversation = get_conversation(session, conversation_id, user_id)
    conversation.status = CONVERSATION_STATUS_ARCHIVED
    session.flush()
    logger.info("Archived conversation %s", conversation_id)


def list_messages(session: Session, conversation_id: int) -> list[ChatMessage]:
    return list(
        session.execute(
            select(ChatMessage)
            .where(ChatMessage.conversation_id == conversation_id)
            .options(selectinload(ChatMessage.tool_calls))
            .order_by(ChatMessage.position, ChatMessage.id)
        ).scalars()
    )


def streaming_message(session: Session, conversation_id: int) -> ChatMessage | None:
    return session.execute(
        select(ChatMessage).where(
            ChatMessage.conversation_id == conversation_id,
            ChatMessage.status == MESSAGE_STATUS_STREAMING,
        )
    ).scalars().first()


def pending_tool_calls(session: Session, conversation_id: int) -> list[ToolCall]:
    return list(
        session.execute(
            select(ToolCall)
            .join(ChatMessage, ToolCall.message_id == ChatMessage.id)
            .where(
                ChatMessage.conversation_id == conversation_id,
                ToolCall.status == TOOL_CALL_STATUS_PENDING,
            )
            .order_by(ToolCall.id)
        ).scalars()
    )


def _next_position(session: Session, conversation_id: int) -> int:
    current = session.execute(
        select(func.max(ChatMessage.position)).where(
            ChatMessage.conversation_id == conversation_id
        )
    ).scalar_one()
    return 0 if current is None else int(current) + 1


def _ensure_idle(session: Session, conversation: Conversation) -> None:
    if streaming_message(session, conversation.id) is not None:
        raise InvalidState("streaming", "A response is still being generated")
    if pending_tool_calls(session, conversation.id):
        raise InvalidState("tools_pending", "Approve or reject the pending tool calls first")


def _append(session: Session, conversation: Conversation, **values: Any) -> ChatMessage:
    message = ChatMessage.create(
        session,
        conversation_id=conversation.id,
        position=_next_position(session, conversation.id),
        **values,
    )
    conversation.message_count = (conversation.message_count or 0) + 1
    conversation.last_message_at = message.created_at
    conversation.updated_at = utcnow()
    session.flush()
    return message


def send_message(
    session: Session, conversation_id: int, user_id: int, content: str
) -> ChatMessage:
    conversation = get_conversation(session, conversation_id, user_id)
    validator = Validator()
    validator.required("content", content)
    validator.check()
    _ensure_idle(session, conversation)
    return _append(session, conversation, role=MESSAGE_ROLE_USER, content=content.strip())


def start_reply(session: Session, conversation: Conversation) -> ChatMessage:
    """Placeholder assistant message that a worker fills in."""
    if streaming_message(session, conversation.id) is not None:
        raise InvalidState("streaming", "A response is still being generated")
    message = _append(
        session,
        conversation,
        role=MESSAGE_ROLE_ASSISTANT,
        content="",
        status=MESSAGE_STATUS_STREAMING,
        model_id=conversation.llm_model_id,
    )
    logger.info("Reply %s started in conversation %s", message.id, conversation.id)
    return message


def fail_message(message: ChatMessage, error: str) -> None:
    message.status = MESSAGE_STATUS_FAILED
    message.error = error
    message.completed_at = utcnow()


def cancel_stream(session: Session, conversation_id: int, user_id: int) -> ChatMessage:
    get_conversation(session, conversation_id, user_id)
    message = streaming_message(session, conversation_id)
    if message is None:
        raise InvalidState("not_streaming", "No response is being generated")
    fail_message(message, "Cancelled")
    session.flush()
    logger.info("Cancelled reply %s", message.id)
    return message


def retry_reply(session: Session, conversation_id: int, user_id: int) -> ChatMessage:
    """Drop a failed last reply and start a fresh one."""
    conversation = get_conversation(session, conversation_id, user_id)
    _ensure_idle(session, conversation)
    messages = list_messages(session, conversation.id)
    if not messages:
        raise InvalidState("nothing_to_retry", "Nothing to retry")
    last = messages[-1]
    if last.role == MESSAGE_ROLE_ASSISTANT:
        if last.status != MESSAGE_STATUS_FAILED:
            raise InvalidState("nothing_to_retry", "Nothing to retry")
        session.delete(last)
        conversation.message_count = max((conversation.message_count or 1) - 1, 0)
        session.flush()
    return start_reply(session, conversation)


def decide_tool_call(
    session: Session,
    conversation_id: int,
    user_id: int,
    tool_use_id: str,
    *,
    approved: bool,
) -> tuple[ToolCall, bool]:
    """Record a decision; the flag says whether the conversation can continue."""
    get_conversation(session, conversation_id, user_id)
    pending = pending_tool_calls(session, conversation_id)
    call = next((item for item in pending if item.tool_use_id == tool_use_id), None)
    if call is None:
        raise InvalidState("not_pending", "Tool call is not awaiting a decision")
    if approved:
        call.status = TOOL_CALL_STATUS_APPROVED
    else:
        call.status = TOOL_CALL_STATUS_REJECTED
        call.output = REJECTED_OUTPUT
        call.completed_at = utcnow()
    session.flush()
    logger.info("Tool call %s %s", tool_use_id, call.status)
    return call, len(pending) == 1


def approved_tool_calls(session: Session, conversation_id: int) -> list[ToolCall]:
    return list(
        session.execute(
            select(ToolCall)
            .join(ChatMessage, ToolCall.message_id == ChatMessage.id)
            .where(
                ChatMessage.conversation_id == conversation_id,
                ToolCall.status == TOOL_CALL_STATUS_APPROVED,
            )
            .order_by(ToolCall.id)
        ).scalars()
    )
