from __future__ import annotations

from datetime import datetime
from typing import Any

from core.builtins import BuiltinSource
from core.models import (
    Agent,
    ChatMessage,
    Conversation,
    DataSource,
    Document,
    Group,
    GroupMembership,
    IngestJob,
    Invitation,
    LLMModel,
    LLMProvider,
    MCPServer,
    Run,
    RunLog,
    RunTask,
    Schedule,
    Team,
    ToolCall,
    User,
)
from core.refs import Persisted
from web.panels.formatting import format_date, format_datetime, format_decimal


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def user_payload(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "display_name": user.display_name,
        "role": user.role,
        "is_admin": user.is_admin,
        "force_password_change": user.force_password_change,
        "accent_color": user.accent_color,
        "created_at": format_date(user.created_at),
    }


def invitation_payload(invitation: Invitation, base_url: str) -> dict[str, Any]:
    return {
        "id": invitation.id,
        "email": invitation.email,
        "url": f"{base_url}/invite/{invitation.token}",
        "used": invitation.used_at is not None,
        "used_at": format_date(invitation.used_at),
        "expires_at": format_date(invitation.expires_at),
        "created_at": format_date(invitation.created_at),
    }


def group_payload(group: Group) -> dict[str, Any]:
    return {
        "id": group.id,
        "name": group.name,
        "created_by_id": group.created_by_id,
        "created_at": format_date(group.created_at),
    }


def membership_payload(membership: GroupMembership) -> dict[str, Any]:
    return {
        "user_id": membership.user_id,
        "email": membership.user.email if membership.user else None,
        "name": membership.user.display_name if membership.user else "Unknown",
        "role": membership.role,
    }


def provider_payload(provider: LLMProvider) -> dict[str, Any]:
    # api_key is write-only; only its presence is reported.
    return {
        "id": provider.id,
        "name": provider.name,
        "provider_type": provider.provider_type,
        "provider_config": dict(provider.provider_config or {}),
        "has_api_key": provider.has_api_key,
        "instance_wide": provider.instance_wide,
        "status": provider.status,
        "user_id": provider.user_id,
    }


def mcp_server_payload(server: MCPServer) -> dict[str, Any]:
    # api_key is write-only like a provider key.
    return {
        "id": server.id,
        "name": server.name,
        "url": server.url,
        "description": server.description,
        "headers": dict(server.headers or {}),
        "has_api_key": server.has_api_key,
        "status": server.status,
        "global": server.global_server,
        "builtin": False,
        "user_id": server.user_id,
    }


def model_payload(model: LLMModel) -> dict[str, Any]:
    return {
        "id": model.id,
        "name": model.name,
        "provider_id": model.provider_id,
        "provider_name": model.provider.name if model.provider else None,
        "model_id": model.model_id,
        "model_type": model.model_type,
        "model_config": dict(model.model_config or {}),
        "input_cost_per_million": format_decimal(model.input_cost_per_million),
        "output_cost_per_million": format_decimal(model.output_cost_per_million),
        "instance_wide": model.instance_wide,
        "status": model.status,
    }


def agent_payload(agent: Agent) -> dict[str, Any]:
    return {
        "id": agent.id,
        "name": agent.name,
        "description": agent.description,
        "backstory": agent.backstory,
        "opinions": dict(agent.opinions or {}),
        "system_prompt": agent.system_prompt,
        "strategy": agent.strategy,
        "llm_model_id": agent.llm_model_id,
        "llm_model_name": agent.llm_model.name if agent.llm_model else None,
    }


def team_payload(team: Team) -> dict[str, Any]:
    return {
        "id": team.id,
        "name": team.name,
        "description": team.description,
        "shared_context": team.shared_context,
        "default_topology": team.default_topology,
        "aggregation_strategy": team.aggregation_strategy,
        "members": [
            {
                "agent_id": member.agent_id,
                "agent_name": member.agent.name if member.agent else None,
                "role": member.role,
                "description": member.description,
                "position": member.position,
            }
            for member in team.members
        ],
    }


def run_payload(run: Run) -> dict[str, Any]:
    return {
        "id": run.id,
        "name": run.name,
        "description": run.description,
        "prompt": run.prompt,
        "topology": run.topology,
        "status": run.status,
        "team_id": run.team_id,
        "team_name": run.team.name if run.team else None,
        "timeout_ms": run.timeout_ms,
        "max_iterations": run.max_iterations,
        "deliverables": dict(run.deliverables or {}),
        "error": run.error,
        "task_id": run.task_id,
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
        "created_at": format_datetime(run.created_at),
    }


def run_task_payload(task: RunTask) -> dict[str, Any]:
    return {
        "id": task.id,
        "name": task.name,
        "status": task.status,
        "position": task.position,
        "agent_id": task.agent_id,
        "output_summary": task.output_summary,
        "error": task.error,
        "duration_ms": task.duration_ms,
    }


def run_log_payload(log: RunLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "level": log.level,
        "step": log.step,
        "message": log.message,
        "details": dict(log.details or {}),
        "created_at": _iso(log.created_at),
    }


def schedule_payload(schedule: Schedule) -> dict[str, Any]:
    return {
        "id": schedule.id,
        "name": schedule.name,
        "description": schedule.description,
        "cron_expression": schedule.cron_expression,
        "timezone": schedule.timezone,
        "enabled": schedule.enabled,
        "status": schedule.status,
        "prompt": schedule.prompt,
        "topology": schedule.topology,
        "team_id": schedule.team_id,
        "timeout_ms": schedule.timeout_ms,
        "max_iterations": schedule.max_iterations,
        "last_run_at": _iso(schedule.last_run_at),
        "next_run_at": _iso(schedule.next_run_at),
    }


def source_payload(source: BuiltinSource | DataSource, document_count: int) -> dict[str, Any]:
    if isinstance(source, BuiltinSource):
        payload = source.to_payload()
    else:
        ref = Persisted(source.id)
        payload = {
            "id": ref.key,
            "url_id": ref.url_id,
            "name": source.name,
            "description": source.description,
            "icon": None,
            "source_type": source.source_type,
            "builtin": False,
        }
    payload["document_count"] = document_count
    return payload


def document_payload(document: Document) -> dict[str, Any]:
    return {
        "id": document.id,
        "title": document.title,
        "slug": document.slug,
        "parent_document_id": document.parent_document_id,
        "updated_at": format_datetime(document.updated_at),
    }


def document_detail_payload(document: Document) -> dict[str, Any]:
    return {
        **document_payload(document),
        "source_ref": document.source_ref,
        "content": document.content or "",
        "created_at": format_datetime(document.created_at),
    }


def job_payload(job: IngestJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "url": job.url,
        "state": job.state,
        "attempt": job.attempt,
        "max_attempts": job.max_attempts,
        "created_at": format_datetime(job.created_at),
        "completed_at": format_datetime(job.completed_at),
    }


def conversation_payload(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "system_prompt": conversation.system_prompt,
        "llm_model_id": conversation.llm_model_id,
        "model_name": conversation.llm_model.name if conversation.llm_model else None,
        "message_count": conversation.message_count,
        "last_message_at": _iso(conversation.last_message_at),
        "updated_at": format_datetime(conversation.updated_at),
    }


def tool_call_payload(call: ToolCall) -> dict[str, Any]:
    return {
        "id": call.id,
        "tool_use_id": call.tool_use_id,
        "server_ref": call.server_ref,
        "tool_name": call.tool_name,
        "arguments": dict(call.arguments or {}),
        "status": call.status,
        "output": call.output,
    }


def chat_message_payload(message: ChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "status": message.status,
        "error": message.error,
        "position": message.position,
        "input_tokens": message.input_tokens,
        "output_tokens": message.output_tokens,
        "latency_ms": message.latency_ms,
        "tool_calls": [tool_call_payload(call) for call in message.tool_calls],
        "created_at": _iso(message.created_at),
    }
