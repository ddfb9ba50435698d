from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy import select, update

from core.db import session_scope, utcnow
from core.models import (
    RUN_STATUS_CANCELLED,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    RUN_STATUS_PENDING,
    RUN_STATUS_RUNNING,
    Agent,
    Run,
    RunTask,
)
from services import llm_client, runs, usage
from services.realtime_events import emit_run_updated

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 2000


class RunCancelled(Exception):
    pass


class RunTimedOut(Exception):
    pass


class CancellationToken:
    """Cooperative cancel flag backed by the run row.

    Every check opens a fresh session so a cancel committed by the web
    process is observed by the worker.
    """

    def __init__(self, run_id: int) -> None:
        self.run_id = run_id

    def is_cancelled(self) -> bool:
        with session_scope() as session:
            row = session.execute(
                select(Run.cancel_requested, Run.status).where(Run.id == self.run_id)
            ).first()
        if row is None:
            return True
        cancel_requested, status = row
        return bool(cancel_requested) or status == RUN_STATUS_CANCELLED

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise RunCancelled(self.run_id)


@dataclass(frozen=True)
class Stage:
    position: int
    agent_id: int
    agent_name: str
    role: str
    description: str | None


StageExecutor = Callable[[Agent, list[dict[str, str]]], llm_client.ChatResult]


def default_stage_executor(
    agent: Agent, messages: list[dict[str, str]]
) -> llm_client.ChatResult:
    if agent.llm_model is None:
        raise llm_client.LLMClientError(f"Agent {agent.name} has no model configured")
    return llm_client.chat_completion(agent.llm_model, messages)


def _system_prompt(agent: Agent, stage: Stage) -> str:
    lines = [agent.system_prompt or f"You are {agent.name}."]
    if agent.backstory:
        lines.append(f"Backstory: {agent.backstory}")
    if agent.opinions:
        lines.append("Opinions:")
        lines.extend(f"- {key}: {value}" for key, value in agent.opinions.items())
    lines.append(f"Your role on this team: {stage.role}.")
    if stage.description:
        lines.append(stage.description)
    lines.append(f"Reasoning strategy: {agent.strategy}.")
    return "\n".join(lines)


def _stage_messages(
    agent: Agent,
    stage: Stage,
    *,
    prompt: str,
    shared_context: str | None,
    handoff: str | None,
) -> list[dict[str, str]]:
    parts = [prompt]
    if shared_context:
        parts.append(f"Team context:\n{shared_context}")
    if handoff:
        parts.append(f"Output from the previous stage:\n{handoff}")
    return [
        {"role": "system", "content": _system_prompt(agent, stage)},
        {"role": "user", "content": "\n\n".join(parts)},
    ]


def aggregate_outputs(outputs: list[str], strategy: str) -> str:
    if not outputs:
        return ""
    if strategy == "merge":
        return "\n\n".join(outputs)
    if strategy == "vote":
        return Counter(outputs).most_common(1)[0][0]
    return outputs[-1]


def _mark_running(run_id: int) -> tuple[list[Stage], dict[str, Any]] | None:
    with session_scope() as session:
        # Conditional update so only one worker claims a pending run.
        claimed = session.execute(
            update(Run)
            .where(
                Run.id == run_id,
                Run.status == RUN_STATUS_PENDING,
                Run.cancel_requested.is_(False),
            )
            .values(status=RUN_STATUS_RUNNING, started_at=utcnow())
        ).rowcount
        run = session.get(Run, run_id)
        if run is None:
            logger.warning("Run %s vanished before execution", run_id)
            return None
        if not claimed:
            logger.info("Run %s not executed; status=%s", run_id, run.status)
            return None
        stages = []
        if run.team is not None:
            stages = [
                Stage(
                    position=index,
                    agent_id=member.agent_id,
                    agent_name=member.agent.name,
                    role=member.role,
                    description=member.description,
                )
                for index, member in enumerate(run.team.members)
            ]
        plan = {
            "prompt": run.prompt,
            "topology": run.topology,
            "shared_context": run.team.shared_context if run.team else None,
            "aggregation": run.team.aggregation_strategy if run.team else "last",
            "timeout_ms": run.timeout_ms,
            "max_iterations": run.max_iterations,
        }
        runs.add_log(
            session,
            run_id,
            "info",
            "init",
            "Run started",
            {"stages": len(stages), "topology": run.topology},
        )
        session.flush()
        emit_run_updated(run)
        return stages, plan


def _execute_stage(
    run_id: int,
    user_id: int,
    stage: Stage,
    executor: StageExecutor,
    *,
    prompt: str,
    shared_context: str | None,
    handoff: str | None,
) -> str:
    started = time.monotonic()
    with session_scope() as session:
        task = RunTask.create(
            session,
            run_id=run_id,
            name=f"{stage.agent_name} ({stage.role})",
            description=stage.description,
            status=RUN_STATUS_RUNNING,
            position=stage.position,
            agent_id=stage.agent_id,
            started_at=utcnow(),
        )
        task_id = task.id
    failure: Exception | None = None
    with session_scope() as session:
        task = session.get(RunTask, task_id)
        agent = session.get(Agent, stage.agent_id)
        try:
            if agent is None:
                raise llm_client.LLMClientError(f"Agent {stage.agent_name} was deleted")
            result = executor(
                agent,
                _stage_messages(
                    agent,
                    stage,
                    prompt=prompt,
                    shared_context=shared_context,
                    handoff=handoff,
                ),
            )
        except Exception as exc:
            failure = exc
            task.status = RUN_STATUS_FAILED
            task.error = str(exc)
        else:
            usage.record_usage(
                session,
                user_id=user_id,
                model=agent.llm_model,
                run_id=run_id,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                reasoning_tokens=result.reasoning_tokens,
                cached_tokens=result.cached_tokens,
            )
            task.status = RUN_STATUS_COMPLETED
            task.output_summary = result.content[:SUMMARY_LIMIT]
        task.completed_at = utcnow()
        task.duration_ms = int((time.monotonic() - started) * 1000)
        runs.add_log(
            session,
            run_id,
            "error" if failure else "info",
            "stage",
            str(failure) if failure else f"{stage.agent_name} completed",
            {"task_id": task_id, "duration_ms": task.duration_ms},
        )
    if failure is not None:
        raise failure
    return result.content


def _finish(
    run_id: int,
    status: str,
    *,
    error: str | None = None,
    deliverables: dict[str, Any] | None = None,
) -> str:
    with session_scope() as session:
        run = session.get(Run, run_id)
        if run is None:
            return status
        if run.cancel_requested or run.status == RUN_STATUS_CANCELLED:
            status = run.status = RUN_STATUS_CANCELLED
            runs.add_log(session, run_id, "info", "cancelled", "cancelled")
        else:
            run.status = status
            run.error = error
            if deliverables is not None:
                run.deliverables = deliverables
            runs.add_log(
                session,
                run_id,
                "error" if status == RUN_STATUS_FAILED else "info",
                "finish",
                error or "Run completed",
            )
        if run.completed_at is None:
            run.completed_at = utcnow()
        session.flush()
        emit_run_updated(run)
    return status


def execute(
    run_id: int,
    user_id: int,
    *,
    executor: StageExecutor | None = None,
    token: CancellationToken | None = None,
) -> str | None:
    """Run every team stage in order, checking for cancellation between stages.

    Returns the final status, or None when the run was not eligible to start.
    """
    executor = executor or default_stage_executor
    token = token or CancellationToken(run_id)
    prepared = _mark_running(run_id)
    if prepared is None:
        return None
    stages, plan = prepared
    if not stages:
        return _finish(run_id, RUN_STATUS_FAILED, error="Run has no team members")

    deadline = time.monotonic() + plan["timeout_ms"] / 1000.0
    chained = plan["topology"] != "parallel"
    outputs: list[str] = []
    handoff: str | None = None
    try:
        for stage in stages[: plan["max_iterations"]]:
            token.raise_if_cancelled()
            if time.monotonic() > deadline:
                raise RunTimedOut(run_id)
            output = _execute_stage(
                run_id,
                user_id,
                stage,
                executor,
                prompt=plan["prompt"],
                shared_context=plan["shared_context"],
                handoff=handoff if chained else None,
            )
            outputs.append(output)
            handoff = output
        token.raise_if_cancelled()
    except RunCancelled:
        logger.info("Run %s cancelled", run_id)
        return _finish(run_id, RUN_STATUS_CANCELLED)
    except RunTimedOut:
        logger.warning("Run %s timed out after %sms", run_id, plan["timeout_ms"])
        return _finish(run_id, RUN_STATUS_FAILED, error="Run timed out")
    except Exception as exc:
        logger.exception("Run %s failed", run_id)
        return _finish(run_id, RUN_STATUS_FAILED, error=str(exc))

    return _finish(
        run_id,
        RUN_STATUS_COMPLETED,
        deliverables={
            "output": aggregate_outputs(outputs, plan["aggregation"]),
            "stages": len(outputs),
        },
    )
