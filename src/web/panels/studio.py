from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from sqlalchemy.orm import Session

from core.db import session_scope
from core.models import (
    AGENT_STRATEGIES,
    RUN_DEFAULT_MAX_ITERATIONS,
    RUN_DEFAULT_TIMEOUT_MS,
    TEAM_AGGREGATION_STRATEGIES,
    TOPOLOGIES,
)
from core.refs import parse_ref
from services import agents, llm_registry, mcp_servers, runs, schedules, tasks, teams
from services.errors import InvalidState, NotFound, ServiceError, ValidationFailed
from web.panels.dispatcher import EventContext, Outcome
from web.panels.forms import (
    clean_text,
    decode_opinions,
    encode_opinions,
    format_errors,
    parse_bool,
    parse_int,
    string_form,
)
from web.panels.panel import Panel
from web.panels.payloads import (
    agent_payload,
    model_payload,
    run_log_payload,
    run_payload,
    run_task_payload,
    schedule_payload,
    team_payload,
)
from web.panels.router import LoadContext, Loaded, TabSpec
from web.panels.state import Existing, New, Notice

logger = logging.getLogger(__name__)

AGENT_FORM_FIELDS = (
    "name",
    "description",
    "backstory",
    "opinions",
    "system_prompt",
    "strategy",
    "llm_model_id",
)
TEAM_FORM_FIELDS = (
    "name",
    "description",
    "shared_context",
    "default_topology",
    "aggregation_strategy",
)
RUN_FORM_FIELDS = (
    "name",
    "description",
    "prompt",
    "topology",
    "team_id",
    "timeout_ms",
    "max_iterations",
)
SCHEDULE_FORM_FIELDS = (
    "name",
    "description",
    "cron_expression",
    "timezone",
    "prompt",
    "topology",
    "team_id",
    "timeout_ms",
    "max_iterations",
    "enabled",
)

AGENT_FORM_DEFAULTS = {"strategy": "react"}
TEAM_FORM_DEFAULTS = {"default_topology": "pipeline", "aggregation_strategy": "last"}
RUN_FORM_DEFAULTS = {
    "topology": "pipeline",
    "timeout_ms": str(RUN_DEFAULT_TIMEOUT_MS),
    "max_iterations": str(RUN_DEFAULT_MAX_ITERATIONS),
}
SCHEDULE_FORM_DEFAULTS = {
    **RUN_FORM_DEFAULTS,
    "timezone": "UTC",
    "enabled": "true",
}


def _blank_form(fields: tuple[str, ...], defaults: Mapping[str, str]) -> dict[str, str]:
    return {**string_form({}, fields), **defaults}


def _int_or_raw(raw: Any, default: int | None = None) -> Any:
    """Blank means ``default``; non-numeric text is passed on for validation to reject."""
    if raw is None or str(raw).strip() == "":
        return default
    return parse_int(raw, default=raw)


def _entity_id(ctx: LoadContext | EventContext) -> int:
    raw = ctx.param("id")
    entity_id = parse_int(raw)
    if entity_id is None:
        raise NotFound("Entity", raw)
    return entity_id


def _editing_id(ctx: EventContext, kind: str) -> int | None:
    target = ctx.view.editing.get(kind)
    if isinstance(target, Existing):
        return parse_int(target.id)
    return parse_int(ctx.view.params.get("id"))


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


def _model_choices(session: Session, user_id: int) -> list[dict[str, Any]]:
    return [model_payload(model) for model in llm_registry.list_active_models(session, user_id)]


def _server_lists(session: Session, agent, user_id: int) -> dict[str, Any]:
    catalog = mcp_servers.server_catalog(session, user_id)
    assigned = set(agents.assigned_refs(agent))
    return {
        "assigned_servers": [entry.to_payload() for entry in catalog if entry.ref in assigned],
        "available_servers": [
            entry.to_payload() for entry in agents.available_servers(agent, catalog)
        ],
    }


def _get_agent(ctx: LoadContext):
    raw = ctx.param("id")
    agent_id = parse_int(raw)
    if agent_id is None:
        raise NotFound("Agent", raw)
    return agents.get_agent(ctx.session, agent_id, ctx.user_id)


def _agent_form(agent) -> dict[str, str]:
    return {
        "name": agent.name or "",
        "description": agent.description or "",
        "backstory": agent.backstory or "",
        "opinions": encode_opinions(agent.opinions),
        "system_prompt": agent.system_prompt or "",
        "strategy": agent.strategy,
        "llm_model_id": str(agent.llm_model_id or ""),
    }


def _load_agents(ctx: LoadContext) -> dict[str, Any]:
    return {"agents": [agent_payload(agent) for agent in agents.list_agents(ctx.session, ctx.user_id)]}


def _load_agent_new(ctx: LoadContext) -> Loaded:
    return Loaded(
        data={
            "models": _model_choices(ctx.session, ctx.user_id),
            "strategies": list(AGENT_STRATEGIES),
        },
        editing={"agent": New()},
        forms={"agent": _blank_form(AGENT_FORM_FIELDS, AGENT_FORM_DEFAULTS)},
    )


def _load_agent_show(ctx: LoadContext) -> dict[str, Any]:
    agent = _get_agent(ctx)
    return {"agent": agent_payload(agent), **_server_lists(ctx.session, agent, ctx.user_id)}


def _load_agent_edit(ctx: LoadContext) -> Loaded:
    agent = _get_agent(ctx)
    return Loaded(
        data={
            "agent": agent_payload(agent),
            "models": _model_choices(ctx.session, ctx.user_id),
            "strategies": list(AGENT_STRATEGIES),
            **_server_lists(ctx.session, agent, ctx.user_id),
        },
        editing={"agent": Existing(agent.id)},
        forms={"agent": _agent_form(agent)},
    )


def _agent_attrs(params: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "name": params.get("name"),
        "description": clean_text(params.get("description")),
        "backstory": clean_text(params.get("backstory")),
        "opinions": decode_opinions(params.get("opinions")),
        "system_prompt": clean_text(params.get("system_prompt")),
        "strategy": params.get("strategy") or "react",
        "llm_model_id": _int_or_raw(params.get("llm_model_id")),
    }


def save_agent(ctx: EventContext) -> Outcome:
    target = ctx.view.editing.get("agent")
    attrs = _agent_attrs(ctx.params)
    try:
        if isinstance(target, Existing):
            agent = agents.update_agent(ctx.session, target.id, ctx.user_id, attrs)
            message = "Agent updated"
        else:
            agent = agents.create_agent(ctx.session, {**attrs, "user_id": ctx.user_id})
            message = "Agent created"
    except ValidationFailed as exc:
        return _keep_form(ctx, "agent", AGENT_FORM_FIELDS, format_errors(exc))
    except NotFound as exc:
        return _keep_form(ctx, "agent", AGENT_FORM_FIELDS, str(exc))
    return ctx.navigate("agent_show", Notice.info(message), id=agent.id)


def _agent_tool(ctx: EventContext, action: Callable, failure: str) -> Outcome:
    agent_id = _editing_id(ctx, "agent")
    try:
        ref = parse_ref(ctx.param("server_id"))
    except ValueError:
        return ctx.update(ctx.view, Notice.error(failure))
    if agent_id is None:
        return ctx.update(ctx.view, Notice.error(failure))
    try:
        action(ctx.session, agent_id, ref, ctx.user_id)
    except ServiceError as exc:
        logger.info("Agent %s server %s: %s", agent_id, ref.key, exc)
        return ctx.update(ctx.view, Notice.error(failure))
    return ctx.reload()


def add_agent_tool(ctx: EventContext) -> Outcome:
    return _agent_tool(ctx, agents.add_tool, "Could not add server")


def remove_agent_tool(ctx: EventContext) -> Outcome:
    return _agent_tool(ctx, agents.remove_tool, "Could not remove server")


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------


def _get_team(ctx: LoadContext):
    raw = ctx.param("id")
    team_id = parse_int(raw)
    if team_id is None:
        raise NotFound("Team", raw)
    return teams.get_team(ctx.session, team_id, ctx.user_id)


def _team_choices(session: Session, user_id: int) -> list[dict[str, Any]]:
    return [{"id": team.id, "name": team.name} for team in teams.list_teams(session, user_id)]


def _load_teams(ctx: LoadContext) -> dict[str, Any]:
    return {"teams": [team_payload(team) for team in teams.list_teams(ctx.session, ctx.user_id)]}


def _load_team_new(ctx: LoadContext) -> Loaded:
    return Loaded(
        data={
            "topologies": list(TOPOLOGIES),
            "aggregation_strategies": list(TEAM_AGGREGATION_STRATEGIES),
        },
        editing={"team": New()},
        forms={"team": _blank_form(TEAM_FORM_FIELDS, TEAM_FORM_DEFAULTS)},
    )


def _load_team_show(ctx: LoadContext) -> dict[str, Any]:
    return {"team": team_payload(_get_team(ctx))}


def _load_team_edit(ctx: LoadContext) -> Loaded:
    team = _get_team(ctx)
    all_agents = agents.list_agents(ctx.session, ctx.user_id)
    return Loaded(
        data={
            "team": team_payload(team),
            "topologies": list(TOPOLOGIES),
            "aggregation_strategies": list(TEAM_AGGREGATION_STRATEGIES),
            "available_agents": [
                {"id": agent.id, "name": agent.name}
                for agent in teams.available_agents(team, all_agents)
            ],
        },
        editing={"team": Existing(team.id)},
        forms={
            "team": {
                "name": team.name or "",
                "description": team.description or "",
                "shared_context": team.shared_context or "",
                "default_topology": team.default_topology,
                "aggregation_strategy": team.aggregation_strategy,
            }
        },
    )


def save_team(ctx: EventContext) -> Outcome:
    target = ctx.view.editing.get("team")
    attrs = {
        "name": ctx.params.get("name"),
        "description": clean_text(ctx.params.get("description")),
        "shared_context": clean_text(ctx.params.get("shared_context")),
        "default_topology": ctx.params.get("default_topology") or "pipeline",
        "aggregation_strategy": ctx.params.get("aggregation_strategy") or "last",
    }
    try:
        if isinstance(target, Existing):
            team = teams.update_team(ctx.session, target.id, ctx.user_id, attrs)
            message = "Team updated"
        else:
            team = teams.create_team(ctx.session, {**attrs, "user_id": ctx.user_id})
            message = "Team created"
    except ValidationFailed as exc:
        return _keep_form(ctx, "team", TEAM_FORM_FIELDS, format_errors(exc))
    except NotFound as exc:
        return _keep_form(ctx, "team", TEAM_FORM_FIELDS, str(exc))
    return ctx.navigate("team_show", Notice.info(message), id=team.id)


def _team_member(ctx: EventContext, add: bool) -> Outcome:
    failure = "Could not add agent" if add else "Could not remove agent"
    team_id = _editing_id(ctx, "team")
    agent_id = parse_int(ctx.param("agent_id"))
    if team_id is None or agent_id is None:
        return ctx.update(ctx.view, Notice.error(failure))
    try:
        if add:
            teams.add_member(
                ctx.session,
                team_id,
                agent_id,
                ctx.user_id,
                role=ctx.param("role", "worker"),
                description=clean_text(ctx.param("description")),
            )
        else:
            teams.remove_member(ctx.session, team_id, agent_id, ctx.user_id)
    except ServiceError as exc:
        logger.info("Team %s agent %s: %s", team_id, agent_id, exc)
        return ctx.update(ctx.view, Notice.error(failure))
    return ctx.reload()


def add_team_member(ctx: EventContext) -> Outcome:
    return _team_member(ctx, add=True)


def remove_team_member(ctx: EventContext) -> Outcome:
    return _team_member(ctx, add=False)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def _get_run(ctx: LoadContext):
    raw = ctx.param("id")
    run_id = parse_int(raw)
    if run_id is None:
        raise NotFound("Run", raw)
    return runs.get_run(ctx.session, run_id, ctx.user_id)


def _load_runs(ctx: LoadContext) -> dict[str, Any]:
    return {"runs": [run_payload(run) for run in runs.list_runs(ctx.session, ctx.user_id)]}


def _load_run_new(ctx: LoadContext) -> Loaded:
    return Loaded(
        data={"teams": _team_choices(ctx.session, ctx.user_id), "topologies": list(TOPOLOGIES)},
        editing={"run": New()},
        forms={"run": _blank_form(RUN_FORM_FIELDS, RUN_FORM_DEFAULTS)},
    )


def _load_run_show(ctx: LoadContext) -> dict[str, Any]:
    run = _get_run(ctx)
    return {
        "run": run_payload(run),
        "tasks": [run_task_payload(task) for task in runs.list_tasks(ctx.session, run.id)],
        "logs": [run_log_payload(log) for log in runs.list_logs(ctx.session, run.id)],
    }


def _load_run_log_show(ctx: LoadContext) -> dict[str, Any]:
    run = _get_run(ctx)
    raw = ctx.param("log_id")
    log_id = parse_int(raw)
    if log_id is None:
        raise NotFound("Log", raw)
    log = runs.get_log(ctx.session, run.id, log_id, ctx.user_id)
    return {"run": run_payload(run), "log": run_log_payload(log)}


def _run_attrs(params: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "name": params.get("name"),
        "description": clean_text(params.get("description")),
        "prompt": params.get("prompt"),
        "topology": params.get("topology") or "pipeline",
        "team_id": _int_or_raw(params.get("team_id")),
        "timeout_ms": _int_or_raw(params.get("timeout_ms"), RUN_DEFAULT_TIMEOUT_MS),
        "max_iterations": _int_or_raw(params.get("max_iterations"), RUN_DEFAULT_MAX_ITERATIONS),
    }


def save_run(ctx: EventContext) -> Outcome:
    try:
        run = runs.create_run(ctx.session, {**_run_attrs(ctx.params), "user_id": ctx.user_id})
    except ValidationFailed as exc:
        return _keep_form(ctx, "run", RUN_FORM_FIELDS, format_errors(exc))
    return ctx.navigate("run_show", Notice.info("Run created"), id=run.id)


def _run_id(ctx: EventContext) -> int | None:
    return parse_int(ctx.param("id", ctx.view.params.get("id")))


def start_run(ctx: EventContext) -> Outcome:
    run_id = _run_id(ctx)
    try:
        if run_id is None:
            raise NotFound("Run", ctx.param("id"))
        tasks.start_run(ctx.session, run_id, ctx.user_id)
    except InvalidState:
        return ctx.update(ctx.view, Notice.error("Run can only be started when pending"))
    except NotFound as exc:
        return ctx.update(ctx.view, Notice.error(str(exc)))
    except ServiceError as exc:
        logger.info("Start of run %s failed: %s", run_id, exc)
        return ctx.update(ctx.view, Notice.error("Could not start run"))
    return ctx.reload(Notice.info("Run started. Refresh to see results."))


def rerun(ctx: EventContext) -> Outcome:
    run_id = _run_id(ctx)
    if run_id is None:
        return ctx.update(ctx.view, Notice.error("Could not rerun"))
    try:
        # The clone is committed before its task is enqueued; a failed enqueue
        # leaves it marked failed rather than pending.
        with session_scope() as session:
            clone_id = runs.clone_run(session, run_id, ctx.user_id).id
        tasks.start_run(ctx.session, clone_id, ctx.user_id)
    except ServiceError as exc:
        logger.info("Rerun of run %s failed: %s", run_id, exc)
        return ctx.update(ctx.view, Notice.error("Could not rerun"))
    return ctx.navigate("run_show", Notice.info("Rerun started."), id=clone_id)


def cancel_run(ctx: EventContext) -> Outcome:
    run_id = _run_id(ctx)
    try:
        if run_id is None:
            raise NotFound("Run", ctx.param("id"))
        tasks.cancel_run(ctx.session, run_id, ctx.user_id)
    except InvalidState:
        return ctx.update(ctx.view, Notice.error("Run is not running"))
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Could not cancel run"))
    return ctx.reload(Notice.info("Run cancelled"))


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


def _get_schedule(ctx: LoadContext):
    raw = ctx.param("id")
    schedule_id = parse_int(raw)
    if schedule_id is None:
        raise NotFound("Schedule", raw)
    return schedules.get_schedule(ctx.session, schedule_id, ctx.user_id)


def _load_schedules(ctx: LoadContext) -> dict[str, Any]:
    return {
        "schedules": [
            schedule_payload(schedule)
            for schedule in schedules.list_schedules(ctx.session, ctx.user_id)
        ]
    }


def _load_schedule_new(ctx: LoadContext) -> Loaded:
    return Loaded(
        data={"teams": _team_choices(ctx.session, ctx.user_id), "topologies": list(TOPOLOGIES)},
        editing={"schedule": New()},
        forms={"schedule": _blank_form(SCHEDULE_FORM_FIELDS, SCHEDULE_FORM_DEFAULTS)},
    )


def _load_schedule_show(ctx: LoadContext) -> dict[str, Any]:
    return {
        "schedule": schedule_payload(_get_schedule(ctx)),
        "teams": _team_choices(ctx.session, ctx.user_id),
    }


def _schedule_form(schedule) -> dict[str, str]:
    return {
        "name": schedule.name or "",
        "description": schedule.description or "",
        "cron_expression": schedule.cron_expression,
        "timezone": schedule.timezone,
        "prompt": schedule.prompt or "",
        "topology": schedule.topology,
        "team_id": str(schedule.team_id or ""),
        "timeout_ms": str(schedule.timeout_ms),
        "max_iterations": str(schedule.max_iterations),
        "enabled": "true" if schedule.enabled else "false",
    }


def edit_schedule(ctx: EventContext) -> Outcome:
    try:
        schedule = schedules.get_schedule(ctx.session, _entity_id(ctx), ctx.user_id)
    except NotFound:
        return ctx.update(ctx.view, Notice.error("Schedule not found"))
    return ctx.update(
        ctx.view.start_editing("schedule", Existing(schedule.id), form=_schedule_form(schedule))
    )


def cancel_schedule(ctx: EventContext) -> Outcome:
    return ctx.update(ctx.view.stop_editing("schedule"))


def save_schedule(ctx: EventContext) -> Outcome:
    target = ctx.view.editing.get("schedule")
    attrs = {
        **_run_attrs(ctx.params),
        "cron_expression": ctx.params.get("cron_expression"),
        "timezone": clean_text(ctx.params.get("timezone")) or "UTC",
        "enabled": parse_bool(ctx.params.get("enabled", "true")),
    }
    try:
        if isinstance(target, Existing):
            schedule = schedules.update_schedule(ctx.session, target.id, ctx.user_id, attrs)
            message = "Schedule updated"
        else:
            schedule = schedules.create_schedule(ctx.session, {**attrs, "user_id": ctx.user_id})
            message = "Schedule created"
    except ValidationFailed as exc:
        return _keep_form(ctx, "schedule", SCHEDULE_FORM_FIELDS, format_errors(exc))
    except NotFound as exc:
        return _keep_form(ctx, "schedule", SCHEDULE_FORM_FIELDS, str(exc))
    return ctx.navigate("schedule_show", Notice.info(message), id=schedule.id)


def toggle_schedule(ctx: EventContext) -> Outcome:
    schedule_id = parse_int(ctx.param("id", ctx.view.params.get("id")))
    try:
        if schedule_id is None:
            raise NotFound("Schedule", ctx.param("id"))
        schedule = schedules.toggle_schedule(ctx.session, schedule_id, ctx.user_id)
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Could not toggle schedule"))
    message = "Schedule enabled" if schedule.enabled else "Schedule disabled"
    return ctx.reload(Notice.info(message))


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _keep_form(ctx: EventContext, kind: str, fields: tuple[str, ...], message: str) -> Outcome:
    return ctx.update(
        ctx.view.keep_form(kind, string_form(ctx.params, fields)), Notice.error(message)
    )


def confirm_delete(kind: str) -> Callable[[EventContext], Outcome]:
    def handler(ctx: EventContext) -> Outcome:
        item_id = parse_int(ctx.param("id"))
        if item_id is None:
            return ctx.unchanged()
        return ctx.update(ctx.view.request_confirmation(kind, item_id))

    handler.__name__ = f"confirm_delete_{kind}"
    return handler


def cancel_delete(kind: str) -> Callable[[EventContext], Outcome]:
    def handler(ctx: EventContext) -> Outcome:
        return ctx.update(ctx.view.clear_confirmation(kind))

    handler.__name__ = f"cancel_delete_{kind}"
    return handler


def confirmed_delete(
    kind: str,
    delete: Callable[[Session, int, int], None],
    list_tab: str,
    *,
    deleted: str,
    failed: str,
) -> Callable[[EventContext], Outcome]:
    """Delete only the id that ``confirm_delete_<kind>`` stored."""

    def handler(ctx: EventContext) -> Outcome:
        item_id = parse_int(ctx.param("id"))
        pending = ctx.view.pending.get(kind)
        if item_id is None or pending != item_id:
            logger.info(
                "Ignoring delete of %s %s; pending confirmation is %s", kind, item_id, pending
            )
            return ctx.unchanged()
        try:
            delete(ctx.session, item_id, ctx.user_id)
        except ServiceError:
            return ctx.update(ctx.view.clear_confirmation(kind), Notice.error(failed))
        return ctx.navigate(list_tab, Notice.info(deleted))

    handler.__name__ = f"delete_{kind}"
    return handler


STUDIO_TABS = [
    TabSpec("agents", _load_agents),
    TabSpec("agent_new", _load_agent_new),
    TabSpec("agent_show", _load_agent_show, fallback="agents"),
    TabSpec("agent_edit", _load_agent_edit, fallback="agents"),
    TabSpec("teams", _load_teams),
    TabSpec("team_new", _load_team_new),
    TabSpec("team_show", _load_team_show, fallback="teams"),
    TabSpec("team_edit", _load_team_edit, fallback="teams"),
    TabSpec("runs", _load_runs),
    TabSpec("run_new", _load_run_new),
    TabSpec("run_show", _load_run_show, fallback="runs"),
    TabSpec("run_log_show", _load_run_log_show, fallback="runs"),
    TabSpec("schedules", _load_schedules),
    TabSpec("schedule_new", _load_schedule_new),
    TabSpec("schedule_show", _load_schedule_show, fallback="schedules"),
]

STUDIO_HANDLERS = {
    "save_agent": save_agent,
    "confirm_delete_agent": confirm_delete("agent"),
    "cancel_delete_agent": cancel_delete("agent"),
    "delete_agent": confirmed_delete(
        "agent",
        agents.delete_agent,
        "agents",
        deleted="Agent deleted",
        failed="Could not delete agent",
    ),
    "add_agent_tool": add_agent_tool,
    "remove_agent_tool": remove_agent_tool,
    "save_team": save_team,
    "confirm_delete_team": confirm_delete("team"),
    "cancel_delete_team": cancel_delete("team"),
    "delete_team": confirmed_delete(
        "team",
        teams.delete_team,
        "teams",
        deleted="Team deleted",
        failed="Could not delete team",
    ),
    "add_team_member": add_team_member,
    "remove_team_member": remove_team_member,
    "save_run": save_run,
    "start_run": start_run,
    "rerun": rerun,
    "cancel_run": cancel_run,
    "confirm_delete_run": confirm_delete("run"),
    "cancel_delete_run": cancel_delete("run"),
    "delete_run": confirmed_delete(
        "run",
        runs.delete_run,
        "runs",
        deleted="Run deleted",
        failed="Could not delete run",
    ),
    "edit_schedule": edit_schedule,
    "cancel_schedule": cancel_schedule,
    "save_schedule": save_schedule,
    "toggle_schedule": toggle_schedule,
    "confirm_delete_schedule": confirm_delete("schedule"),
    "cancel_delete_schedule": cancel_delete("schedule"),
    "delete_schedule": confirmed_delete(
        "schedule",
        schedules.delete_schedule,
        "schedules",
        deleted="Schedule deleted",
        failed="Could not delete schedule",
    ),
}

panel = Panel.build("studio", STUDIO_TABS, STUDIO_HANDLERS, default_tab="agents")
