from __future__ import annotations

from typing import Any

from core.config import Config
from services import pipeline
from web.panels.dispatcher import EventContext, Outcome
from web.panels.forms import clean_text, parse_int
from web.panels.panel import Panel
from web.panels.payloads import job_payload
from web.panels.router import LoadContext, TabSpec

DEFAULT_WINDOW = "hour"


def _scope(ctx: LoadContext | EventContext, raw: Any) -> str:
    # Non-admins only ever see their own pipeline.
    if raw == "all" and ctx.principal.is_admin:
        return "all"
    return "user"


def _window(raw: Any) -> str:
    return raw if raw in pipeline.WINDOWS else DEFAULT_WINDOW


def _load_pipeline(ctx: LoadContext) -> dict[str, Any]:
    scope = _scope(ctx, ctx.param("scope"))
    search = clean_text(ctx.param("search"))
    jobs = pipeline.list_jobs(
        ctx.session,
        ctx.user_id,
        scope=scope,
        page=max(parse_int(ctx.param("page"), 1) or 1, 1),
        search=search,
    )
    jobs["jobs"] = [job_payload(job) for job in jobs["jobs"]]
    return {
        "scope": scope,
        "window": _window(ctx.param("window")),
        "search": search or "",
        "stats": pipeline.aggregate_stats(ctx.session, ctx.user_id, scope=scope),
        "rates": pipeline.windowed_rates(ctx.session, ctx.user_id, scope=scope),
        "chart": pipeline.chunks_per_source(ctx.session, ctx.user_id, scope=scope),
        "jobs": jobs,
    }


def _current(ctx: EventContext) -> dict[str, Any]:
    return {
        "scope": ctx.view.data.get("scope", "user"),
        "window": ctx.view.data.get("window", DEFAULT_WINDOW),
        "search": ctx.view.data.get("search", ""),
    }


def pipeline_toggle_scope(ctx: EventContext) -> Outcome:
    if not ctx.principal.is_admin:
        return ctx.unchanged()
    current = _current(ctx)
    current["scope"] = "user" if current["scope"] == "all" else "all"
    return ctx.navigate("pipeline", **current)


def pipeline_search_jobs(ctx: EventContext) -> Outcome:
    current = _current(ctx)
    current["search"] = clean_text(ctx.param("search")) or ""
    return ctx.navigate("pipeline", **current)


def pipeline_jobs_page(ctx: EventContext) -> Outcome:
    page = max(parse_int(ctx.param("page"), 1) or 1, 1)
    return ctx.navigate("pipeline", page=page, **_current(ctx))


def pipeline_select_window(ctx: EventContext) -> Outcome:
    window = ctx.param("window")
    if window not in pipeline.WINDOWS:
        return ctx.unchanged()
    return ctx.update(ctx.view.with_data(window=window))


def pipeline_refresh(ctx: EventContext) -> Outcome:
    return ctx.navigate("pipeline", **_current(ctx))


PIPELINE_TABS = [
    TabSpec("pipeline", _load_pipeline, refresh_seconds=Config.PIPELINE_REFRESH_SECONDS),
]

PIPELINE_HANDLERS = {
    "pipeline_toggle_scope": pipeline_toggle_scope,
    "pipeline_search_jobs": pipeline_search_jobs,
    "pipeline_jobs_page": pipeline_jobs_page,
    "pipeline_select_window": pipeline_select_window,
    "pipeline_refresh": pipeline_refresh,
}

panel = Panel.build(
    "pipeline",
    PIPELINE_TABS,
    PIPELINE_HANDLERS,
    default_tab="pipeline",
    refresh_event="pipeline_refresh",
)
