from __future__ import annotations

from flask import request

from core.config import ServerConfigSnapshot
from web.panels.dispatcher import UnknownEvent
from web.panels.registry import get_panel
from web.views.shared import (
    AUTH_REQUIRED_ERROR,
    bp,
    current_principal,
    logger,
    panel_session,
    request_params,
    view_payload,
)

__all__ = ["health", "panel_default", "panel_tab", "panel_event"]


@bp.get("/health")
def health():
    return {"ok": True}


def _enter(panel_name: str, tab: str | None):
    principal = current_principal()
    if principal is None:
        return AUTH_REQUIRED_ERROR, 401
    panel = get_panel(panel_name)
    if panel is None:
        return {"error": f"Unknown panel {panel_name!r}."}, 404
    requested_tab = tab or panel.default_tab
    try:
        state, notice = panel_session(principal).enter(
            panel,
            requested_tab,
            request.args.to_dict(),
            principal=principal,
            config=ServerConfigSnapshot.from_config(),
        )
    except Exception:
        logger.exception("Failed to load %s/%s", panel_name, requested_tab)
        return {"error": "Failed to load panel."}, 500
    return view_payload(state, notice, requested_tab=requested_tab)


@bp.get("/panels/<panel_name>")
def panel_default(panel_name: str):
    return _enter(panel_name, None)


@bp.get("/panels/<panel_name>/<tab>")
def panel_tab(panel_name: str, tab: str):
    return _enter(panel_name, tab)


@bp.post("/panels/<panel_name>/events/<event>")
def panel_event(panel_name: str, event: str):
    principal = current_principal()
    if principal is None:
        return AUTH_REQUIRED_ERROR, 401
    panel = get_panel(panel_name)
    if panel is None:
        return {"error": f"Unknown panel {panel_name!r}."}, 404
    try:
        state, notice = panel_session(principal).dispatch(
            panel,
            event,
            request_params(),
            principal=principal,
            config=ServerConfigSnapshot.from_config(),
        )
    except UnknownEvent as exc:
        return {"error": str(exc)}, 400
    except Exception:
        logger.exception("Panel event %s/%s failed", panel_name, event)
        return {"error": "Failed to handle event."}, 500
    return view_payload(state, notice)
