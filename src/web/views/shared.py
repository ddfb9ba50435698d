from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, request, session

from core.db import session_scope
from core.models import User
from web.panels.sessions import PanelSession, store
from web.panels.state import Notice, PanelState, Principal

bp = Blueprint("studio", __name__)
logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user_id"
SESSION_PANEL_KEY = "panel_session_id"
AUTH_REQUIRED_ERROR = {"error": "Authentication required."}


def current_principal() -> Principal | None:
    """Principal for the signed-in user, re-read so role changes apply immediately."""
    user_id = session.get(SESSION_USER_KEY)
    if user_id is None:
        return None
    with session_scope() as db:
        user = db.get(User, user_id)
        if user is None:
            return None
        return Principal(
            user_id=user.id,
            email=user.email,
            name=user.name,
            is_admin=user.is_admin,
        )


def panel_session(principal: Principal) -> PanelSession:
    panel_state = store.get_or_create(session.get(SESSION_PANEL_KEY), principal)
    session[SESSION_PANEL_KEY] = panel_state.session_id
    return panel_state


def request_params() -> dict[str, Any]:
    if request.is_json:
        payload = request.get_json(silent=True)
        return dict(payload) if isinstance(payload, dict) else {}
    return request.form.to_dict()


def view_payload(
    state: PanelState, notice: Notice | None, *, requested_tab: str | None = None
) -> dict[str, Any]:
    view = state.view
    payload: dict[str, Any] = {
        "panel": state.panel,
        "tab": view.tab,
        "params": dict(view.params),
        "data": dict(view.data),
        "editing": {kind: target.to_payload() for kind, target in view.editing.items()},
        "pending": dict(view.pending),
        "forms": {kind: dict(form) for kind, form in view.forms.items()},
        "notice": notice.to_payload() if notice is not None else None,
    }
    if requested_tab is not None and requested_tab != view.tab:
        payload["redirect"] = {"panel": state.panel, "tab": view.tab}
    return payload
