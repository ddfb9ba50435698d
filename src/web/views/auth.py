from __future__ import annotations

from flask import session

from core.db import session_scope
from services import accounts
from web.panels.payloads import user_payload
from web.panels.sessions import store
from web.views.shared import (
    AUTH_REQUIRED_ERROR,
    SESSION_PANEL_KEY,
    SESSION_USER_KEY,
    bp,
    current_principal,
    logger,
    request_params,
)

__all__ = ["login", "logout", "me"]


@bp.post("/auth/login")
def login():
    payload = request_params()
    email = str(payload.get("email") or "").strip()
    password = str(payload.get("password") or "")
    if not email or not password:
        return {"error": "Email and password are required."}, 400
    with session_scope() as db:
        user = accounts.authenticate(db, email, password)
        if user is None:
            logger.info("Rejected login for %s", email)
            return {"error": "Invalid email or password."}, 401
        user_data = user_payload(user)
        user_id = user.id
    store.drop(session.get(SESSION_PANEL_KEY))
    session.clear()
    session[SESSION_USER_KEY] = user_id
    return {"user": user_data}


@bp.post("/auth/logout")
def logout():
    store.drop(session.get(SESSION_PANEL_KEY))
    session.clear()
    return {"ok": True}


@bp.get("/auth/me")
def me():
    principal = current_principal()
    if principal is None:
        return AUTH_REQUIRED_ERROR, 401
    with session_scope() as db:
        return {"user": user_payload(accounts.get_user(db, principal.user_id))}
