from __future__ import annotations

from typing import Any

from core.config import Config
from core.models import ACCENT_COLORS
from services import accounts
from services.errors import InvalidState, ServiceError
from web.panels.admin import ADMIN_HANDLERS, ADMIN_TABS
from web.panels.dispatcher import EventContext, Outcome
from web.panels.panel import Panel
from web.panels.payloads import user_payload
from web.panels.router import LoadContext, TabSpec
from web.panels.state import Notice


def _load_info(ctx: LoadContext) -> dict[str, Any]:
    user = accounts.get_user(ctx.session, ctx.user_id)
    return {"user": user_payload(user), "accent_colors": list(ACCENT_COLORS)}


def _load_password(ctx: LoadContext) -> dict[str, Any]:
    return {"password_success": False}


def change_password(ctx: EventContext) -> Outcome:
    current = ctx.param("current_password") or ""
    new = ctx.param("new_password") or ""
    if new != (ctx.param("new_password_confirmation") or ""):
        return ctx.update(ctx.view, Notice.error("Passwords do not match"))
    if len(new) < Config.MIN_PASSWORD_LENGTH:
        return ctx.update(
            ctx.view,
            Notice.error(
                f"New password must be at least {Config.MIN_PASSWORD_LENGTH} characters"
            ),
        )
    try:
        accounts.change_password(ctx.session, ctx.user_id, current, new)
    except InvalidState:
        return ctx.update(ctx.view, Notice.error("Current password is incorrect"))
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Failed to change password"))
    return ctx.update(ctx.view.with_data(password_success=True), Notice.info("Password changed"))


def set_accent_color(ctx: EventContext) -> Outcome:
    color = ctx.param("color")
    if color not in ACCENT_COLORS:
        return ctx.update(ctx.view, Notice.error("Invalid accent color"))
    accounts.set_accent_color(ctx.session, ctx.user_id, color)
    return ctx.reload()


PROFILE_TABS = [
    TabSpec("info", _load_info),
    TabSpec("password", _load_password),
    *ADMIN_TABS,
]

PROFILE_HANDLERS = {
    "change_password": change_password,
    "set_accent_color": set_accent_color,
    **ADMIN_HANDLERS,
}

panel = Panel.build("profile", PROFILE_TABS, PROFILE_HANDLERS, default_tab="info")
