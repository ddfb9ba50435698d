from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from core.config import Config, ServerConfigSnapshot
from web.panels.router import TabRouter, maybe_session
from web.panels.state import Notice, PanelState, Principal, View

logger = logging.getLogger(__name__)

Outcome = Tuple[PanelState, Optional[Notice]]


class UnknownEvent(LookupError):
    def __init__(self, panel: str, event: str) -> None:
        self.panel = panel
        self.event = event
        super().__init__(f"Unknown event {event!r} for panel {panel!r}")


@dataclass
class EventContext:
    state: PanelState
    principal: Principal
    params: Mapping[str, Any]
    session: Session
    config: ServerConfigSnapshot
    router: TabRouter

    @property
    def view(self) -> View:
        return self.state.view

    @property
    def user_id(self) -> int:
        return self.principal.user_id

    def param(self, name: str, default: Any = None) -> Any:
        value = self.params.get(name)
        return default if value is None or value == "" else value

    def update(self, view: View, notice: Notice | None = None) -> Outcome:
        return self.state.with_view(view), notice

    def unchanged(self) -> Outcome:
        return self.state, None

    def navigate(self, tab: str, notice: Notice | None = None, **params: Any) -> Outcome:
        """Re-enter ``tab`` through the router inside the current transaction."""
        self.session.flush()
        state, redirect_notice = self.router.resolve(
            tab,
            self.principal,
            params,
            session=self.session,
            config=self.config,
        )
        return state, redirect_notice or notice

    def reload(self, notice: Notice | None = None, **overrides: Any) -> Outcome:
        """Reload the active tab, keeping its params, and carry over open forms."""
        state, landed_notice = self.navigate(
            self.view.tab, notice, **{**self.view.params, **overrides}
        )
        if state.tab != self.view.tab:
            return state, landed_notice
        kept = replace(
            state.view,
            editing={**state.view.editing, **self.view.editing},
            pending={**state.view.pending, **self.view.pending},
            forms={**state.view.forms, **self.view.forms},
        )
        return state.with_view(kept), landed_notice


Handler = Callable[[EventContext], Outcome]


def require_admin(handler: Handler) -> Handler:
    """Re-check the admin capability when the event runs.

    A non-admin gets the state back untouched and no notice.
    """

    @functools.wraps(handler)
    def wrapper(ctx: EventContext) -> Outcome:
        if not ctx.principal.is_admin:
            logger.info(
                "Ignoring admin event %s from non-admin user %s",
                handler.__name__,
                ctx.principal.user_id,
            )
            return ctx.unchanged()
        return handler(ctx)

    wrapper.requires_admin = True
    return wrapper


class EventDispatcher:
    def __init__(
        self,
        panel: str,
        router: TabRouter,
        handlers: Mapping[str, Handler],
        *,
        strict: bool | None = None,
    ) -> None:
        self.panel = panel
        self.router = router
        self.handlers: dict[str, Handler] = dict(handlers)
        self.strict = strict

    def _is_strict(self) -> bool:
        if self.strict is not None:
            return self.strict
        return bool(Config.PANELS_STRICT_EVENTS)

    def handle(
        self,
        event: str,
        params: Mapping[str, Any] | None,
        state: PanelState,
        principal: Principal,
        *,
        session: Session | None = None,
        config: ServerConfigSnapshot | None = None,
    ) -> Outcome:
        handler = self.handlers.get(event)
        if handler is None:
            if self._is_strict():
                raise UnknownEvent(self.panel, event)
            logger.warning("Ignoring unknown event %s for panel %s", event, self.panel)
            return state, None
        with maybe_session(session) as scoped:
            ctx = EventContext(
                state=state,
                principal=principal,
                params=dict(params or {}),
                session=scoped,
                config=config or ServerConfigSnapshot.from_config(),
                router=self.router,
            )
            return handler(ctx)
