from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy.orm import Session

from core.config import ServerConfigSnapshot
from web.panels.dispatcher import EventDispatcher, Handler, Outcome
from web.panels.router import TabRouter, TabSpec
from web.panels.state import PanelState, Principal


@dataclass(frozen=True)
class Panel:
    """A tab table plus the event table that acts on it."""

    name: str
    router: TabRouter
    dispatcher: EventDispatcher
    # Event a periodic refresh dispatches while a tab with refresh_seconds is open.
    refresh_event: str | None = None

    @classmethod
    def build(
        cls,
        name: str,
        tabs: list[TabSpec],
        handlers: Mapping[str, Handler],
        *,
        default_tab: str,
        refresh_event: str | None = None,
    ) -> "Panel":
        router = TabRouter(name, tabs, default_tab=default_tab)
        return cls(
            name=name,
            router=router,
            dispatcher=EventDispatcher(name, router, handlers),
            refresh_event=refresh_event,
        )

    @property
    def default_tab(self) -> str:
        return self.router.default_tab

    def refresh_seconds(self, tab: str) -> float | None:
        spec = self.router.spec(tab)
        return spec.refresh_seconds if spec is not None else None

    def enter(
        self,
        tab: str,
        principal: Principal,
        params: Mapping[str, Any] | None = None,
        *,
        session: Session | None = None,
        config: ServerConfigSnapshot | None = None,
    ) -> Outcome:
        return self.router.resolve(tab, principal, params, session=session, config=config)

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
        return self.dispatcher.handle(
            event, params, state, principal, session=session, config=config
        )
