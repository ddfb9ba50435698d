from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Union

from sqlalchemy.orm import Session

from core.config import ServerConfigSnapshot
from core.db import session_scope
from services.errors import NotFound
from web.panels.state import Editing, Notice, PanelState, Principal, Redirect, View

logger = logging.getLogger(__name__)


@dataclass
class LoadContext:
    principal: Principal
    params: Mapping[str, Any]
    session: Session
    config: ServerConfigSnapshot

    @property
    def user_id(self) -> int:
        return self.principal.user_id

    def param(self, name: str, default: Any = None) -> Any:
        value = self.params.get(name)
        return default if value is None or value == "" else value


@dataclass
class Loaded:
    """Loader result that also opens forms alongside the tab payload."""

    data: Mapping[str, Any]
    editing: Mapping[str, Editing] = field(default_factory=dict)
    forms: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)


Loader = Callable[[LoadContext], Union[Mapping[str, Any], Loaded]]


@dataclass(frozen=True)
class TabSpec:
    name: str
    loader: Loader | None = None
    admin_only: bool = False
    # Tab to fall back to when the loader reports a missing entity.
    fallback: str | None = None
    refresh_seconds: float | None = None


@contextmanager
def maybe_session(session: Session | None) -> Iterator[Session]:
    if session is not None:
        yield session
        return
    with session_scope() as scoped:
        yield scoped


class TabRouter:
    def __init__(self, panel: str, tabs: list[TabSpec], *, default_tab: str) -> None:
        self.panel = panel
        self.tabs: dict[str, TabSpec] = {spec.name: spec for spec in tabs}
        if default_tab not in self.tabs:
            raise ValueError(f"Default tab {default_tab!r} is not registered for {panel}")
        self.default_tab = default_tab

    def spec(self, tab: str) -> TabSpec | None:
        return self.tabs.get(tab)

    def enter(
        self,
        tab: str,
        principal: Principal,
        params: Mapping[str, Any] | None = None,
        *,
        session: Session | None = None,
        config: ServerConfigSnapshot | None = None,
    ) -> tuple[PanelState | None, Redirect | None]:
        """Build a fresh view for ``tab`` or say where to go instead.

        Admin gating is evaluated on every entry; a refused entry never
        reaches the loader.
        """
        spec = self.tabs.get(tab)
        if spec is None:
            logger.debug("Unknown tab %s/%s; redirecting to default", self.panel, tab)
            return None, Redirect(self.panel, self.default_tab)
        if spec.admin_only and not principal.is_admin:
            logger.info(
                "Non-admin user %s refused admin tab %s/%s",
                principal.user_id,
                self.panel,
                tab,
            )
            return None, Redirect(self.panel, self.default_tab)

        params = dict(params or {})
        if spec.loader is None:
            return PanelState(self.panel, View(tab=tab, params=params)), None

        config = config or ServerConfigSnapshot.from_config()
        try:
            with maybe_session(session) as scoped:
                loaded = spec.loader(
                    LoadContext(
                        principal=principal, params=params, session=scoped, config=config
                    )
                )
        except NotFound as exc:
            fallback = spec.fallback or self.default_tab
            logger.info("%s while entering %s/%s", exc, self.panel, tab)
            return None, Redirect(self.panel, fallback, Notice.error(str(exc)))

        if isinstance(loaded, Loaded):
            view = View(
                tab=tab,
                data=loaded.data,
                editing=loaded.editing,
                forms=loaded.forms,
                params=params,
            )
        else:
            view = View(tab=tab, data=loaded, params=params)
        return PanelState(self.panel, view), None

    def resolve(
        self,
        tab: str,
        principal: Principal,
        params: Mapping[str, Any] | None = None,
        *,
        session: Session | None = None,
        config: ServerConfigSnapshot | None = None,
    ) -> tuple[PanelState, Notice | None]:
        """Enter ``tab``, following at most one redirect."""
        state, redirect = self.enter(tab, principal, params, session=session, config=config)
        if state is not None:
            return state, None
        state, _ = self.enter(redirect.tab, principal, session=session, config=config)
        if state is None:
            # The fallback tab itself redirected; land on the bare default tab.
            state = PanelState(self.panel, View(tab=self.default_tab))
        return state, redirect.notice
