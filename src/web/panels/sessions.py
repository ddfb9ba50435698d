from __future__ import annotations

import logging
import secrets
import threading
import time
from typing import Any, Callable, Mapping

from core.config import Config, ServerConfigSnapshot
from services.realtime_events import emit_panel_refreshed
from web.panels.dispatcher import Outcome
from web.panels.panel import Panel
from web.panels.refresh import PeriodicRefresh
from web.panels.state import PanelState, Principal

logger = logging.getLogger(__name__)


class PanelSession:
    """Per-browser panel state; events for one session run one at a time."""

    def __init__(self, session_id: str, principal: Principal) -> None:
        self.session_id = session_id
        self.principal = principal
        self.states: dict[str, PanelState] = {}
        self._lock = threading.Lock()
        self._refresh: PeriodicRefresh | None = None
        self._refresh_target: tuple[str, str] | None = None
        self.last_seen = 0.0

    @property
    def refresh(self) -> PeriodicRefresh | None:
        return self._refresh

    def state(self, panel_name: str) -> PanelState | None:
        return self.states.get(panel_name)

    def enter(
        self,
        panel: Panel,
        tab: str,
        params: Mapping[str, Any] | None = None,
        *,
        principal: Principal | None = None,
        config: ServerConfigSnapshot | None = None,
    ) -> Outcome:
        with self._lock:
            if principal is not None:
                self.principal = principal
            state, notice = panel.enter(tab, self.principal, params, config=config)
            self._store(panel, state)
            return state, notice

    def dispatch(
        self,
        panel: Panel,
        event: str,
        params: Mapping[str, Any] | None = None,
        *,
        principal: Principal | None = None,
        config: ServerConfigSnapshot | None = None,
    ) -> Outcome:
        with self._lock:
            if principal is not None:
                self.principal = principal
            state = self.states.get(panel.name)
            if state is None:
                state, _ = panel.enter(panel.default_tab, self.principal, config=config)
            state, notice = panel.handle(event, params, state, self.principal, config=config)
            self._store(panel, state)
            return state, notice

    def _store(self, panel: Panel, state: PanelState) -> None:
        self.states[panel.name] = state
        self._sync_refresh(panel, state.tab)

    def _sync_refresh(self, panel: Panel, tab: str) -> None:
        target = (panel.name, tab)
        if self._refresh is not None and self._refresh_target == target:
            return
        self._cancel_refresh()
        seconds = panel.refresh_seconds(tab)
        if not seconds or not panel.refresh_event:
            return
        self._refresh_target = target
        self._refresh = PeriodicRefresh(
            seconds,
            lambda: self._refresh_tick(panel, tab),
            name=f"{self.session_id}:{panel.name}/{tab}",
        ).start()
        logger.debug("Armed %ss refresh for %s/%s", seconds, panel.name, tab)

    def _cancel_refresh(self) -> None:
        if self._refresh is not None:
            self._refresh.cancel()
        self._refresh = None
        self._refresh_target = None

    def _refresh_tick(self, panel: Panel, tab: str) -> None:
        with self._lock:
            state = self.states.get(panel.name)
            if state is None or self._refresh_target != (panel.name, tab):
                return
            state, _ = panel.handle(panel.refresh_event, {}, state, self.principal)
            self.states[panel.name] = state
        emit_panel_refreshed(self.session_id, panel.name, state.tab)

    def close(self) -> None:
        with self._lock:
            self._cancel_refresh()
            self.states.clear()


class SessionStore:
    """Process-local registry of panel sessions keyed by an opaque id.

    A browser that goes away without logging out leaves its session behind;
    sessions not touched for ``idle_seconds`` are closed on the next lookup or
    by the background sweep, which also cancels any refresh timer they hold.
    """

    def __init__(
        self,
        *,
        idle_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sessions: dict[str, PanelSession] = {}
        self._lock = threading.Lock()
        self.idle_seconds = (
            Config.PANEL_SESSION_IDLE_SECONDS if idle_seconds is None else idle_seconds
        )
        self._clock = clock
        self._janitor: PeriodicRefresh | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    @staticmethod
    def new_id() -> str:
        return secrets.token_urlsafe(16)

    def get(self, session_id: str | None) -> PanelSession | None:
        if not session_id:
            return None
        with self._lock:
            expired = self._evict_idle_locked()
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_seen = self._clock()
        self._close_all(expired)
        return session

    def get_or_create(self, session_id: str | None, principal: Principal) -> PanelSession:
        with self._lock:
            expired = self._evict_idle_locked()
            session = self._sessions.get(session_id) if session_id else None
            if session is not None and session.principal.user_id != principal.user_id:
                # Another user signed in on this browser; start clean.
                self._sessions.pop(session.session_id, None)
                expired.append(session)
                session = None
            if session is None:
                session = PanelSession(session_id or self.new_id(), principal)
                self._sessions[session.session_id] = session
                logger.debug(
                    "Opened panel session %s for user %s",
                    session.session_id,
                    principal.user_id,
                )
            session.last_seen = self._clock()
            self._ensure_janitor_locked()
        self._close_all(expired)
        return session

    def evict_idle(self) -> int:
        with self._lock:
            expired = self._evict_idle_locked()
        self._close_all(expired)
        return len(expired)

    def _evict_idle_locked(self) -> list[PanelSession]:
        if not self.idle_seconds or self.idle_seconds <= 0:
            return []
        cutoff = self._clock() - self.idle_seconds
        expired = [
            session for session in self._sessions.values() if session.last_seen < cutoff
        ]
        for session in expired:
            del self._sessions[session.session_id]
        if expired:
            logger.info("Evicting %s idle panel session(s)", len(expired))
        return expired

    def _ensure_janitor_locked(self) -> None:
        if self._janitor is not None or not self.idle_seconds or self.idle_seconds <= 0:
            return
        interval = max(1.0, min(60.0, self.idle_seconds / 2))
        self._janitor = PeriodicRefresh(
            interval, self.evict_idle, name="panel-session-janitor"
        ).start()

    @staticmethod
    def _close_all(sessions: list[PanelSession]) -> None:
        for session in sessions:
            session.close()

    def drop(self, session_id: str | None) -> None:
        if not session_id:
            return
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.close()
            logger.debug("Dropped panel session %s", session_id)

    def clear(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            janitor, self._janitor = self._janitor, None
        if janitor is not None:
            janitor.cancel()
        self._close_all(sessions)


store = SessionStore()
