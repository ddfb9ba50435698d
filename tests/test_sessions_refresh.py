from __future__ import annotations

import threading
import time
import unittest
from unittest import mock

import support

from web.panels import pipeline, sources
from web.panels.panel import Panel
from web.panels.refresh import PeriodicRefresh
from web.panels.router import TabSpec
from web.panels.sessions import PanelSession, SessionStore
from web.panels.state import Principal


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class PeriodicRefreshTests(unittest.TestCase):
    def test_ticks_until_cancelled(self) -> None:
        ticked = threading.Event()
        refresh = PeriodicRefresh(0.02, ticked.set, name="test").start()
        self.assertTrue(ticked.wait(2.0))
        self.assertTrue(_wait_for(lambda: refresh.ticks >= 2))

        refresh.cancel()
        self.assertFalse(refresh.active)
        settled = refresh.ticks
        time.sleep(0.1)
        self.assertLessEqual(refresh.ticks, settled + 1)
        refresh.cancel()

    def test_interval_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            PeriodicRefresh(0, lambda: None)

    def test_failing_callback_keeps_ticking(self) -> None:
        callback = mock.Mock(side_effect=RuntimeError("boom"))
        refresh = PeriodicRefresh(0.02, callback, name="failing").start()
        try:
            self.assertTrue(_wait_for(lambda: callback.call_count >= 2))
        finally:
            refresh.cancel()


class PanelSessionRefreshTests(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.principal = self.create_principal("watcher@example.com")
        self.session = PanelSession("sess-1", self.principal)
        self.addCleanup(self.session.close)

    def test_pipeline_tab_arms_refresh_and_leaving_cancels_it(self) -> None:
        self.session.enter(pipeline.panel, "pipeline")
        refresh = self.session.refresh
        self.assertIsNotNone(refresh)
        self.assertTrue(refresh.active)

        self.session.enter(pipeline.panel, "pipeline")
        self.assertIs(refresh, self.session.refresh)

        self.session.enter(sources.panel, "sources")
        self.assertIsNone(self.session.refresh)
        self.assertFalse(refresh.active)

    def test_refresh_dispatches_the_panel_refresh_event(self) -> None:
        calls: list[int] = []

        def tick(ctx):
            calls.append(1)
            return ctx.update(ctx.view.with_data(count=len(calls)))

        ticker = Panel.build(
            "ticker",
            [TabSpec("main", lambda ctx: {"count": 0}, refresh_seconds=0.02)],
            {"tick": tick},
            default_tab="main",
            refresh_event="tick",
        )
        refreshed = threading.Event()
        with mock.patch(
            "web.panels.sessions.emit_panel_refreshed",
            side_effect=lambda *args: refreshed.set(),
        ) as emit:
            self.session.enter(ticker, "main")
            self.assertTrue(refreshed.wait(2.0))
            self.session.close()
        emit.assert_any_call("sess-1", "ticker", "main")
        self.assertGreaterEqual(len(calls), 1)


class SessionStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SessionStore()
        self.addCleanup(self.store.clear)
        self.alice = Principal(user_id=1, email="alice@example.com")
        self.bob = Principal(user_id=2, email="bob@example.com")

    def test_reuses_session_for_same_user(self) -> None:
        first = self.store.get_or_create(None, self.alice)
        again = self.store.get_or_create(first.session_id, self.alice)
        self.assertIs(first, again)
        self.assertEqual(1, len(self.store))

    def test_user_switch_starts_clean(self) -> None:
        first = self.store.get_or_create(None, self.alice)
        first.states["profile"] = mock.sentinel.state
        switched = self.store.get_or_create(first.session_id, self.bob)
        self.assertIsNot(first, switched)
        self.assertEqual(self.bob, switched.principal)
        self.assertEqual({}, switched.states)
        self.assertEqual({}, first.states)

    def test_drop_forgets_session(self) -> None:
        first = self.store.get_or_create(None, self.alice)
        self.store.drop(first.session_id)
        self.store.drop(None)
        self.assertIsNone(self.store.get(first.session_id))
        self.assertEqual(0, len(self.store))


class SessionEvictionTests(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.now = [1000.0]
        self.store = SessionStore(idle_seconds=60, clock=lambda: self.now[0])
        self.addCleanup(self.store.clear)
        self.principal = self.create_principal("idle@example.com")

    def test_idle_session_is_evicted_and_its_refresh_stops(self) -> None:
        with mock.patch("web.panels.sessions.emit_panel_refreshed"):
            idle = self.store.get_or_create(None, self.principal)
            idle.enter(pipeline.panel, "pipeline")
            refresh = idle.refresh
            self.assertTrue(refresh.active)

            self.now[0] += 30
            active = self.store.get_or_create(None, self.principal)
            self.now[0] += 45

            self.assertEqual(1, self.store.evict_idle())
        self.assertFalse(refresh.active)
        self.assertIsNone(idle.refresh)
        self.assertEqual({}, idle.states)
        self.assertIsNone(self.store.get(idle.session_id))
        self.assertIs(active, self.store.get(active.session_id))

    def test_abandoned_sessions_do_not_accumulate(self) -> None:
        for _ in range(500):
            self.store.get_or_create(None, self.principal)
        self.assertEqual(500, len(self.store))

        self.now[0] += 61
        survivor = self.store.get_or_create(None, self.principal)
        self.assertEqual(1, len(self.store))
        self.assertIs(survivor, self.store.get(survivor.session_id))

    def test_lookup_keeps_a_session_alive(self) -> None:
        session = self.store.get_or_create(None, self.principal)
        for _ in range(3):
            self.now[0] += 50
            self.assertIs(session, self.store.get(session.session_id))
        self.assertEqual(0, self.store.evict_idle())

    def test_zero_ttl_disables_eviction(self) -> None:
        store = SessionStore(idle_seconds=0, clock=lambda: self.now[0])
        self.addCleanup(store.clear)
        store.get_or_create(None, self.principal)
        self.now[0] += 10_000
        self.assertEqual(0, store.evict_idle())
        self.assertEqual(1, len(store))


class PipelinePanelTests(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.create_principal("user@example.com")
        self.admin = self.create_principal("admin@example.com", admin=True)

    def test_scope_toggle_is_admin_only(self) -> None:
        state, _ = pipeline.panel.enter("pipeline", self.user, {"scope": "all"})
        self.assertEqual("user", state.view.data["scope"])
        unchanged, notice = pipeline.panel.handle(
            "pipeline_toggle_scope", {}, state, self.user
        )
        self.assertIs(state, unchanged)
        self.assertIsNone(notice)

        state, _ = pipeline.panel.enter("pipeline", self.admin)
        state, _ = pipeline.panel.handle("pipeline_toggle_scope", {}, state, self.admin)
        self.assertEqual("all", state.view.data["scope"])

    def test_window_selection_and_refresh_keep_current_values(self) -> None:
        state, _ = pipeline.panel.enter("pipeline", self.admin, {"scope": "all"})
        state, _ = pipeline.panel.handle(
            "pipeline_select_window", {"window": "day"}, state, self.admin
        )
        self.assertEqual("day", state.view.data["window"])

        ignored, _ = pipeline.panel.handle(
            "pipeline_select_window", {"window": "year"}, state, self.admin
        )
        self.assertIs(state, ignored)

        state, _ = pipeline.panel.handle(
            "pipeline_search_jobs", {"search": "  docs  "}, state, self.admin
        )
        refreshed, _ = pipeline.panel.handle("pipeline_refresh", {}, state, self.admin)
        self.assertEqual("all", refreshed.view.data["scope"])
        self.assertEqual("day", refreshed.view.data["window"])
        self.assertEqual("docs", refreshed.view.data["search"])
        self.assertEqual(1, refreshed.view.data["jobs"]["page"])


if __name__ == "__main__":
    unittest.main()
