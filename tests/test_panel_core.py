from __future__ import annotations

import unittest
from unittest import mock

import support

from services.errors import NotFound
from web.panels.dispatcher import EventDispatcher, UnknownEvent, require_admin
from web.panels.panel import Panel
from web.panels.router import TabRouter, TabSpec
from web.panels.state import Existing, New, Notice, PanelState, Principal, View

ADMIN = Principal(user_id=1, email="admin@example.com", is_admin=True)
MEMBER = Principal(user_id=2, email="member@example.com", is_admin=False)


def _missing(ctx):
    raise NotFound("Widget", ctx.param("id"))


class TabRouterTests(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.secret_loader = mock.Mock(return_value={"secret": True})
        self.router = TabRouter(
            "demo",
            [
                TabSpec("home", lambda ctx: {"home": True}),
                TabSpec("secret", self.secret_loader, admin_only=True),
                TabSpec("widget", _missing, fallback="widgets"),
                TabSpec("widgets", lambda ctx: {"widgets": []}),
            ],
            default_tab="home",
        )

    def test_admin_tab_redirects_non_admin_without_loading(self) -> None:
        state, redirect = self.router.enter("secret", MEMBER)
        self.assertIsNone(state)
        self.assertEqual("home", redirect.tab)
        self.secret_loader.assert_not_called()

        state, notice = self.router.resolve("secret", MEMBER)
        self.assertEqual("home", state.tab)
        self.assertEqual({"home": True}, dict(state.view.data))
        self.assertIsNone(notice)
        self.secret_loader.assert_not_called()

    def test_admin_tab_loads_for_admin(self) -> None:
        state, redirect = self.router.enter("secret", ADMIN)
        self.assertIsNone(redirect)
        self.assertEqual({"secret": True}, dict(state.view.data))
        self.secret_loader.assert_called_once()

    def test_unknown_tab_lands_on_default(self) -> None:
        state, notice = self.router.resolve("nope", MEMBER)
        self.assertEqual("home", state.tab)
        self.assertIsNone(notice)

    def test_missing_entity_redirects_to_fallback_with_notice(self) -> None:
        state, notice = self.router.resolve("widget", MEMBER, {"id": "9"})
        self.assertEqual("widgets", state.tab)
        self.assertEqual(Notice.error("Widget not found"), notice)

    def test_params_are_kept_on_the_view(self) -> None:
        state, _ = self.router.resolve("widgets", MEMBER, {"page": "2"})
        self.assertEqual({"page": "2"}, dict(state.view.params))

    def test_default_tab_must_be_registered(self) -> None:
        with self.assertRaises(ValueError):
            TabRouter("demo", [TabSpec("home")], default_tab="missing")


class ViewStateTests(unittest.TestCase):
    def test_cancelling_twice_leaves_state_unchanged(self) -> None:
        view = View(tab="home").start_editing("agent", New(), form={"name": "x"})
        once = view.stop_editing("agent")
        twice = once.stop_editing("agent")
        self.assertEqual(once, twice)
        self.assertEqual({}, dict(twice.editing))
        self.assertEqual({}, dict(twice.forms))

    def test_confirmation_is_scoped_by_kind(self) -> None:
        view = View(tab="agents").request_confirmation("agent", 3)
        self.assertEqual({"agent": 3}, dict(view.pending))
        self.assertEqual({}, dict(view.clear_confirmation("agent").pending))
        self.assertEqual(view, view.clear_confirmation("team"))

    def test_view_mappings_are_read_only(self) -> None:
        view = View(tab="home", data={"a": 1})
        with self.assertRaises(TypeError):
            view.data["a"] = 2  # type: ignore[index]

    def test_editing_markers_serialize(self) -> None:
        self.assertEqual("new", New().to_payload())
        self.assertEqual(4, Existing(4).to_payload())


class EventDispatcherTests(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        router = TabRouter(
            "demo",
            [TabSpec("home", lambda ctx: {"count": int(ctx.param("count", 0))})],
            default_tab="home",
        )

        @require_admin
        def bump(ctx):
            return ctx.reload(Notice.info("bumped"), count=ctx.view.data["count"] + 1)

        def rename(ctx):
            return ctx.update(ctx.view.with_data(name=ctx.param("name")))

        self.handlers = {"bump": bump, "rename": rename}
        self.router = router
        self.state = PanelState("demo", View(tab="home", data={"count": 0}))

    def test_admin_event_is_a_silent_no_op_for_non_admin(self) -> None:
        dispatcher = EventDispatcher("demo", self.router, self.handlers, strict=True)
        state, notice = dispatcher.handle("bump", {}, self.state, MEMBER)
        self.assertIs(self.state, state)
        self.assertIsNone(notice)

    def test_admin_event_runs_for_admin(self) -> None:
        dispatcher = EventDispatcher("demo", self.router, self.handlers, strict=True)
        state, notice = dispatcher.handle("bump", {}, self.state, ADMIN)
        self.assertEqual(1, state.view.data["count"])
        self.assertEqual(Notice.info("bumped"), notice)

    def test_plain_event_updates_view(self) -> None:
        dispatcher = EventDispatcher("demo", self.router, self.handlers, strict=True)
        state, _ = dispatcher.handle("rename", {"name": "x"}, self.state, MEMBER)
        self.assertEqual("x", state.view.data["name"])

    def test_unknown_event_raises_when_strict(self) -> None:
        dispatcher = EventDispatcher("demo", self.router, self.handlers, strict=True)
        with self.assertRaises(UnknownEvent):
            dispatcher.handle("nope", {}, self.state, ADMIN)

    def test_unknown_event_is_ignored_when_lenient(self) -> None:
        dispatcher = EventDispatcher("demo", self.router, self.handlers, strict=False)
        state, notice = dispatcher.handle("nope", {}, self.state, ADMIN)
        self.assertIs(self.state, state)
        self.assertIsNone(notice)

    def test_panel_build_wires_router_and_dispatcher(self) -> None:
        panel = Panel.build(
            "demo",
            [TabSpec("home", lambda ctx: {"count": 0}, refresh_seconds=2.0)],
            self.handlers,
            default_tab="home",
            refresh_event="rename",
        )
        self.assertEqual("home", panel.default_tab)
        self.assertEqual(2.0, panel.refresh_seconds("home"))
        self.assertIsNone(panel.refresh_seconds("missing"))
        state, _ = panel.enter("home", MEMBER)
        self.assertEqual("home", state.tab)


if __name__ == "__main__":
    unittest.main()
