from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest import mock

import support

from core.db import session_scope
from services import chat, llm_registry, realtime_events, runs
from web.realtime import authorized_rooms


class AuthorizedRoomsTests(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.owner = self.create_principal("owner@example.com")
        other = self.create_principal("other@example.com")
        with session_scope() as session:
            self.own_run = runs.create_run(
                session, {"name": "Mine", "prompt": "x", "user_id": self.owner.user_id}
            ).id
            self.foreign_run = runs.create_run(
                session, {"name": "Theirs", "prompt": "x", "user_id": other.user_id}
            ).id

    def test_only_owned_runs_and_own_panel_session(self) -> None:
        rooms = authorized_rooms(
            [
                f"run:{self.own_run}",
                f"run:{self.foreign_run}",
                "run:abc",
                "panel_session:mine",
                "panel_session:someone-else",
                "flowchart:1",
                "",
                None,
            ],
            user_id=self.owner.user_id,
            panel_session_id="mine",
        )
        self.assertEqual(["panel_session:mine", f"run:{self.own_run}"], rooms)

    def test_no_panel_session_means_no_panel_room(self) -> None:
        rooms = authorized_rooms(
            ["panel_session:mine"], user_id=self.owner.user_id, panel_session_id=None
        )
        self.assertEqual([], rooms)

    def test_only_owned_conversations(self) -> None:
        other = self.create_principal("chatty@example.com")
        own = self._conversation(self.owner)
        foreign = self._conversation(other)
        rooms = authorized_rooms(
            [f"conversation:{own}", f"conversation:{foreign}", "conversation:x"],
            user_id=self.owner.user_id,
            panel_session_id=None,
        )
        self.assertEqual([f"conversation:{own}"], rooms)

    def _conversation(self, principal) -> int:
        with session_scope() as session:
            provider = llm_registry.create_provider(
                session,
                {"name": "P", "provider_type": "openai", "user_id": principal.user_id},
            )
            model = llm_registry.create_model(
                session,
                {
                    "name": "M",
                    "provider_id": provider.id,
                    "model_id": "gpt-4o",
                    "user_id": principal.user_id,
                },
            )
            return chat.create_conversation(
                session,
                {"title": "Chat", "llm_model_id": model.id, "user_id": principal.user_id},
            ).id


class EventEnvelopeTests(unittest.TestCase):
    def test_panel_refresh_goes_to_the_session_room(self) -> None:
        with mock.patch("services.realtime_events.emit_realtime") as emit:
            first = realtime_events.emit_panel_refreshed("abc", "pipeline", "pipeline")
            second = realtime_events.emit_panel_refreshed("abc", "pipeline", "pipeline")
        event_name, envelope = emit.call_args.args
        self.assertEqual("panel.refreshed", event_name)
        self.assertEqual("panel_session:abc", emit.call_args.kwargs["room"])
        self.assertEqual({"panel": "pipeline", "tab": "pipeline"}, envelope["payload"])
        self.assertEqual(first["sequence"] + 1, second["sequence"])

    def test_chat_updates_go_to_the_conversation_room(self) -> None:
        message = SimpleNamespace(
            id=4,
            conversation_id=2,
            status="complete",
            error=None,
            tool_calls=[SimpleNamespace(status="pending"), SimpleNamespace(status="rejected")],
        )
        with mock.patch("services.realtime_events.emit_realtime") as emit:
            envelope = realtime_events.emit_chat_updated(message)
        self.assertEqual("chat.updated", emit.call_args.args[0])
        self.assertEqual("conversation:2", emit.call_args.kwargs["room"])
        self.assertEqual(1, envelope["payload"]["pending_tool_calls"])
        self.assertEqual(4, envelope["payload"]["message_id"])


if __name__ == "__main__":
    unittest.main()
