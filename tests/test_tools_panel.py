from __future__ import annotations

import json
import unittest
from unittest import mock
from urllib.error import URLError

import support

from sqlalchemy import select

from core.db import session_scope
from core.models import AgentTool, MCPServer
from core.refs import Persisted
from services import agents, mcp_servers
from web.panels import tools
from web.panels.state import Existing, New, Notice

PANEL = tools.panel


class FakeResponse:
    def __init__(self, body: str = "", content_type: str = "application/json", headers=None):
        self.headers = {"Content-Type": content_type, **(headers or {})}
        self._body = body.encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> bool:
        return False


class ToolsPanelTestCase(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.create_principal("tools@example.com")

    def enter(self, tab="mcp_servers", params=None):
        return PANEL.enter(tab, self.user, params)

    def handle(self, event, params, state, principal=None):
        return PANEL.handle(event, params, state, principal or self.user)

    def create_server(self, name: str, *, owner=None, **attrs) -> int:
        owner = owner or self.user
        with session_scope() as session:
            return mcp_servers.create_server(
                session,
                {"name": name, "url": f"http://{name.lower()}.test/mcp", "user_id": owner.user_id, **attrs},
            ).id


class ServerCrudTests(ToolsPanelTestCase):
    def test_listing_starts_with_the_builtin_server(self) -> None:
        state, _ = self.enter()
        self.assertEqual(["builtin:reports"], [server["id"] for server in state.view.data["servers"]])
        self.assertTrue(state.view.data["servers"][0]["builtin"])

    def test_bad_headers_keep_the_form_open(self) -> None:
        state, _ = self.enter()
        state, _ = self.handle("show_add_mcp", {}, state)
        self.assertEqual(New(), state.view.editing["mcp"])

        submitted = {"name": "Search", "url": "http://search.test", "headers": "{oops"}
        failed, notice = self.handle("save_mcp", submitted, state)

        self.assertEqual(Notice.error("headers: Invalid JSON in config field"), notice)
        self.assertEqual(New(), failed.view.editing["mcp"])
        self.assertEqual("Search", failed.view.forms["mcp"]["name"])

    def test_url_scheme_is_validated(self) -> None:
        state, _ = self.handle("show_add_mcp", {}, self.enter()[0])
        _, notice = self.handle("save_mcp", {"name": "Search", "url": "ftp://x"}, state)
        self.assertEqual(Notice.error("url: must start with http:// or https://"), notice)

    def test_create_hides_the_api_key(self) -> None:
        state, _ = self.handle("show_add_mcp", {}, self.enter()[0])
        saved, notice = self.handle(
            "save_mcp",
            {
                "name": "Search",
                "url": "https://search.test/mcp",
                "api_key": "sk-secret",
                "headers": '{"X-Team": "core"}',
                "global": "true",
            },
            state,
        )

        self.assertEqual(Notice.info("Server saved"), notice)
        self.assertNotIn("mcp", saved.view.editing)
        created = saved.view.data["servers"][1]
        self.assertEqual("Search", created["name"])
        self.assertTrue(created["has_api_key"])
        self.assertTrue(created["global"])
        self.assertEqual({"X-Team": "core"}, created["headers"])
        self.assertNotIn("api_key", created)

    def test_update_with_blank_key_keeps_the_stored_key(self) -> None:
        server_id = self.create_server("Search", api_key="sk-old")
        state, _ = self.handle("edit_mcp", {"id": str(server_id)}, self.enter()[0])
        self.assertEqual(Existing(server_id), state.view.editing["mcp"])
        self.assertEqual("", state.view.forms["mcp"]["api_key"])

        _, notice = self.handle(
            "save_mcp",
            {"name": "Renamed", "url": "https://search.test/mcp", "api_key": ""},
            state,
        )

        self.assertEqual(Notice.info("Server saved"), notice)
        with session_scope() as session:
            server = session.get(MCPServer, server_id)
            self.assertEqual("Renamed", server.name)
            self.assertEqual("sk-old", server.api_key)

    def test_builtin_server_cannot_be_changed(self) -> None:
        state, _ = self.enter()
        for event in ("edit_mcp", "delete_mcp", "toggle_mcp_status"):
            _, notice = self.handle(event, {"id": "builtin:reports"}, state)
            self.assertEqual(Notice.error("Built-in servers cannot be changed"), notice)

    def test_toggle_flips_status(self) -> None:
        server_id = self.create_server("Search")
        state, _ = self.enter()
        state, notice = self.handle("toggle_mcp_status", {"id": str(server_id)}, state)
        self.assertEqual(Notice.info("Server inactive"), notice)
        self.assertEqual("inactive", state.view.data["servers"][1]["status"])
        state, notice = self.handle("toggle_mcp_status", {"id": str(server_id)}, state)
        self.assertEqual(Notice.info("Server active"), notice)

    def test_global_server_of_another_user_is_read_only(self) -> None:
        other = self.create_principal("other@example.com")
        server_id = self.create_server("Shared", owner=other, global_server=True)
        state, _ = self.enter()
        self.assertIn(server_id, [server["id"] for server in state.view.data["servers"]])

        _, notice = self.handle("delete_mcp", {"id": str(server_id)}, state)
        self.assertEqual(Notice.error("Failed to delete server"), notice)
        _, notice = self.handle("toggle_mcp_status", {"id": str(server_id)}, state)
        self.assertEqual(Notice.error("Failed to update status"), notice)
        with session_scope() as session:
            server = session.get(MCPServer, server_id)
            self.assertEqual("active", server.status)

    def test_private_server_of_another_user_is_not_found(self) -> None:
        other = self.create_principal("other@example.com")
        server_id = self.create_server("Private", owner=other)
        _, notice = self.handle("edit_mcp", {"id": str(server_id)}, self.enter()[0])
        self.assertEqual(Notice.error("Server not found"), notice)

    def test_delete_drops_agent_assignments(self) -> None:
        server_id = self.create_server("Search")
        with session_scope() as session:
            agent = agents.create_agent(session, {"name": "Scout", "user_id": self.user.user_id})
            agents.add_tool(session, agent.id, Persisted(server_id), self.user.user_id)

        state, notice = self.handle("delete_mcp", {"id": str(server_id)}, self.enter()[0])

        self.assertEqual(Notice.info("Server deleted"), notice)
        self.assertEqual(1, len(state.view.data["servers"]))
        with session_scope() as session:
            self.assertEqual([], list(session.execute(select(AgentTool)).scalars()))


class InspectToolsTests(ToolsPanelTestCase):
    def test_lists_tools_over_a_streamable_http_session(self) -> None:
        server_id = self.create_server("Search", api_key="sk-secret", headers={"X-Team": "core"})
        tools_event = {
            "jsonrpc": "2.0",
            "id": 2,
            "result": {
                "tools": [
                    {"name": "search", "description": "Find pages", "inputSchema": {"type": "object"}},
                    {"description": "nameless"},
                ]
            },
        }
        responses = [
            FakeResponse(
                json.dumps({"jsonrpc": "2.0", "id": 1, "result": {"protocolVersion": "2024-11-05"}}),
                headers={"Mcp-Session-Id": "abc123"},
            ),
            FakeResponse("", content_type=""),
            FakeResponse(
                "event: message\ndata: " + json.dumps(tools_event) + "\n\n",
                content_type="text/event-stream",
            ),
        ]
        with mock.patch("services.mcp_client.urlopen", side_effect=responses) as urlopen:
            state, notice = self.handle("inspect_tools", {"id": str(server_id)}, self.enter()[0])

        self.assertIsNone(notice)
        inspecting = state.view.data["inspecting"]
        self.assertEqual("Search", inspecting["name"])
        self.assertEqual(["search"], [tool["name"] for tool in inspecting["tools"]])
        self.assertEqual({"type": "object"}, inspecting["tools"][0]["input_schema"])

        methods = [json.loads(call.args[0].data)["method"] for call in urlopen.call_args_list]
        self.assertEqual(["initialize", "notifications/initialized", "tools/list"], methods)
        listing = urlopen.call_args_list[2].args[0]
        self.assertEqual("abc123", listing.get_header("Mcp-session-id"))
        self.assertEqual("Bearer sk-secret", listing.get_header("Authorization"))
        self.assertEqual("core", listing.get_header("X-team"))

        closed, _ = self.handle("close_tools_modal", {}, state)
        self.assertIsNone(closed.view.data["inspecting"])

    def test_unreachable_server_reports_an_error(self) -> None:
        server_id = self.create_server("Search")
        with mock.patch(
            "services.mcp_client.urlopen", side_effect=URLError("connection refused")
        ):
            state, notice = self.handle("inspect_tools", {"id": str(server_id)}, self.enter()[0])

        self.assertEqual(Notice.error("Could not list tools"), notice)
        self.assertEqual("connection refused", state.view.data["inspecting"]["error"])
        self.assertEqual([], state.view.data["inspecting"]["tools"])

    def test_builtin_server_shows_no_remote_tools(self) -> None:
        with mock.patch("services.mcp_client.urlopen") as urlopen:
            state, notice = self.handle("inspect_tools", {"id": "builtin-reports"}, self.enter()[0])
        self.assertIsNone(notice)
        self.assertEqual("Reports", state.view.data["inspecting"]["name"])
        urlopen.assert_not_called()


if __name__ == "__main__":
    unittest.main()
