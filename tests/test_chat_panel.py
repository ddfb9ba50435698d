from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest import mock

import support

from sqlalchemy import func, select

from core.config import Config
from core.db import session_scope
from core.models import (
    MESSAGE_STATUS_COMPLETE,
    MESSAGE_STATUS_FAILED,
    MESSAGE_STATUS_STREAMING,
    TOOL_CALL_STATUS_COMPLETED,
    TOOL_CALL_STATUS_FAILED,
    TOOL_CALL_STATUS_PENDING,
    ChatMessage,
    ToolCall,
    UsageRecord,
)
from services import chat, chat_runner, llm_registry, mcp_servers
from services.llm_client import ChatResult, LLMClientError, ToolRequest
from services.mcp_client import MCPClientError, MCPTool, ToolOutput
from web.panels import chat as chat_panel
from web.panels.state import Notice

PANEL = chat_panel.panel


class TitleTests(unittest.TestCase):
    def test_title_is_the_first_line(self) -> None:
        self.assertEqual("Plan the launch", chat.truncate_title("  Plan the launch\nwith details"))

    def test_long_titles_are_shortened(self) -> None:
        self.assertEqual("x" * 47 + "...", chat.truncate_title("x" * 60))
        self.assertEqual("y" * 50, chat.truncate_title("y" * 50))

    def test_blank_title_falls_back(self) -> None:
        self.assertEqual("New conversation", chat.truncate_title("   "))


class ChatTestCase(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.create_principal("chatter@example.com")
        with session_scope() as session:
            provider = llm_registry.create_provider(
                session,
                {"name": "Local", "provider_type": "openai", "user_id": self.user.user_id},
            )
            self.model_id = llm_registry.create_model(
                session,
                {
                    "name": "Assistant",
                    "provider_id": provider.id,
                    "model_id": "gpt-4o-mini",
                    "user_id": self.user.user_id,
                },
            ).id
        for target in (
            "services.tasks.emit_chat_updated",
            "services.chat_runner.emit_chat_updated",
        ):
            patcher = mock.patch(target)
            patcher.start()
            self.addCleanup(patcher.stop)

    def enter(self, tab="conversations", params=None, principal=None):
        return PANEL.enter(tab, principal or self.user, params)

    def handle(self, event, params, state, principal=None):
        return PANEL.handle(event, params, state, principal or self.user)

    def send(self, content, state=None, task_id="task-1"):
        state = state or self.enter()[0]
        with mock.patch(
            "services.tasks.generate_reply.delay", return_value=SimpleNamespace(id=task_id)
        ) as delay:
            state, notice = self.handle("send_message", {"content": content}, state)
        return state, notice, delay

    def create_server(self, name="Search") -> int:
        with session_scope() as session:
            return mcp_servers.create_server(
                session,
                {
                    "name": name,
                    "url": f"http://{name.lower()}.test/mcp",
                    "user_id": self.user.user_id,
                },
            ).id

    def pending_reply(self, content="Hello", system_prompt="Be brief") -> tuple[int, int]:
        with session_scope() as session:
            conversation = chat.create_conversation(
                session,
                {"title": "Chat", "system_prompt": system_prompt, "user_id": self.user.user_id},
            )
            chat.send_message(session, conversation.id, self.user.user_id, content)
            return conversation.id, chat.start_reply(session, conversation).id


class ConversationPanelTests(ChatTestCase):
    def test_first_message_starts_a_conversation_and_enqueues_the_reply(self) -> None:
        state, notice, delay = self.send("Plan the launch\nwith details", task_id="task-9")

        self.assertIsNone(notice)
        self.assertEqual("conversation", state.tab)
        self.assertEqual("Plan the launch", state.view.data["conversation"]["title"])
        self.assertEqual("Assistant", state.view.data["conversation"]["model_name"])
        messages = state.view.data["messages"]
        self.assertEqual(["user", "assistant"], [message["role"] for message in messages])
        self.assertEqual(
            [MESSAGE_STATUS_COMPLETE, MESSAGE_STATUS_STREAMING],
            [message["status"] for message in messages],
        )
        self.assertTrue(state.view.data["streaming"])
        reply_id = messages[1]["id"]
        delay.assert_called_once_with(reply_id, self.user.user_id, [], False)
        with session_scope() as session:
            self.assertEqual("task-9", session.get(ChatMessage, reply_id).task_id)

    def test_blank_message_is_ignored(self) -> None:
        state = self.enter()[0]
        same, notice, delay = self.send("   ", state)
        self.assertIsNone(notice)
        self.assertEqual(state.view, same.view)
        delay.assert_not_called()

    def test_sending_while_a_reply_streams_is_refused(self) -> None:
        state, _, _ = self.send("First")
        same, notice, delay = self.send("Second", state)
        self.assertEqual(Notice.error("A response is still being generated"), notice)
        self.assertEqual(2, len(same.view.data["messages"]))
        delay.assert_not_called()

    def test_no_model_means_no_conversation(self) -> None:
        stranger = self.create_principal("modelless@example.com")
        state = self.enter(principal=stranger)[0]
        with mock.patch("services.tasks.generate_reply.delay") as delay:
            same, notice = self.handle(
                "send_message", {"content": "Hello"}, state, principal=stranger
            )
        self.assertEqual(Notice.error("No model available"), notice)
        self.assertEqual("conversations", same.tab)
        delay.assert_not_called()

    def test_broker_failure_marks_the_reply_failed(self) -> None:
        with mock.patch(
            "services.tasks.generate_reply.delay", side_effect=ConnectionError("broker down")
        ):
            state, notice = self.handle("send_message", {"content": "Hello"}, self.enter()[0])
        self.assertEqual(Notice.error("Failed to send message"), notice)
        self.assertEqual("conversation", state.tab)
        reply = state.view.data["messages"][-1]
        self.assertEqual(MESSAGE_STATUS_FAILED, reply["status"])
        self.assertEqual("Could not enqueue reply: broker down", reply["error"])
        self.assertFalse(state.view.data["streaming"])

    def test_cancel_then_retry(self) -> None:
        state, _, _ = self.send("Hello")

        state, notice = self.handle("cancel_stream", {}, state)
        self.assertEqual(Notice.info("Response cancelled"), notice)
        self.assertEqual("Cancelled", state.view.data["messages"][-1]["error"])
        self.assertFalse(state.view.data["streaming"])

        _, notice = self.handle("cancel_stream", {}, state)
        self.assertEqual(Notice.error("No response is being generated"), notice)

        with mock.patch(
            "services.tasks.generate_reply.delay", return_value=SimpleNamespace(id="task-2")
        ) as delay:
            state, notice = self.handle("retry_message", {}, state)
        self.assertIsNone(notice)
        messages = state.view.data["messages"]
        self.assertEqual(2, len(messages))
        self.assertEqual(MESSAGE_STATUS_STREAMING, messages[-1]["status"])
        delay.assert_called_once_with(messages[-1]["id"], self.user.user_id, [], False)

    def test_retry_needs_a_failed_reply(self) -> None:
        conversation_id, reply_id = self.pending_reply()
        with session_scope() as session:
            session.get(ChatMessage, reply_id).status = MESSAGE_STATUS_COMPLETE
        state, _ = self.enter("conversation", {"id": str(conversation_id)})
        _, notice = self.handle("retry_message", {}, state)
        self.assertEqual(Notice.error("Nothing to retry"), notice)

    def test_delete_archives_after_confirmation(self) -> None:
        state, _, _ = self.send("Hello")
        conversation_id = state.view.data["conversation"]["id"]
        target = {"id": str(conversation_id)}

        unconfirmed, _ = self.handle("delete_conversation", target, state)
        self.assertEqual(state.view, unconfirmed.view)

        state, _ = self.handle("confirm_delete_conversation", target, state)
        state, notice = self.handle("delete_conversation", target, state)
        self.assertEqual(Notice.info("Conversation deleted"), notice)
        self.assertEqual("conversations", state.tab)
        self.assertEqual([], state.view.data["conversations"])

        gone, notice = self.enter("conversation", target)
        self.assertEqual("conversations", gone.tab)
        self.assertEqual(Notice.error("Conversation not found"), notice)

    def test_conversations_of_other_users_are_not_found(self) -> None:
        state, _, _ = self.send("Private")
        stranger = self.create_principal("stranger@example.com")
        target = {"id": str(state.view.data["conversation"]["id"])}
        gone, notice = self.enter("conversation", target, principal=stranger)
        self.assertEqual("conversations", gone.tab)
        self.assertEqual(Notice.error("Conversation not found"), notice)


class ToolPickerTests(ChatTestCase):
    def test_picker_lists_tools_and_selection_reaches_the_worker(self) -> None:
        server_id = self.create_server()
        state = self.enter()[0]
        search = MCPTool("search", "Find documents", {"type": "object"})
        with mock.patch("services.mcp_client.list_tools", return_value=[search]):
            state, _ = self.handle("toggle_tool_picker", {}, state)
        tools = state.view.data["tools"]
        self.assertTrue(tools["picker_open"])
        self.assertEqual(
            ["builtin:reports", str(server_id)], [server["id"] for server in tools["servers"]]
        )
        self.assertEqual([], tools["servers"][0]["tools"])
        self.assertEqual([search.to_payload()], tools["servers"][1]["tools"])

        with mock.patch("services.mcp_client.list_tools", return_value=[search]):
            state, _ = self.handle("toggle_server", {"id": str(server_id)}, state)
            state, _ = self.handle("toggle_auto_confirm", {}, state)
        self.assertEqual([str(server_id)], state.view.data["tools"]["selected"])
        self.assertTrue(state.view.data["tools"]["auto_confirm"])

        with mock.patch("services.mcp_client.list_tools", return_value=[search]):
            state, _, delay = self.send("Look it up", state)
        reply_id = state.view.data["messages"][-1]["id"]
        delay.assert_called_once_with(reply_id, self.user.user_id, [str(server_id)], True)
        self.assertEqual([str(server_id)], state.view.data["tools"]["selected"])

    def test_unreachable_server_reports_per_server_error(self) -> None:
        self.create_server()
        with mock.patch(
            "services.mcp_client.list_tools", side_effect=MCPClientError("down")
        ):
            state, _ = self.handle("toggle_tool_picker", {}, self.enter()[0])
        self.assertEqual("Could not list tools", state.view.data["tools"]["servers"][1]["error"])

    def test_inactive_servers_are_not_offered(self) -> None:
        server_id = self.create_server()
        with session_scope() as session:
            mcp_servers.toggle_status(session, server_id, self.user.user_id)
        state = self.enter()[0]
        self.assertEqual(
            ["builtin:reports"], [server["id"] for server in state.view.data["tools"]["servers"]]
        )

    def test_clear_tools_resets_selection(self) -> None:
        server_id = self.create_server()
        state, _ = self.handle("toggle_server", {"id": str(server_id)}, self.enter()[0])
        state, _ = self.handle("clear_tools", {}, state)
        self.assertEqual([], state.view.data["tools"]["selected"])
        self.assertFalse(state.view.data["tools"]["auto_confirm"])


class ChatRunnerTests(ChatTestCase):
    def test_plain_reply_is_recorded_with_usage(self) -> None:
        _, reply_id = self.pending_reply()
        executor = mock.Mock(
            return_value=ChatResult(content="Hi there", input_tokens=5, output_tokens=2)
        )

        status = chat_runner.respond(reply_id, self.user.user_id, executor=executor)

        self.assertEqual(MESSAGE_STATUS_COMPLETE, status)
        model, messages, tools = executor.call_args.args
        self.assertEqual(self.model_id, model.id)
        self.assertEqual(
            [{"role": "system", "content": "Be brief"}, {"role": "user", "content": "Hello"}],
            messages,
        )
        self.assertEqual([], tools)
        with session_scope() as session:
            reply = session.get(ChatMessage, reply_id)
            self.assertEqual("Hi there", reply.content)
            self.assertEqual(5, reply.input_tokens)
            self.assertIsNotNone(reply.completed_at)
            record = session.execute(select(UsageRecord)).scalar_one()
            self.assertEqual(7, record.total_tokens)
            self.assertIsNone(record.run_id)

    def test_only_streaming_replies_are_generated(self) -> None:
        _, reply_id = self.pending_reply()
        with session_scope() as session:
            chat.fail_message(session.get(ChatMessage, reply_id), "Cancelled")
        executor = mock.Mock()
        self.assertIsNone(chat_runner.respond(reply_id, self.user.user_id, executor=executor))
        executor.assert_not_called()

    def test_model_failure_fails_the_reply(self) -> None:
        _, reply_id = self.pending_reply()
        executor = mock.Mock(side_effect=LLMClientError("rate limited"))
        status = chat_runner.respond(reply_id, self.user.user_id, executor=executor)
        self.assertEqual(MESSAGE_STATUS_FAILED, status)
        with session_scope() as session:
            self.assertEqual("rate limited", session.get(ChatMessage, reply_id).error)

    def test_cancel_during_generation_wins(self) -> None:
        conversation_id, reply_id = self.pending_reply()

        def executor(model, messages, tools):
            with session_scope() as session:
                chat.cancel_stream(session, conversation_id, self.user.user_id)
            return ChatResult(content="too late", input_tokens=3)

        status = chat_runner.respond(reply_id, self.user.user_id, executor=executor)

        self.assertEqual(MESSAGE_STATUS_FAILED, status)
        with session_scope() as session:
            reply = session.get(ChatMessage, reply_id)
            self.assertEqual("", reply.content)
            self.assertEqual("Cancelled", reply.error)
            self.assertEqual(0, session.execute(select(func.count(UsageRecord.id))).scalar_one())

    def test_tool_call_waits_for_approval_then_continues(self) -> None:
        server_id = self.create_server()
        conversation_id, reply_id = self.pending_reply()
        name = chat_runner.function_name(server_id, "search")
        first = mock.Mock(
            return_value=ChatResult(
                content="", tool_calls=[ToolRequest("call-1", name, {"q": "docs"})]
            )
        )
        with mock.patch("services.mcp_client.list_tools", return_value=[MCPTool("search")]):
            status = chat_runner.respond(
                reply_id, self.user.user_id, server_keys=[str(server_id)], executor=first
            )
        self.assertEqual(MESSAGE_STATUS_COMPLETE, status)
        self.assertEqual(
            [
                {
                    "type": "function",
                    "function": {
                        "name": name,
                        "description": "",
                        "parameters": {"type": "object", "properties": {}},
                    },
                }
            ],
            first.call_args.args[2],
        )

        state, _ = self.enter("conversation", {"id": str(conversation_id)})
        self.assertEqual(["call-1"], state.view.data["pending_tool_calls"])
        call = state.view.data["messages"][-1]["tool_calls"][0]
        self.assertEqual(("search", str(server_id)), (call["tool_name"], call["server_ref"]))
        self.assertEqual(TOOL_CALL_STATUS_PENDING, call["status"])

        _, notice, _ = self.send("Another question", state)
        self.assertEqual(Notice.error("Approve or reject the pending tool calls first"), notice)

        with mock.patch(
            "services.tasks.generate_reply.delay", return_value=SimpleNamespace(id="task-3")
        ) as delay:
            state, _ = self.handle("approve_tool_call", {"tool_use_id": "call-1"}, state)
        follow_up = state.view.data["messages"][-1]
        self.assertEqual(MESSAGE_STATUS_STREAMING, follow_up["status"])
        delay.assert_called_once_with(follow_up["id"], self.user.user_id, [], False)

        caller = mock.Mock(return_value=ToolOutput("3 results"))
        second = mock.Mock(return_value=ChatResult(content="Found 3 results"))
        status = chat_runner.respond(
            follow_up["id"], self.user.user_id, executor=second, tool_caller=caller
        )

        self.assertEqual(MESSAGE_STATUS_COMPLETE, status)
        server, tool_name, arguments = caller.call_args.args
        self.assertEqual((server_id, "search", {"q": "docs"}), (server.id, tool_name, arguments))
        self.assertEqual(
            [
                {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [
                        {
                            "id": "call-1",
                            "type": "function",
                            "function": {"name": name, "arguments": '{"q": "docs"}'},
                        }
                    ],
                },
                {"role": "tool", "tool_call_id": "call-1", "content": "3 results"},
            ],
            second.call_args.args[1][2:],
        )
        with session_scope() as session:
            stored = session.execute(select(ToolCall)).scalar_one()
            self.assertEqual(TOOL_CALL_STATUS_COMPLETED, stored.status)
            self.assertEqual("Found 3 results", session.get(ChatMessage, follow_up["id"]).content)

    def test_rejected_call_is_reported_to_the_model(self) -> None:
        server_id = self.create_server()
        conversation_id, reply_id = self.pending_reply()
        name = chat_runner.function_name(server_id, "delete_everything")
        first = mock.Mock(
            return_value=ChatResult(content="", tool_calls=[ToolRequest("call-9", name, {})])
        )
        chat_runner.respond(reply_id, self.user.user_id, executor=first)

        state, _ = self.enter("conversation", {"id": str(conversation_id)})
        with mock.patch(
            "services.tasks.generate_reply.delay", return_value=SimpleNamespace(id="task-4")
        ):
            state, _ = self.handle("reject_tool_call", {"tool_use_id": "call-9"}, state)
        follow_up_id = state.view.data["messages"][-1]["id"]

        caller = mock.Mock()
        second = mock.Mock(return_value=ChatResult(content="Understood"))
        chat_runner.respond(follow_up_id, self.user.user_id, executor=second, tool_caller=caller)

        caller.assert_not_called()
        self.assertEqual(
            {"role": "tool", "tool_call_id": "call-9", "content": "Tool call rejected by user"},
            second.call_args.args[1][-1],
        )

    def test_auto_confirm_runs_tools_without_asking(self) -> None:
        server_id = self.create_server()
        conversation_id, reply_id = self.pending_reply()
        name = chat_runner.function_name(server_id, "search")
        executor = mock.Mock(
            side_effect=[
                ChatResult(content="", tool_calls=[ToolRequest("call-1", name, {"q": "x"})]),
                ChatResult(content="done"),
            ]
        )
        caller = mock.Mock(return_value=ToolOutput("ok"))
        with mock.patch("services.mcp_client.list_tools", return_value=[MCPTool("search")]):
            status = chat_runner.respond(
                reply_id,
                self.user.user_id,
                server_keys=[str(server_id)],
                auto_confirm=True,
                executor=executor,
                tool_caller=caller,
            )

        self.assertEqual(MESSAGE_STATUS_COMPLETE, status)
        self.assertEqual(2, executor.call_count)
        caller.assert_called_once()
        with session_scope() as session:
            messages = chat.list_messages(session, conversation_id)
            self.assertEqual(
                ["user", "assistant", "assistant"], [message.role for message in messages]
            )
            self.assertEqual("done", messages[-1].content)
            self.assertEqual("ok", messages[1].tool_calls[0].output)

    def test_unknown_tool_is_failed_and_reported(self) -> None:
        conversation_id, reply_id = self.pending_reply()
        executor = mock.Mock(
            side_effect=[
                ChatResult(content="", tool_calls=[ToolRequest("call-1", "shell", {})]),
                ChatResult(content="I cannot do that"),
            ]
        )
        status = chat_runner.respond(reply_id, self.user.user_id, executor=executor)
        self.assertEqual(MESSAGE_STATUS_COMPLETE, status)
        with session_scope() as session:
            call = session.execute(select(ToolCall)).scalar_one()
            self.assertEqual(TOOL_CALL_STATUS_FAILED, call.status)
            self.assertEqual("Unknown tool: shell", call.output)

    def test_tool_rounds_are_bounded(self) -> None:
        server_id = self.create_server()
        _, reply_id = self.pending_reply()
        name = chat_runner.function_name(server_id, "search")
        executor = mock.Mock(
            return_value=ChatResult(content="", tool_calls=[ToolRequest("call-1", name, {})])
        )
        with mock.patch.object(Config, "CHAT_MAX_TOOL_ROUNDS", 1):
            status = chat_runner.respond(
                reply_id, self.user.user_id, auto_confirm=True, executor=executor
            )
        self.assertEqual(MESSAGE_STATUS_FAILED, status)
        with session_scope() as session:
            last = session.execute(
                select(ChatMessage).order_by(ChatMessage.position.desc())
            ).scalars().first()
            self.assertEqual("Tool round limit reached", last.error)


if __name__ == "__main__":
    unittest.main()
