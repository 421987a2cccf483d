"""Tests for ChatRunner -- the streamed tool loop driven by autopilot.

The transport is a real StreamTransport over httpx.MockTransport serving
scripted Anthropic streams, so every test runs the full path: request
building, SSE parsing, turn assembly, tool execution and re-send.
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import make_settings, sse
from parley.api.models import Role, ToolUsePart
from parley.api.runner import ChatRunner, TurnAssembler, UsageTotals
from parley.api.tools import ToolDispatcher, allowlist_policy
from parley.api.transport import StreamTransport
from parley.autopilot import AutopilotState
from parley.events import (
    Signature,
    StreamEvent,
    StreamEventType,
    ThinkingMarker,
    ToolInvocation,
    Usage,
    UsageType,
)

# ---------------------------------------------------------------------------
# Scripted streams
# ---------------------------------------------------------------------------


def _stream(*lines: str) -> str:
    return "\n".join(lines) + "\n"


def _text_stream(text: str, input_tokens: int = 5) -> str:
    return _stream(
        sse({"type": "message_start", "message": {"usage": {"input_tokens": input_tokens}}}),
        sse({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
        sse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}),
        sse({"type": "content_block_stop", "index": 0}),
        sse({"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 1}}),
        sse({"type": "message_stop"}),
    )


def _tool_stream(tool_id: str, name: str, args: dict) -> str:
    return _stream(
        sse({"type": "message_start", "message": {"usage": {"input_tokens": 5}}}),
        sse(
            {
                "type": "content_block_start",
                "index": 0,
                "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
            }
        ),
        sse(
            {
                "type": "content_block_delta",
                "index": 0,
                "delta": {"type": "input_json_delta", "partial_json": json.dumps(args)},
            }
        ),
        sse({"type": "content_block_stop", "index": 0}),
        sse({"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 3}}),
        sse({"type": "message_stop"}),
    )


class ScriptedServer:
    """Serves queued response bodies and records request payloads."""

    def __init__(self, *bodies: str | httpx.Response) -> None:
        self.bodies = list(bodies)
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        body = self.bodies.pop(0)
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, text=body)


def _runner(server: ScriptedServer, dispatcher: ToolDispatcher | None = None, **settings) -> ChatRunner:
    config = make_settings(**settings)
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    return ChatRunner(config, StreamTransport(config, client=client), dispatcher)


def _calc_dispatcher(approval=None) -> tuple[ToolDispatcher, AsyncMock]:
    handler = AsyncMock(return_value={"content": [{"type": "text", "text": "4"}]})
    dispatcher = ToolDispatcher(approval)
    dispatcher.register("calc", handler, {"type": "object", "properties": {"expr": {"type": "string"}}})
    return dispatcher, handler


# ---------------------------------------------------------------------------
# Turn assembly and usage
# ---------------------------------------------------------------------------


class TestTurnAssembler:
    def test_thinking_first_text_around_tools(self):
        assembler = TurnAssembler()
        for item in [
            "Let me ",
            "check.",
            ToolInvocation("t1", "calc", {"expr": "2+2"}),
            "Done",
            ThinkingMarker("why", Signature("anthropic", "sig")),
        ]:
            assembler.add(item)
        turn = assembler.turn()
        assert turn.role == Role.ASSISTANT
        assert [p.kind for p in turn.parts] == ["thinking", "text", "tool_use", "text"]
        assert turn.parts[1].text == "Let me check."
        assert turn.parts[0].signature == Signature("anthropic", "sig")

    def test_input_error_carried(self):
        assembler = TurnAssembler()
        assembler.add(ToolInvocation("t1", "calc", input_error="bad"))
        assert assembler.turn().parts == [ToolUsePart("t1", "calc", {}, "bad")]


class TestUsageTotals:
    def test_latest_value_per_request_summed_across_requests(self):
        totals = UsageTotals()
        usage = lambda t, n: StreamEvent(StreamEventType.USAGE, usage=Usage(t, n))  # noqa: E731
        totals.add_request([usage(UsageType.OUTPUT, 1), usage(UsageType.OUTPUT, 9)])
        totals.add_request([usage(UsageType.OUTPUT, 5), usage(UsageType.INPUT, 3)])
        assert totals[UsageType.OUTPUT] == 14
        assert totals[UsageType.INPUT] == 3
        assert totals.requests == 2


# ---------------------------------------------------------------------------
# Tool loop
# ---------------------------------------------------------------------------


class TestSend:
    @pytest.mark.asyncio
    async def test_plain_reply(self):
        server = ScriptedServer(_text_stream("Hello!"))
        received = []
        runner = _runner(server, system_prompt="Be brief.")

        result = await runner.send("s1", "Hi", on_content=received.append)

        assert result.state == AutopilotState.IDLE
        assert result.requests == 1
        assert result.error is None
        assert received == ["Hello!"]
        conv = runner.session("s1").conversation
        assert [t.role for t in conv.turns] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
        assert conv.turns[-1].text == "Hello!"
        assert server.requests[0]["system"][0]["text"] == "Be brief."

    @pytest.mark.asyncio
    async def test_autopilot_runs_tools_and_resends(self):
        server = ScriptedServer(_tool_stream("toolu_1", "calc", {"expr": "2+2"}), _text_stream("It is 4."))
        dispatcher, handler = _calc_dispatcher()
        runner = _runner(server, dispatcher)

        result = await runner.send("s1", "What is 2+2?")

        assert result.state == AutopilotState.IDLE
        assert result.requests == 2
        handler.assert_awaited_once_with(expr="2+2")
        second = server.requests[1]
        assert second["messages"][-1]["content"][0]["type"] == "tool_result"
        assert second["messages"][-1]["content"][0]["tool_use_id"] == "toolu_1"
        assert second["tools"][0]["name"] == "calc"
        conv = runner.session("s1").conversation
        assert conv.turns[-1].text == "It is 4."
        usage = runner.session("s1").usage
        assert usage[UsageType.INPUT] == 10
        assert usage[UsageType.OUTPUT] == 4

    @pytest.mark.asyncio
    async def test_autopilot_disabled_stops_after_tool_call(self):
        server = ScriptedServer(_tool_stream("toolu_1", "calc", {}))
        dispatcher, handler = _calc_dispatcher()
        runner = _runner(server, dispatcher, autopilot=None)

        result = await runner.send("s1", "go")

        assert result.requests == 1
        handler.assert_not_awaited()
        assert [u.id for u in runner.session("s1").conversation.unresolved_tool_calls()] == ["toolu_1"]

    @pytest.mark.asyncio
    async def test_max_turns_bounds_loop(self):
        server = ScriptedServer(*[_tool_stream(f"toolu_{i}", "calc", {}) for i in range(3)])
        dispatcher, handler = _calc_dispatcher()
        runner = _runner(server, dispatcher, autopilot={"max_turns": 2})

        result = await runner.send("s1", "loop forever")

        assert result.state == AutopilotState.IDLE
        assert result.requests == 3
        assert handler.await_count == 2

    @pytest.mark.asyncio
    async def test_denied_tools_still_resend(self):
        server = ScriptedServer(_tool_stream("toolu_1", "calc", {}), _text_stream("Okay, I won't."))
        dispatcher, handler = _calc_dispatcher(allowlist_policy([], denied=["calc"]))
        runner = _runner(server, dispatcher)

        result = await runner.send("s1", "go")

        assert result.requests == 2
        handler.assert_not_awaited()
        assert server.requests[1]["messages"][-1]["content"][0]["is_error"] is True


class TestApproval:
    @pytest.mark.asyncio
    async def test_pause_then_approve(self):
        server = ScriptedServer(_tool_stream("toolu_1", "calc", {"expr": "1"}), _text_stream("Thanks."))
        dispatcher, handler = _calc_dispatcher(allowlist_policy([]))
        runner = _runner(server, dispatcher)

        paused = await runner.send("s1", "go")
        assert paused.state == AutopilotState.PAUSED
        assert paused.requests == 1
        assert runner.autopilot.get_state("s1") == AutopilotState.PAUSED
        handler.assert_not_awaited()

        resumed = await runner.approve_tool("s1", "toolu_1")

        assert resumed.state == AutopilotState.IDLE
        assert resumed.requests == 1
        handler.assert_awaited_once()
        assert server.requests[1]["messages"][-1]["content"][0]["content"] == "4"

    @pytest.mark.asyncio
    async def test_resume_after_hand_edit(self):
        server = ScriptedServer(_tool_stream("toolu_1", "calc", {}), _text_stream("Got it."))
        dispatcher, handler = _calc_dispatcher(allowlist_policy([]))
        runner = _runner(server, dispatcher)
        await runner.send("s1", "go")

        runner.session("s1").conversation.inject_tool_result("toolu_1", "typed by a human", pending=True)
        result = await runner.resume("s1")

        assert result.requests == 1
        handler.assert_not_awaited()
        assert server.requests[1]["messages"][-1]["content"][0]["content"] == "typed by a human"

    @pytest.mark.asyncio
    async def test_approve_without_autopilot_does_not_send(self):
        server = ScriptedServer(_tool_stream("toolu_1", "calc", {"expr": "1"}), _text_stream("unused"))
        dispatcher, handler = _calc_dispatcher(allowlist_policy([]))
        runner = _runner(server, dispatcher, autopilot=None)
        await runner.send("s1", "go")

        result = await runner.approve_tool("s1", "toolu_1")

        assert result.state == AutopilotState.IDLE
        assert result.requests == 0
        assert len(server.requests) == 1
        handler.assert_awaited_once()
        assert runner.autopilot.get_state("s1") == AutopilotState.IDLE
        assert runner.session("s1").conversation.tool_ledger()[0].resolved

    @pytest.mark.asyncio
    async def test_leftover_armed_state_ignored_without_autopilot(self):
        server = ScriptedServer(_tool_stream("toolu_1", "calc", {}))
        dispatcher, handler = _calc_dispatcher()
        runner = _runner(server, dispatcher, autopilot=None)
        runner.session("s1").conversation.add_user_text("go")
        runner.autopilot.arm("s1")

        result = await runner.send("s1")

        assert result.state == AutopilotState.IDLE
        assert result.requests == 1
        handler.assert_not_awaited()
        assert runner.autopilot.get_state("s1") == AutopilotState.IDLE

    @pytest.mark.asyncio
    async def test_resume_while_still_awaiting(self):
        server = ScriptedServer(_tool_stream("toolu_1", "calc", {}))
        dispatcher, _ = _calc_dispatcher(allowlist_policy([]))
        runner = _runner(server, dispatcher)
        await runner.send("s1", "go")

        result = await runner.resume("s1")

        assert result.state == AutopilotState.PAUSED
        assert result.requests == 0


class TestErrors:
    @pytest.mark.asyncio
    async def test_http_error_disarms(self):
        body = json.dumps({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        server = ScriptedServer(httpx.Response(529, text=body))
        runner = _runner(server)

        result = await runner.send("s1", "Hi")

        assert result.state == AutopilotState.IDLE
        assert result.error == "overloaded_error: Overloaded"
        assert runner.session("s1").last_error == result.error
        assert runner.session("s1").conversation.turns[-1].role == Role.USER

    @pytest.mark.asyncio
    async def test_partial_text_kept_on_stream_error(self):
        server = ScriptedServer(
            _stream(
                sse({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
                sse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Partial"}}),
                sse(
                    {
                        "type": "content_block_start",
                        "index": 1,
                        "content_block": {"type": "tool_use", "id": "toolu_x", "name": "calc", "input": {}},
                    }
                ),
                sse({"type": "content_block_stop", "index": 1}),
                sse({"type": "error", "error": {"type": "api_error", "message": "boom"}}),
            )
        )
        runner = _runner(server)

        result = await runner.send("s1", "Hi")

        assert result.error == "api_error: boom"
        last = runner.session("s1").conversation.turns[-1]
        assert last.role == Role.ASSISTANT
        assert last.text == "Partial"
        assert last.tool_uses() == []

    @pytest.mark.asyncio
    async def test_truncated_stream_is_error(self):
        server = ScriptedServer(
            _stream(sse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "cut"}}))
        )
        result = await _runner(server).send("s1", "Hi")
        assert result.error == "Stream ended without a terminal event"

    @pytest.mark.asyncio
    async def test_new_message_after_error_starts_fresh(self):
        server = ScriptedServer(httpx.Response(500, text="oops"), _text_stream("Recovered."))
        runner = _runner(server)

        await runner.send("s1", "first")
        result = await runner.send("s1", "second")

        assert result.error is None
        assert runner.autopilot.iteration_count("s1") == 0


class TestSessions:
    def test_provider_from_settings(self):
        runner = _runner(ScriptedServer(), provider="openai", OPENAI_API_KEY="sk-test")
        assert runner.session("s1").provider.name == "openai"

    def test_cleanup(self):
        runner = _runner(ScriptedServer())
        first = runner.session("s1")
        runner.cleanup("s1")
        assert runner.session("s1") is not first
