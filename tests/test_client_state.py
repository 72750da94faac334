"""Tests for the client conversation state and chat session."""

import asyncio
import json

import httpx
import pytest

from ragchat.client.session import ChatSession, PromotionScheduler
from ragchat.client.state import ChatState
from ragchat.models.chat import StreamEvent
from ragchat.models.turn import ToolCallStatus
from ragchat.utils.sse import format_event

RESULT = {"query": "themes", "searchType": "hybrid", "resultsCount": 1, "results": [{"rank": 1}]}
SUMMARY = {"query": "themes", "searchType": "hybrid", "resultsCount": 1, "hasError": False}

TURN = [
    StreamEvent.text("Hello"),
    StreamEvent.text(" world"),
    StreamEvent.tool_call("start", "toolu_1", "search_interviews"),
    StreamEvent.tool_call("input_update", "toolu_1", "search_interviews", {"query": "the"}),
    StreamEvent.tool_call("executing", "toolu_1", "search_interviews", {"query": "themes"}),
    StreamEvent.tool_result("toolu_1", "search_interviews", RESULT, SUMMARY),
    StreamEvent.text("!"),
]


def replay(events):
    state = ChatState()
    promotable = [call_id for call_id in (state.apply(event) for event in events) if call_id]
    for call_id in promotable:
        state.promote(call_id)
    state.commit()
    return state


class TestChatState:
    """Tests for folding stream events into chat state."""

    def test_text_and_tool_call_turn(self):
        """Test that text around a tool call commits as one message with one completed call."""
        state = replay(TURN)

        assert [message.content for message in state.messages] == ["Hello world!"]
        assert state.streaming_text == ""
        assert state.active_tool_calls == {}
        [call] = state.completed_tool_calls
        assert call.id == "toolu_1"
        assert call.status == ToolCallStatus.COMPLETED
        assert call.input == {"query": "themes"}
        assert call.result == RESULT
        assert call.summary == SUMMARY

    def test_replay_is_deterministic(self):
        """Test that replaying the same events from a clean state gives the same state."""
        assert replay(TURN).snapshot() == replay(TURN).snapshot()

    def test_input_keeps_last_known_good(self):
        """Test that an event without input never clears a known input."""
        state = ChatState()
        state.apply(StreamEvent.tool_call("start", "toolu_1", "search_interviews"))
        state.apply(StreamEvent.tool_call("input_update", "toolu_1", "search_interviews", {"query": "a"}))
        state.apply(StreamEvent.tool_call("executing", "toolu_1", "search_interviews"))

        call = state.active_tool_calls["toolu_1"]
        assert call.input == {"query": "a"}
        assert call.status == ToolCallStatus.EXECUTING

    def test_terminal_status_is_final(self):
        """Test that a late tool_call event does not reopen a completed call."""
        state = ChatState()
        state.apply(StreamEvent.tool_call("start", "toolu_1", "search_interviews"))
        state.apply(StreamEvent.tool_result("toolu_1", "search_interviews", RESULT, SUMMARY))
        state.apply(StreamEvent.tool_call("input_update", "toolu_1", "search_interviews", {"query": "late"}))

        call = state.active_tool_calls["toolu_1"]
        assert call.status == ToolCallStatus.COMPLETED
        assert call.result == RESULT
        assert call.input is None

    def test_keyed_error_marks_call(self):
        """Test that an error with an id marks that call and makes it promotable."""
        state = ChatState()
        state.apply(StreamEvent.tool_call("start", "toolu_1", "drop_index"))

        promotable = state.apply(StreamEvent.error("Unknown tool: drop_index", "toolu_1"))

        assert promotable == "toolu_1"
        call = state.active_tool_calls["toolu_1"]
        assert call.status == ToolCallStatus.ERROR
        assert call.error == "Unknown tool: drop_index"
        assert state.streaming_text == ""

    def test_unkeyed_error_annotates_text(self):
        """Test that an error without an id is appended to the streaming text."""
        state = ChatState()
        state.apply(StreamEvent.text("Partial answer"))

        assert state.apply(StreamEvent.error("Model stream failed")) is None

        assert state.streaming_text == "Partial answer\n[Error: Model stream failed]"

    def test_end_of_turn_marker_adds_nothing(self):
        """Test that the empty text frame leaves the text unchanged."""
        state = ChatState()
        state.apply(StreamEvent.text("Hi"))
        state.apply(StreamEvent.end_of_turn())

        assert state.streaming_text == "Hi"

    @pytest.mark.parametrize(
        "event",
        [
            StreamEvent(type="tool_call", data={"status": "paused", "id": "toolu_1", "name": "search_interviews"}),
            StreamEvent(type="tool_call", data={"status": "start", "name": "search_interviews"}),
            StreamEvent(type="tool_result", data={"status": "completed", "name": "search_interviews"}),
            StreamEvent(type="tool_call", data="start"),
        ],
    )
    def test_malformed_tool_events_dropped(self, event):
        """Test that a tool event with an unknown status or no id leaves the state unchanged."""
        state = ChatState()
        state.apply(StreamEvent.text("Hi"))
        before = state.snapshot()

        assert state.apply(event) is None
        assert state.snapshot() == before

    def test_promote_guards_duplicates(self):
        """Test that a call is promoted once and only when finished."""
        state = ChatState()
        state.apply(StreamEvent.tool_call("start", "toolu_1", "search_interviews"))

        assert state.promote("toolu_1") is False

        state.apply(StreamEvent.tool_result("toolu_1", "search_interviews", RESULT, SUMMARY))
        assert state.promote("toolu_1") is True
        assert state.promote("toolu_1") is False
        assert len(state.completed_tool_calls) == 1

    def test_commit_without_text(self):
        """Test that a turn with no text commits nothing."""
        state = ChatState()

        assert state.commit() is None
        assert state.messages == []


class TestPromotionScheduler:
    """Tests for deferred promotion of finished tool calls."""

    @pytest.mark.asyncio
    async def test_promotes_after_delay(self):
        """Test that a scheduled call is promoted once the delay passes."""
        promoted = []
        scheduler = PromotionScheduler(promoted.append, delay=0.01)

        scheduler.schedule("toolu_1")
        scheduler.schedule("toolu_1")
        assert promoted == []
        await asyncio.sleep(0.05)

        assert promoted == ["toolu_1"]
        assert scheduler.pending == []

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test that a cancelled promotion never runs."""
        promoted = []
        scheduler = PromotionScheduler(promoted.append, delay=0.01)

        scheduler.schedule("toolu_1")
        assert scheduler.cancel("toolu_1") is True
        assert scheduler.cancel("toolu_1") is False
        await asyncio.sleep(0.05)

        assert promoted == []

    @pytest.mark.asyncio
    async def test_flush_promotes_immediately(self):
        """Test that flushing cancels the timers and promotes right away."""
        promoted = []
        scheduler = PromotionScheduler(promoted.append, delay=60)

        scheduler.schedule("toolu_1")
        scheduler.schedule("toolu_2")
        scheduler.flush()

        assert promoted == ["toolu_1", "toolu_2"]
        assert scheduler.pending == []


def _sse_response(events, status_code=200):
    body = "".join(format_event(event) for event in events).encode()
    return httpx.Response(status_code, content=body, headers={"Content-Type": "text/event-stream"})


def _session(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    return ChatSession(http_client=client, **kwargs)


class TestChatSession:
    """Tests for sending turns and reading the reply stream."""

    @pytest.mark.asyncio
    async def test_successful_turn(self):
        """Test that a complete stream commits the assistant message."""
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return _sse_response([*TURN, StreamEvent.end_of_turn()])

        session = _session(handler, promotion_delay=60)

        reply = await session.send("What are the themes?")

        assert reply.content == "Hello world!"
        assert [message.role for message in session.state.messages] == ["user", "assistant"]
        assert requests[0] == {"messages": [{"role": "user", "content": "What are the themes?"}]}
        assert session.scheduler.pending == ["toolu_1"]
        await session.aclose()

    @pytest.mark.asyncio
    async def test_sends_history_and_system_prompt(self):
        """Test that every request carries the full committed history."""
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return _sse_response([StreamEvent.text("ok"), StreamEvent.end_of_turn()])

        session = _session(handler, system_prompt="Be brief.")

        await session.send("first")
        await session.send("second")

        assert requests[1]["systemPrompt"] == "Be brief."
        assert [message["content"] for message in requests[1]["messages"]] == ["first", "ok", "second"]
        await session.aclose()

    @pytest.mark.asyncio
    async def test_new_turn_flushes_promotions(self):
        """Test that starting a turn promotes the previous turn's finished calls."""
        session = _session(lambda request: _sse_response([*TURN, StreamEvent.end_of_turn()]), promotion_delay=60)

        await session.send("first")
        assert session.state.completed_tool_calls == []

        await session.send("second")

        assert [call.id for call in session.state.completed_tool_calls] == ["toolu_1"]
        await session.aclose()

    @pytest.mark.asyncio
    async def test_stream_cut_short(self):
        """Test that a stream ending without the end-of-turn frame becomes an error message."""
        session = _session(lambda request: _sse_response([StreamEvent.text("Partial")]))

        reply = await session.send("hi")

        assert reply.content.startswith("Sorry, I encountered an error: ")
        assert [message.content for message in session.state.messages][1:] == ["Partial", reply.content]
        await session.aclose()

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        """Test that a non-200 response becomes an error message."""
        session = _session(lambda request: httpx.Response(400, json={"error": "Messages array is required"}))

        reply = await session.send("hi")

        assert reply.content.startswith("Sorry, I encountered an error: ")
        assert "400" in reply.content
        assert "Messages array is required" in reply.content
        await session.aclose()

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        """Test that a transport failure becomes an error message."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        session = _session(handler)

        reply = await session.send("hi")

        assert reply.content.startswith("Sorry, I encountered an error: ")
        assert "connection refused" in reply.content
        await session.aclose()

    @pytest.mark.asyncio
    async def test_in_band_error_ends_turn_without_marker(self):
        """Test that a stream ending on an error event commits the annotated text."""
        session = _session(
            lambda request: _sse_response([StreamEvent.text("Hi"), StreamEvent.error("RAG processing failed: boom")])
        )

        reply = await session.send("hi")

        assert reply.content == "Hi\n[Error: RAG processing failed: boom]"
        await session.aclose()

    @pytest.mark.asyncio
    async def test_malformed_tool_event_does_not_break_turn(self):
        """Test that a tool event the client cannot place is skipped and the turn completes."""
        odd = StreamEvent(type="tool_call", data={"status": "paused", "id": "toolu_1", "name": "search_interviews"})
        session = _session(lambda request: _sse_response([StreamEvent.text("ok"), odd, StreamEvent.end_of_turn()]))

        reply = await session.send("hi")

        assert reply.content == "ok"
        assert session.state.active_tool_calls == {}
        await session.aclose()

    @pytest.mark.asyncio
    async def test_event_callback(self):
        """Test that every decoded event is passed to the callback."""
        seen = []
        session = _session(
            lambda request: _sse_response([StreamEvent.text("a"), StreamEvent.end_of_turn()]),
            on_event=lambda event, state: seen.append(event),
        )

        await session.send("hi")

        assert seen == [StreamEvent.text("a"), StreamEvent.end_of_turn()]
        await session.aclose()
