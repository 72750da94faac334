"""Tests for the conversation orchestrator loop."""

import json
from unittest.mock import patch

import pytest
from fakes import FakeBackend, FakeEmbedder, FakeModelClient, Pause, text_response, tool_response

from ragchat.exceptions import UpstreamModelError
from ragchat.models.chat import Message
from ragchat.models.llm import TextBlock, TextDelta, ToolResultBlock, ToolUseBlock, ToolUseStart
from ragchat.services.orchestrator import DEFAULT_SYSTEM_PROMPT, ConversationOrchestrator, OrchestratorConfig
from ragchat.services.search import InterviewSearchService
from ragchat.tools.registry import ToolsRegistry

USER_MESSAGES = [Message(role="user", content="What do people say about onboarding?")]


async def run(orchestrator, messages=USER_MESSAGES, system_prompt=None):
    return [event async for event in orchestrator.run_turn(messages, system_prompt)]


def errors(events):
    return [event for event in events if event.type == "error"]


class TestConversationLoop:
    """Tests for the ask-model, run-tools, ask-again loop."""

    @pytest.mark.asyncio
    async def test_text_only_turn(self, tools_registry):
        """Test that a response without tools is streamed and ends the turn."""
        model = FakeModelClient([text_response("Hello", " there")])
        orchestrator = ConversationOrchestrator(model, tools_registry)

        events = await run(orchestrator)

        assert [(event.type, event.data) for event in events] == [("text", "Hello"), ("text", " there")]
        assert len(model.calls) == 1
        assert model.calls[0][0].content == USER_MESSAGES[0].content

    @pytest.mark.asyncio
    async def test_default_and_custom_system_prompt(self, tools_registry):
        """Test that the default prompt is used unless the request brings one."""
        model = FakeModelClient([text_response("a"), text_response("b")])
        orchestrator = ConversationOrchestrator(model, tools_registry)

        await run(orchestrator)
        await run(orchestrator, system_prompt="Answer in French.")

        assert model.system_prompts == [DEFAULT_SYSTEM_PROMPT, "Answer in French."]
        assert [tool.name for tool in model.tools[0]] == ["search_interviews"]

    @pytest.mark.asyncio
    async def test_loops_until_no_tool_call(self, tools_registry):
        """Test that the model is asked again after every tool round."""
        model = FakeModelClient(
            [
                tool_response("toolu_1", {"query": "onboarding"}, text="Searching. "),
                tool_response("toolu_2", {"query": "onboarding friction"}),
                text_response("People found onboarding slow."),
            ]
        )
        orchestrator = ConversationOrchestrator(model, tools_registry)

        events = await run(orchestrator)

        assert len(model.calls) == 3
        assert [event.data["id"] for event in events if event.type == "tool_result"] == ["toolu_1", "toolu_2"]
        assert events[-1].data == "People found onboarding slow."
        assert errors(events) == []

    @pytest.mark.asyncio
    async def test_synthetic_messages_appended(self, tools_registry):
        """Test that each tool round adds an assistant tool-use message and a user tool-result message."""
        model = FakeModelClient(
            [
                tool_response("toolu_1", {"query": "onboarding"}, text="Searching. "),
                text_response("Done."),
            ]
        )
        orchestrator = ConversationOrchestrator(model, tools_registry)

        events = await run(orchestrator)

        history = model.calls[1]
        assert [message.role for message in history] == ["user", "assistant", "user"]
        assert history[1].content == [
            TextBlock(text="Searching. "),
            ToolUseBlock(id="toolu_1", name="search_interviews", input={"query": "onboarding"}),
        ]
        [tool_result] = history[2].content
        assert isinstance(tool_result, ToolResultBlock)
        assert tool_result.tool_use_id == "toolu_1"

        [streamed] = [event for event in events if event.type == "tool_result"]
        assert json.loads(tool_result.content) == streamed.data["result"]

    @pytest.mark.asyncio
    async def test_search_failure_fed_back_to_model(self):
        """Test that a failing search reaches both the client and the model as an error payload."""
        service = InterviewSearchService(FakeBackend(error=RuntimeError("index unavailable")), FakeEmbedder())
        model = FakeModelClient(
            [
                tool_response("toolu_1", {"query": "onboarding"}),
                text_response("The search is unavailable right now."),
            ]
        )
        orchestrator = ConversationOrchestrator(model, ToolsRegistry(service))

        events = await run(orchestrator)

        [streamed] = [event for event in events if event.type == "tool_result"]
        assert streamed.data["summary"]["hasError"] is True
        observation = model.calls[1][2].content[0]
        assert observation.is_error
        assert json.loads(observation.content) == {
            "error": "Failed to search interviews",
            "details": "index unavailable",
        }
        assert json.loads(observation.content) == streamed.data["result"]
        assert errors(events) == []

    @pytest.mark.asyncio
    async def test_working_history_not_shared(self, tools_registry):
        """Test that a turn leaves the caller's messages untouched."""
        messages = list(USER_MESSAGES)
        model = FakeModelClient([tool_response("toolu_1", {"query": "x"}), text_response("ok")])

        await run(ConversationOrchestrator(model, tools_registry), messages=messages)

        assert messages == USER_MESSAGES


class TestTurnErrors:
    """Tests for errors that end a turn."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, backend, tools_registry):
        """Test that an unregistered tool ends the turn with a keyed error and no search."""
        model = FakeModelClient([tool_response("toolu_1", {"q": "x"}, name="drop_index")])
        orchestrator = ConversationOrchestrator(model, tools_registry)

        events = await run(orchestrator)

        [error] = errors(events)
        assert error.data["id"] == "toolu_1"
        assert "drop_index" in error.data["message"]
        assert backend.queries == []
        assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_upstream_error_mid_stream(self, tools_registry):
        """Test that a model failure becomes one unkeyed error after the text so far."""
        model = FakeModelClient([[TextDelta("Partial"), UpstreamModelError("Model stream failed: overloaded")]])
        orchestrator = ConversationOrchestrator(model, tools_registry)

        events = await run(orchestrator)

        assert [(event.type, event.data) for event in events] == [
            ("text", "Partial"),
            ("error", {"message": "Model stream failed: overloaded"}),
        ]

    @pytest.mark.asyncio
    async def test_upstream_error_inside_tool_block(self, tools_registry):
        """Test that a model failure while a tool call is open closes that call."""
        model = FakeModelClient(
            [[ToolUseStart(id="toolu_1", name="search_interviews"), UpstreamModelError("connection reset")]]
        )
        orchestrator = ConversationOrchestrator(model, tools_registry)

        events = await run(orchestrator)

        [error] = errors(events)
        assert error.data == {"message": "connection reset", "id": "toolu_1"}

    @pytest.mark.asyncio
    async def test_tool_round_ceiling(self, backend, tools_registry):
        """Test that a tool call past the round ceiling ends the turn with a single error."""
        model = FakeModelClient(
            [
                tool_response("toolu_1", {"query": "a"}),
                tool_response("toolu_2", {"query": "b"}),
                tool_response("toolu_3", {"query": "c"}),
            ]
        )
        orchestrator = ConversationOrchestrator(model, tools_registry, OrchestratorConfig(max_tool_rounds=2))

        events = await run(orchestrator)

        [error] = errors(events)
        assert error.data["id"] == "toolu_3"
        assert "limit" in error.data["message"]
        assert len(model.calls) == 3
        assert len([event for event in events if event.type == "tool_result"]) == 2

    @pytest.mark.asyncio
    async def test_turn_timeout(self, tools_registry):
        """Test that a stalled model ends the turn with a single error once the deadline passes."""
        model = FakeModelClient([[TextDelta("Thinking"), Pause(5.0), TextDelta("never")]])
        config = OrchestratorConfig(max_tool_rounds=10, turn_timeout_seconds=0.05)
        orchestrator = ConversationOrchestrator(model, tools_registry, config)

        events = await run(orchestrator)

        assert events[0].data == "Thinking"
        [error] = errors(events)
        assert "time limit" in error.data["message"]
        assert "id" not in error.data
        assert events[-1] is error


class TestOrchestratorConfig:
    """Tests for orchestrator configuration."""

    def test_defaults(self):
        """Test the default ceilings."""
        with patch.dict("os.environ", {}, clear=True):
            config = OrchestratorConfig()

        assert config.max_tool_rounds == 10
        assert config.turn_timeout_seconds == 300.0

    def test_from_environment(self):
        """Test that ceilings are read from the environment."""
        with patch.dict("os.environ", {"RAG_MAX_TOOL_ROUNDS": "3", "RAG_TURN_TIMEOUT_SECONDS": "30"}):
            config = OrchestratorConfig()

        assert config.max_tool_rounds == 3
        assert config.turn_timeout_seconds == 30.0
