"""Conversation orchestrator: runs one assistant turn end to end.

A turn is a loop of model requests. Each response is multiplexed onto the
outward stream; when it asked for tools, the tool-use and tool-result
messages are appended to a working copy of the history and the model is
asked again. The loop ends when a response needs no tools, when an error
ends the turn, or when a round or time ceiling is hit.
"""

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Protocol

from cuid2 import cuid_wrapper

from ragchat.clients.anthropic import AnthropicTool, get_anthropic_client
from ragchat.exceptions import TurnTimeoutError, UpstreamModelError
from ragchat.models.chat import Message, StreamEvent
from ragchat.models.llm import LLMMessage, LLMUsage, ModelEvent
from ragchat.models.turn import ToolCallStatus, TurnContext, TurnState
from ragchat.services.multiplexer import StreamMultiplexer
from ragchat.tools.registry import ToolsRegistry, get_tools_registry
from ragchat.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()

DEFAULT_SYSTEM_PROMPT = """You are a research assistant with access to a collection of user interviews.

Use the search_interviews tool whenever a question could be answered from what participants said. \
Write each query so it stands on its own, without relying on earlier turns of the conversation. \
You may search more than once, with different wording or filters, before answering.

When you answer:
- Ground your claims in the passages you retrieved
- Say which interview or participant a point comes from
- Say so plainly when the interviews do not cover the question"""


class ModelClient(Protocol):
    """What the orchestrator needs from a streaming model client."""

    def stream_message(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[AnthropicTool] | None = None,
        **kwargs,
    ) -> AsyncIterator[ModelEvent]: ...


@dataclass
class OrchestratorConfig:
    """Per-turn ceilings."""

    max_tool_rounds: int = field(default_factory=lambda: int(os.getenv("RAG_MAX_TOOL_ROUNDS", "10")))
    turn_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("RAG_TURN_TIMEOUT_SECONDS", "300"))
    )


async def _until_deadline(events: AsyncIterator[ModelEvent], deadline: float) -> AsyncIterator[ModelEvent]:
    """Re-yield ``events``, raising ``TurnTimeoutError`` once ``deadline`` passes."""
    loop = asyncio.get_running_loop()
    iterator = aiter(events)
    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TurnTimeoutError("Turn exceeded its time limit")
            try:
                event = await asyncio.wait_for(anext(iterator), timeout=remaining)
            except StopAsyncIteration:
                return
            except TimeoutError as e:
                raise TurnTimeoutError("Turn exceeded its time limit while waiting for the model") from e
            yield event
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


class ConversationOrchestrator:
    """Drives the model/tool loop for one turn at a time.

    Holds no per-turn state itself; every ``run_turn`` call gets its own
    ``TurnContext`` and working history, so one instance serves concurrent
    requests.
    """

    def __init__(
        self,
        model_client: ModelClient,
        tools: ToolsRegistry,
        config: OrchestratorConfig | None = None,
    ):
        self.model_client = model_client
        self.tools = tools
        self.config = config or OrchestratorConfig()

    async def run_turn(self, messages: list[Message], system_prompt: str | None = None) -> AsyncIterator[StreamEvent]:
        """Run one assistant turn over the committed ``messages``.

        Yields text, tool_call, tool_result and error events in the order they
        happen. Does not yield the end-of-turn marker; the transport appends it
        once this generator finishes.
        """
        turn = TurnContext(turn_id=cuid())
        history = [LLMMessage(role=message.role, content=message.content) for message in messages]
        prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        tool_definitions = self.tools.get_anthropic_tools()
        deadline = asyncio.get_running_loop().time() + self.config.turn_timeout_seconds
        usage = LLMUsage()

        logger.info(f"Turn {turn.turn_id}: starting with {len(history)} messages")

        while True:
            multiplexer = StreamMultiplexer(
                self.tools,
                turn,
                deadline=deadline,
                allow_tools=turn.tool_rounds < self.config.max_tool_rounds,
            )
            try:
                async with aclosing(
                    _until_deadline(self.model_client.stream_message(history, prompt, tool_definitions), deadline)
                ) as model_events:
                    async with aclosing(multiplexer.run(model_events)) as outward:
                        async for event in outward:
                            yield event
            except (UpstreamModelError, TurnTimeoutError) as e:
                logger.error(f"Turn {turn.turn_id}: {e}")
                for event in self._fail_turn(turn, str(e)):
                    yield event
                return

            if multiplexer.usage is not None:
                usage.add(multiplexer.usage)

            if multiplexer.fatal_error is not None:
                turn.transition(TurnState.TURN_ERROR)
                logger.warning(f"Turn {turn.turn_id}: ended by tool error: {multiplexer.fatal_error}")
                return

            if not multiplexer.tool_results:
                turn.transition(TurnState.TURN_DONE)
                logger.info(
                    f"Turn {turn.turn_id}: done after {turn.tool_rounds} tool rounds, "
                    f"stop reason: {multiplexer.stop_reason}, "
                    f"tokens in/out: {usage.input_tokens}/{usage.output_tokens}"
                )
                return

            history.extend(multiplexer.exchange_messages())
            turn.tool_rounds += 1
            turn.transition(TurnState.AWAITING_MODEL)
            logger.debug(f"Turn {turn.turn_id}: tool round {turn.tool_rounds} complete")

    def _fail_turn(self, turn: TurnContext, message: str) -> list[StreamEvent]:
        """End the turn with one error event.

        The error is keyed to the tool call that was still open, if any, so
        that call still gets its terminal event.
        """
        open_calls = [record for record in turn.tool_calls.values() if not record.status.is_terminal]
        for record in open_calls:
            turn.advance_tool_call(record.id, ToolCallStatus.ERROR, error=message)
        turn.transition(TurnState.TURN_ERROR)
        if open_calls:
            return [StreamEvent.error(message, record.id) for record in open_calls]
        return [StreamEvent.error(message)]


_orchestrator: ConversationOrchestrator | None = None


def get_orchestrator() -> ConversationOrchestrator:
    """Get or create the orchestrator, wiring the default client and tools."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ConversationOrchestrator(get_anthropic_client(), get_tools_registry())
    return _orchestrator
