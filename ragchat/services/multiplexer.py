"""Turns one upstream model response into outward stream events.

Text deltas are forwarded as they arrive. Tool-use blocks are tracked from
start to stop: their argument fragments are accumulated and re-parsed for
progress updates, and the tool runs once the block closes.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from ragchat.exceptions import (
    RagChatError,
    ToolArgumentParseError,
    ToolCallError,
    ToolExecutionError,
    TurnLimitError,
    TurnTimeoutError,
    UnknownToolError,
)
from ragchat.models.chat import StreamEvent
from ragchat.models.llm import (
    BlockStop,
    ContentBlock,
    LLMMessage,
    LLMUsage,
    ModelEvent,
    TextBlock,
    TextDelta,
    ToolInputDelta,
    ToolResultBlock,
    ToolUseBlock,
    ToolUseStart,
    TurnStop,
)
from ragchat.models.turn import ToolCallStatus, TurnContext, TurnState
from ragchat.tools.base import ToolOutcome
from ragchat.tools.registry import ToolsRegistry
from ragchat.utils.logging import get_logger
from ragchat.utils.partial_json import Invalid, Parsed, parse_final, parse_partial

logger = get_logger(__name__)


@dataclass
class _PendingToolCall:
    id: str
    name: str
    buffer: str = ""
    last_input: dict[str, Any] | None = None


class StreamMultiplexer:
    """Multiplexes one model response into ``StreamEvent``s.

    One instance handles exactly one upstream response. Afterwards it holds
    what the orchestrator needs to continue the conversation: the assistant's
    content blocks, the tool results, and the error that ended the turn, if
    any.
    """

    def __init__(
        self,
        tools: ToolsRegistry,
        turn: TurnContext,
        deadline: float | None = None,
        allow_tools: bool = True,
    ):
        self.tools = tools
        self.turn = turn
        self.deadline = deadline
        self.allow_tools = allow_tools

        self.assistant_content: list[ContentBlock] = []
        self.tool_results: list[ToolResultBlock] = []
        self.fatal_error: RagChatError | None = None
        self.stop_reason: str | None = None
        self.usage: LLMUsage | None = None

        self._pending: _PendingToolCall | None = None
        self._text_open = False

    async def run(self, model_events: AsyncIterator[ModelEvent]) -> AsyncIterator[StreamEvent]:
        """Consume the model's events, yielding outward events in arrival order.

        Stops early once a tool call fails in a way that ends the turn.
        """
        async for event in model_events:
            if isinstance(event, TextDelta):
                if not event.text:
                    continue
                if self._pending is not None:
                    logger.warning(f"Ignoring text inside tool block {self._pending.id}")
                    continue
                self.turn.transition(TurnState.STREAMING_TEXT)
                self._append_text(event.text)
                yield StreamEvent.text(event.text)

            elif isinstance(event, ToolUseStart):
                self._text_open = False
                self.turn.transition(TurnState.STREAMING_TOOL_INPUT)
                self.turn.open_tool_call(event.id, event.name)
                self._pending = _PendingToolCall(id=event.id, name=event.name)
                logger.info(f"Turn {self.turn.turn_id}: tool call {event.id} ({event.name}) started")
                yield StreamEvent.tool_call(ToolCallStatus.START, event.id, event.name)

            elif isinstance(event, ToolInputDelta):
                update = self._accumulate(event.partial_json)
                if update is not None:
                    yield update

            elif isinstance(event, BlockStop):
                if self._pending is None:
                    self._text_open = False
                    continue
                pending, self._pending = self._pending, None
                async for outward in self._complete_tool_call(pending):
                    yield outward
                if self.fatal_error is not None:
                    return

            elif isinstance(event, TurnStop):
                self.stop_reason = event.stop_reason
                self.usage = event.usage
                break

        if self._pending is not None:
            pending, self._pending = self._pending, None
            yield self._fail(
                pending,
                ToolArgumentParseError(
                    f"Tool call {pending.name} ended before its input was complete", tool_call_id=pending.id
                ),
            )

    def exchange_messages(self) -> list[LLMMessage]:
        """The assistant tool-use message and the user tool-result message for the history."""
        assistant_blocks = [
            block for block in self.assistant_content if not isinstance(block, TextBlock) or block.text.strip()
        ]
        return [
            LLMMessage(role="assistant", content=assistant_blocks),
            LLMMessage(role="user", content=list(self.tool_results)),
        ]

    def _append_text(self, text: str) -> None:
        last = self.assistant_content[-1] if self.assistant_content else None
        if self._text_open and isinstance(last, TextBlock):
            last.text += text
        else:
            self.assistant_content.append(TextBlock(text=text))
            self._text_open = True

    def _accumulate(self, fragment: str) -> StreamEvent | None:
        pending = self._pending
        if pending is None:
            logger.warning("Ignoring tool input outside of a tool block")
            return None

        pending.buffer += fragment
        partial = parse_partial(pending.buffer)
        if not isinstance(partial, Parsed) or not isinstance(partial.value, dict) or not partial.value:
            return None
        if partial.value == pending.last_input:
            return None

        pending.last_input = partial.value
        self.turn.advance_tool_call(pending.id, ToolCallStatus.INPUT_UPDATE, input=partial.value)
        return StreamEvent.tool_call(ToolCallStatus.INPUT_UPDATE, pending.id, pending.name, partial.value)

    async def _complete_tool_call(self, pending: _PendingToolCall) -> AsyncIterator[StreamEvent]:
        if not self.tools.has_tool(pending.name):
            logger.error(f"Unknown tool requested: {pending.name}")
            yield self._fail(pending, UnknownToolError(pending.name, tool_call_id=pending.id))
            return

        if not self.allow_tools:
            yield self._fail(pending, TurnLimitError("Tool call limit reached for this turn"))
            return

        parsed = parse_final(pending.buffer)
        if isinstance(parsed, Invalid) or not isinstance(parsed.value, dict):
            detail = parsed.error if isinstance(parsed, Invalid) else "expected a JSON object"
            yield self._fail(
                pending,
                ToolArgumentParseError(f"Invalid input for {pending.name}: {detail}", tool_call_id=pending.id),
            )
            return

        tool_input = parsed.value
        self.turn.transition(TurnState.EXECUTING_TOOL)
        self.turn.advance_tool_call(pending.id, ToolCallStatus.EXECUTING, input=tool_input)
        self.assistant_content.append(ToolUseBlock(id=pending.id, name=pending.name, input=tool_input))
        yield StreamEvent.tool_call(ToolCallStatus.EXECUTING, pending.id, pending.name, tool_input)

        try:
            outcome = await self._execute(pending)
        except ToolExecutionError as e:
            # The model still gets an answer for this call and the turn carries on
            payload = {"error": "Tool execution failed", "details": str(e)}
            self.tool_results.append(
                ToolResultBlock(tool_use_id=pending.id, content=json.dumps(payload), is_error=True)
            )
            self.turn.advance_tool_call(pending.id, ToolCallStatus.ERROR, error=str(e))
            yield StreamEvent.error(f"Search execution failed: {e}", pending.id)
            return
        except (ToolCallError, TurnTimeoutError) as e:
            yield self._fail(pending, e)
            return

        self.tool_results.append(
            ToolResultBlock(tool_use_id=pending.id, content=outcome.content, is_error=outcome.is_error)
        )
        self.turn.advance_tool_call(
            pending.id, ToolCallStatus.COMPLETED, result=outcome.payload, summary=outcome.summary
        )
        logger.info(
            f"Turn {self.turn.turn_id}: tool call {pending.id} completed "
            f"({outcome.summary.get('resultsCount')} results, error={outcome.is_error})"
        )
        yield StreamEvent.tool_result(pending.id, pending.name, outcome.payload, outcome.summary)

    async def _execute(self, pending: _PendingToolCall) -> ToolOutcome:
        execution = self.tools.execute(pending.name, pending.buffer, tool_call_id=pending.id)
        if self.deadline is None:
            return await execution

        remaining = self.deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(execution, timeout=max(remaining, 0))
        except TimeoutError as e:
            raise TurnTimeoutError(f"Turn timed out while running {pending.name}") from e

    def _fail(self, pending: _PendingToolCall, error: RagChatError) -> StreamEvent:
        """Close a tool call with an error that ends the turn."""
        logger.error(f"Turn {self.turn.turn_id}: tool call {pending.id} failed: {error}")
        self.turn.advance_tool_call(pending.id, ToolCallStatus.ERROR, error=str(error))
        self.fatal_error = error
        return StreamEvent.error(str(error), pending.id)
