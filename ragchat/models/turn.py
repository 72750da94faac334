"""Per-turn state: the turn state machine and the tool calls it owns."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ragchat.utils.logging import get_logger

logger = get_logger(__name__)


class TurnState(StrEnum):
    """States of one assistant turn."""

    AWAITING_MODEL = "awaiting_model"
    STREAMING_TEXT = "streaming_text"
    STREAMING_TOOL_INPUT = "streaming_tool_input"
    EXECUTING_TOOL = "executing_tool"
    TURN_ERROR = "turn_error"
    TURN_DONE = "turn_done"


_TURN_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.AWAITING_MODEL: {
        TurnState.STREAMING_TEXT,
        TurnState.STREAMING_TOOL_INPUT,
        TurnState.TURN_DONE,
        TurnState.TURN_ERROR,
    },
    TurnState.STREAMING_TEXT: {
        TurnState.STREAMING_TOOL_INPUT,
        TurnState.AWAITING_MODEL,
        TurnState.TURN_DONE,
        TurnState.TURN_ERROR,
    },
    TurnState.STREAMING_TOOL_INPUT: {TurnState.EXECUTING_TOOL, TurnState.TURN_ERROR},
    TurnState.EXECUTING_TOOL: {
        TurnState.STREAMING_TEXT,
        TurnState.STREAMING_TOOL_INPUT,
        TurnState.AWAITING_MODEL,
        TurnState.TURN_ERROR,
    },
    TurnState.TURN_ERROR: set(),
    TurnState.TURN_DONE: set(),
}


class ToolCallStatus(StrEnum):
    """Lifecycle of a single tool call."""

    START = "start"
    INPUT_UPDATE = "input_update"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.COMPLETED, ToolCallStatus.ERROR)


_CALL_TRANSITIONS: dict[ToolCallStatus, set[ToolCallStatus]] = {
    ToolCallStatus.START: {ToolCallStatus.INPUT_UPDATE, ToolCallStatus.EXECUTING, ToolCallStatus.ERROR},
    ToolCallStatus.INPUT_UPDATE: {ToolCallStatus.INPUT_UPDATE, ToolCallStatus.EXECUTING, ToolCallStatus.ERROR},
    ToolCallStatus.EXECUTING: {ToolCallStatus.COMPLETED, ToolCallStatus.ERROR},
    ToolCallStatus.COMPLETED: set(),
    ToolCallStatus.ERROR: set(),
}


class InvalidTransitionError(RuntimeError):
    """A turn or tool call was asked to move to a state it cannot reach."""


@dataclass
class ToolCallRecord:
    """Server-side record of one tool call within a turn."""

    id: str
    name: str
    status: ToolCallStatus = ToolCallStatus.START
    input: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    summary: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class TurnContext:
    """Mutable state of one turn, owned by a single orchestrator run."""

    turn_id: str
    state: TurnState = TurnState.AWAITING_MODEL
    tool_calls: dict[str, ToolCallRecord] = field(default_factory=dict)
    tool_rounds: int = 0

    def transition(self, new_state: TurnState) -> None:
        """Move the turn to ``new_state``; staying in the same state is a no-op."""
        if new_state == self.state:
            return
        if new_state not in _TURN_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Turn {self.turn_id}: cannot move from {self.state} to {new_state}")
        logger.debug(f"Turn {self.turn_id}: {self.state} -> {new_state}")
        self.state = new_state

    @property
    def is_finished(self) -> bool:
        return self.state in (TurnState.TURN_DONE, TurnState.TURN_ERROR)

    def open_tool_call(self, tool_call_id: str, name: str) -> ToolCallRecord:
        """Register a new tool call; ids are unique within a turn."""
        if tool_call_id in self.tool_calls:
            raise InvalidTransitionError(f"Turn {self.turn_id}: duplicate tool call id {tool_call_id}")
        record = ToolCallRecord(id=tool_call_id, name=name)
        self.tool_calls[tool_call_id] = record
        return record

    def advance_tool_call(self, tool_call_id: str, status: ToolCallStatus, **updates: Any) -> ToolCallRecord:
        """Move a tool call to ``status`` and set any given fields on it."""
        record = self.tool_calls[tool_call_id]
        if status not in _CALL_TRANSITIONS[record.status]:
            raise InvalidTransitionError(
                f"Tool call {tool_call_id}: cannot move from {record.status} to {status}"
            )
        record.status = status
        for key, value in updates.items():
            setattr(record, key, value)
        return record
