"""Client-side conversation state.

``ChatState`` folds ``StreamEvent``s into what a chat view renders: the
committed messages, the assistant message still streaming, tool calls in
flight, and the tool calls that have finished and been moved aside.
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from ragchat.models.chat import Message, StreamEvent
from ragchat.models.turn import ToolCallStatus
from ragchat.utils.logging import get_logger

logger = get_logger(__name__)

_STATUS_ORDER = {
    ToolCallStatus.START: 0,
    ToolCallStatus.INPUT_UPDATE: 1,
    ToolCallStatus.EXECUTING: 2,
    ToolCallStatus.COMPLETED: 3,
    ToolCallStatus.ERROR: 3,
}

ERROR_MESSAGE_PREFIX = "Sorry, I encountered an error: "


@dataclass
class ToolCallView:
    """The client's display copy of one tool call."""

    id: str
    name: str
    status: ToolCallStatus
    input: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    summary: dict[str, Any] | None = None
    error: str | None = None

    def advance(self, status: ToolCallStatus) -> None:
        # Statuses only move forward; a terminal status is final
        if self.status.is_terminal:
            return
        if _STATUS_ORDER[status] >= _STATUS_ORDER[self.status]:
            self.status = status


@dataclass
class ChatState:
    """Reducer over the chat event stream.

    ``apply`` is deterministic: replaying the same events from a fresh state
    always yields the same state.
    """

    messages: list[Message] = field(default_factory=list)
    streaming_text: str = ""
    active_tool_calls: dict[str, ToolCallView] = field(default_factory=dict)
    completed_tool_calls: list[ToolCallView] = field(default_factory=list)

    def add_user_message(self, content: str) -> Message:
        message = Message(role="user", content=content)
        self.messages.append(message)
        return message

    def add_error_message(self, detail: str) -> Message:
        """Append a synthetic assistant message reporting a failed turn."""
        message = Message(role="assistant", content=f"{ERROR_MESSAGE_PREFIX}{detail}")
        self.messages.append(message)
        return message

    def apply(self, event: StreamEvent) -> str | None:
        """Fold one event into the state.

        Returns:
            The id of a tool call that has just finished and can be promoted
            to the completed list, otherwise None.
        """
        if event.type == "text":
            if event.data:
                self.streaming_text += event.data
            return None

        data = event.data if isinstance(event.data, dict) else {}
        if event.type in ("tool_call", "tool_result") and not isinstance(data.get("id"), str):
            logger.warning(f"Dropping {event.type} event without a tool call id")
            return None

        if event.type == "tool_call":
            try:
                status = ToolCallStatus(data.get("status"))
            except ValueError:
                logger.warning(f"Dropping tool_call event with unknown status: {data.get('status')}")
                return None
            self._upsert_tool_call(data, status)
            return None

        if event.type == "tool_result":
            call = self._get_or_create(data["id"], data.get("name", ""), ToolCallStatus.COMPLETED)
            call.advance(ToolCallStatus.COMPLETED)
            if call.status == ToolCallStatus.COMPLETED:
                call.result = data.get("result")
                call.summary = data.get("summary")
            return call.id

        if event.type == "error":
            message = data.get("message", "Unknown error")
            call_id = data.get("id")
            if not isinstance(call_id, str):
                self.streaming_text += f"\n[Error: {message}]"
                return None
            call = self._get_or_create(call_id, "", ToolCallStatus.ERROR)
            call.advance(ToolCallStatus.ERROR)
            if call.status == ToolCallStatus.ERROR:
                call.error = message
            return call.id

        return None

    def promote(self, tool_call_id: str) -> bool:
        """Move a finished tool call from the active map to the completed list."""
        call = self.active_tool_calls.get(tool_call_id)
        if call is None or not call.status.is_terminal:
            return False
        del self.active_tool_calls[tool_call_id]
        if any(done.id == tool_call_id for done in self.completed_tool_calls):
            return False
        self.completed_tool_calls.append(call)
        return True

    def commit(self) -> Message | None:
        """Commit the streamed text as an assistant message, if there is any."""
        if not self.streaming_text:
            return None
        message = Message(role="assistant", content=self.streaming_text)
        self.messages.append(message)
        self.streaming_text = ""
        return message

    def snapshot(self) -> dict[str, Any]:
        """A plain-data copy of the state, for rendering and comparison."""
        return {
            "messages": [message.model_dump() for message in self.messages],
            "streaming_text": self.streaming_text,
            "active_tool_calls": {call_id: asdict(call) for call_id, call in self.active_tool_calls.items()},
            "completed_tool_calls": [asdict(call) for call in self.completed_tool_calls],
        }

    def _upsert_tool_call(self, data: dict[str, Any], status: ToolCallStatus) -> None:
        call = self._get_or_create(data["id"], data.get("name", ""), status)
        if call.status.is_terminal:
            return
        call.advance(status)
        if data.get("input") is not None:
            call.input = data["input"]

    def _get_or_create(self, tool_call_id: str, name: str, status: ToolCallStatus) -> ToolCallView:
        call = self.active_tool_calls.get(tool_call_id)
        if call is None:
            for done in self.completed_tool_calls:
                if done.id == tool_call_id:
                    return done
            call = ToolCallView(id=tool_call_id, name=name, status=status)
            self.active_tool_calls[tool_call_id] = call
        elif name and not call.name:
            call.name = name
        return call
