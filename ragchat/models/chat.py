"""Chat request, response and stream event models."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

StreamEventType = Literal["text", "tool_call", "tool_result", "error"]


class Message(BaseModel):
    """A committed chat message."""

    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Request body for the chat endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    messages: list[Message]
    system_prompt: str | None = Field(default=None, alias="systemPrompt")


class StreamEvent(BaseModel):
    """One unit on the response stream.

    ``text`` carries a string fragment; an empty fragment marks the end of the
    turn. ``tool_call``, ``tool_result`` and ``error`` carry a dict.
    """

    type: StreamEventType
    data: Any

    @classmethod
    def text(cls, fragment: str) -> "StreamEvent":
        return cls(type="text", data=fragment)

    @classmethod
    def end_of_turn(cls) -> "StreamEvent":
        return cls(type="text", data="")

    @classmethod
    def tool_call(
        cls, status: str, tool_call_id: str, name: str, tool_input: dict[str, Any] | None = None
    ) -> "StreamEvent":
        data: dict[str, Any] = {"status": status, "id": tool_call_id, "name": name}
        if tool_input is not None:
            data["input"] = tool_input
        return cls(type="tool_call", data=data)

    @classmethod
    def tool_result(
        cls, tool_call_id: str, name: str, result: dict[str, Any], summary: dict[str, Any]
    ) -> "StreamEvent":
        return cls(
            type="tool_result",
            data={"status": "completed", "id": tool_call_id, "name": name, "result": result, "summary": summary},
        )

    @classmethod
    def error(cls, message: str, tool_call_id: str | None = None) -> "StreamEvent":
        data: dict[str, Any] = {"message": message}
        if tool_call_id is not None:
            data["id"] = tool_call_id
        return cls(type="error", data=data)

    @property
    def is_end_of_turn(self) -> bool:
        return self.type == "text" and self.data == ""


class ErrorResponse(BaseModel):
    """JSON error body returned before a stream starts."""

    error: str
    details: str | None = None


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
