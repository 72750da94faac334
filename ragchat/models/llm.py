"""LLM-related data models and types (provider-agnostic)."""

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel


# Content block types
class TextBlock(BaseModel):
    """Text content block."""

    type: Literal["text"] = "text"
    text: str

    class Config:
        extra = "ignore"  # Ignore any additional fields from Anthropic


class ToolUseBlock(BaseModel):
    """Tool use content block."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any]

    class Config:
        extra = "ignore"


class ToolResultBlock(BaseModel):
    """Tool result content block."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False

    class Config:
        extra = "ignore"


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


class LLMMessage(BaseModel):
    """A message in the working history sent to the model."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]


# Normalized upstream stream events
@dataclass(frozen=True)
class TextDelta:
    """A fragment of assistant text."""

    text: str


@dataclass(frozen=True)
class ToolUseStart:
    """The model opened a tool-use block."""

    id: str
    name: str


@dataclass(frozen=True)
class ToolInputDelta:
    """A fragment of a tool call's JSON arguments."""

    partial_json: str


@dataclass(frozen=True)
class BlockStop:
    """The current content block (text or tool use) is complete."""

    index: int = 0


@dataclass
class LLMUsage:
    """Token usage of one model response, or accumulated across a turn."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "LLMUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


@dataclass(frozen=True)
class TurnStop:
    """The model finished its response."""

    stop_reason: str | None = None
    usage: LLMUsage | None = None


ModelEvent = TextDelta | ToolUseStart | ToolInputDelta | BlockStop | TurnStop
