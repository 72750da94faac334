"""Base types and definitions for tools."""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from ragchat.clients.anthropic import AnthropicTool

ToolHandler = Callable[[Any], Awaitable[dict[str, Any]]]
ToolSummarizer = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass
class ToolDefinition:
    """Definition of a tool available to the AI assistant."""

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: ToolHandler
    summarize: ToolSummarizer

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        return self.input_schema_class.model_json_schema(by_alias=True)

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel:
        """Parse and validate tool input."""
        return self.input_schema_class.model_validate(raw_input)

    def to_anthropic_tool(self) -> AnthropicTool:
        return AnthropicTool(name=self.name, description=self.description, input_schema=self.get_json_schema())


@dataclass
class ToolOutcome:
    """Result of one tool execution.

    ``payload`` is what the client receives as the call's result, and its JSON
    encoding (``content``) is what the model receives as the observation.
    """

    payload: dict[str, Any]
    summary: dict[str, Any]
    is_error: bool = False

    @property
    def content(self) -> str:
        return json.dumps(self.payload)
