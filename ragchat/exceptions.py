"""ragchat exception hierarchy.

Errors raised before a response stream starts surface as HTTP errors. Errors
raised after it starts are reported in-band as ``error`` stream events and end
only the current turn.
"""


class RagChatError(Exception):
    """Base exception for all ragchat errors."""


class RequestValidationError(RagChatError):
    """Malformed request, rejected before any streaming begins."""

    def __init__(self, message: str, details: str | None = None):
        self.details = details
        super().__init__(message)


class ConfigurationError(RagChatError):
    """A required setting (API key, data path) is missing or invalid."""


class UpstreamModelError(RagChatError):
    """The hosted model failed to start or errored mid-stream."""


class ToolCallError(RagChatError):
    """Base for errors tied to a single tool call."""

    def __init__(self, message: str, *, tool_call_id: str | None = None):
        self.tool_call_id = tool_call_id
        super().__init__(message)


class UnknownToolError(ToolCallError):
    """The model requested a tool that is not registered."""

    def __init__(self, tool_name: str, *, tool_call_id: str | None = None):
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}", tool_call_id=tool_call_id)


class ToolArgumentParseError(ToolCallError):
    """Accumulated tool input is not valid JSON once the block is complete."""


class ToolExecutionError(ToolCallError):
    """A tool handler failed in a way it could not express as a result payload."""


class SearchError(RagChatError):
    """The search backend or the embedding service failed."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class TurnLimitError(RagChatError):
    """The model kept requesting tools past the configured ceiling."""


class TurnTimeoutError(RagChatError):
    """A turn ran past its wall-clock ceiling."""


class TransportError(RagChatError):
    """The client could not read a complete response stream."""
