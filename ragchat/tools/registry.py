"""Tools registry: the executor for model-issued tool calls."""

from pydantic import ValidationError

from ragchat.clients.anthropic import AnthropicTool
from ragchat.exceptions import ToolArgumentParseError, ToolExecutionError, UnknownToolError
from ragchat.services.search import InterviewSearchService, get_search_service
from ragchat.tools.base import ToolDefinition, ToolOutcome
from ragchat.tools.search_interviews import create_search_interviews_tool
from ragchat.utils.logging import get_logger
from ragchat.utils.partial_json import Invalid, parse_final

logger = get_logger(__name__)


class ToolsRegistry:
    """Registry for managing and executing AI assistant tools.

    Stateless across executions; one instance serves every request.
    """

    def __init__(self, search_service: InterviewSearchService):
        """Initialize tools registry with service dependencies."""
        self.search_service = search_service
        self._tools: dict[str, ToolDefinition] = {}
        self._register_default_tools()

    def _register_default_tools(self) -> None:
        self.register_tool(create_search_interviews_tool(self.search_service))

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a new tool in the registry."""
        self._tools[tool.name] = tool

    def get_anthropic_tools(self) -> list[AnthropicTool]:
        """Tool definitions in the shape the model expects."""
        return [tool.to_anthropic_tool() for tool in self._tools.values()]

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    async def execute(self, tool_name: str, raw_arguments: str, tool_call_id: str | None = None) -> ToolOutcome:
        """Run one completed tool call.

        Args:
            tool_name: Name the model asked for
            raw_arguments: The call's complete JSON argument buffer
            tool_call_id: Id of the call, attached to raised errors

        Returns:
            The outcome. Arguments that fail validation and searches that fail
            produce an error-shaped payload instead of raising.

        Raises:
            UnknownToolError: If no tool has this name
            ToolArgumentParseError: If the arguments are not a JSON object
            ToolExecutionError: If the handler itself fails
        """
        tool = self._tools.get(tool_name)
        if tool is None:
            raise UnknownToolError(tool_name, tool_call_id=tool_call_id)

        parsed = parse_final(raw_arguments)
        if isinstance(parsed, Invalid):
            raise ToolArgumentParseError(f"Invalid tool input JSON: {parsed.error}", tool_call_id=tool_call_id)
        if not isinstance(parsed.value, dict):
            raise ToolArgumentParseError("Tool input must be a JSON object", tool_call_id=tool_call_id)

        try:
            params = tool.parse_input(parsed.value)
        except ValidationError as e:
            logger.warning(f"Tool {tool_name} received invalid arguments: {e}")
            payload = {"error": "Invalid tool arguments", "details": str(e)}
            return ToolOutcome(payload=payload, summary=tool.summarize(payload), is_error=True)

        logger.debug(f"Executing tool: {tool_name} with input: {parsed.value}")
        try:
            payload = await tool.handler(params)
        except Exception as e:
            logger.error(f"Tool {tool_name} failed: {e}", exc_info=True)
            raise ToolExecutionError(f"{tool_name} failed: {e}", tool_call_id=tool_call_id) from e

        return ToolOutcome(payload=payload, summary=tool.summarize(payload), is_error="error" in payload)


_tools_registry: ToolsRegistry | None = None


def get_tools_registry(search_service: InterviewSearchService | None = None) -> ToolsRegistry:
    """Get or create tools registry instance."""
    global _tools_registry

    if _tools_registry is None:
        _tools_registry = ToolsRegistry(search_service or get_search_service())

    return _tools_registry
