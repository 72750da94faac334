"""Anthropic API client with streaming, retries and history truncation."""

import asyncio
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
import tiktoken
from anthropic import APIError, AsyncAnthropic
from pydantic import BaseModel

from ragchat.exceptions import ConfigurationError, UpstreamModelError
from ragchat.models.llm import (
    BlockStop,
    LLMMessage,
    LLMUsage,
    ModelEvent,
    TextDelta,
    ToolInputDelta,
    ToolResultBlock,
    ToolUseStart,
    TurnStop,
)
from ragchat.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class AnthropicTool(BaseModel):
    """Tool definition for Anthropic API."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    model: str = field(default_factory=lambda: os.getenv("ANTHROPIC_MODEL", "claude-3-7-sonnet-20250219"))
    max_tokens: int = 4000
    temperature: float = 0.2
    max_retries: int = 3
    retry_delay: float = 1.0

    # Token limits for truncation
    max_conversation_tokens: int = 200000
    token_headroom: int = 4000  # Reserve tokens for response


class AnthropicClient:
    """Streaming Anthropic Messages client.

    Translates the raw Messages stream into the provider-agnostic events in
    ``ragchat.models.llm``: ``TextDelta``, ``ToolUseStart``, ``ToolInputDelta``,
    ``BlockStop`` and ``TurnStop``.
    """

    tokenizer: tiktoken.Encoding | None = None
    api_key: str
    client: AsyncAnthropic
    config: AnthropicConfig

    def __init__(self, api_key: str | None = None, config: AnthropicConfig | None = None):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Client configuration
        """
        anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not anthropic_api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY environment variable is required")

        self.api_key = anthropic_api_key
        self.client = AsyncAnthropic(api_key=self.api_key)
        self.config = config or AnthropicConfig()

        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception:
            self.tokenizer = None

    async def stream_message(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[AnthropicTool] | None = None,
        **kwargs,
    ) -> AsyncIterator[ModelEvent]:
        """Stream one model response as normalized events.

        Args:
            messages: Working conversation history
            system_prompt: System prompt for Claude
            tools: Available tools for Claude
            **kwargs: Overrides for model, max_tokens and temperature

        Raises:
            UpstreamModelError: If the request cannot be started or the stream fails
        """
        truncated_messages = self.truncate_conversation(messages, system_prompt, tools)

        request_params: dict[str, Any] = {
            "model": kwargs.get("model", self.config.model),
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "temperature": kwargs.get("temperature", self.config.temperature),
            "system": system_prompt,
            "messages": [msg.model_dump() for msg in truncated_messages],
            "stream": True,
        }
        if tools:
            request_params["tools"] = [tool.model_dump(exclude_none=True) for tool in tools]

        logger.debug(
            f"Streaming message with {len(truncated_messages)} messages, {len(tools) if tools else 0} tools, "
            f"model: {request_params['model']}"
        )

        try:
            stream = await self._request_with_retries(lambda: self.client.messages.create(**request_params))
        except (APIError, httpx.HTTPError) as e:
            raise UpstreamModelError(f"Model request failed: {e}") from e

        usage = LLMUsage()
        stop_reason: str | None = None
        try:
            async with stream:
                async for event in stream:
                    if event.type == "message_start":
                        usage.input_tokens += event.message.usage.input_tokens
                    elif event.type == "content_block_start":
                        if event.content_block.type == "tool_use":
                            yield ToolUseStart(id=event.content_block.id, name=event.content_block.name)
                        elif event.content_block.type == "text" and event.content_block.text:
                            yield TextDelta(text=event.content_block.text)
                    elif event.type == "content_block_delta":
                        if event.delta.type == "text_delta":
                            yield TextDelta(text=event.delta.text)
                        elif event.delta.type == "input_json_delta":
                            yield ToolInputDelta(partial_json=event.delta.partial_json)
                    elif event.type == "content_block_stop":
                        yield BlockStop(index=event.index)
                    elif event.type == "message_delta":
                        stop_reason = event.delta.stop_reason
                        if event.usage:
                            usage.output_tokens += event.usage.output_tokens
                    elif event.type == "message_stop":
                        break
        except (APIError, httpx.HTTPError) as e:
            raise UpstreamModelError(f"Model stream failed: {e}") from e

        logger.debug(
            f"Stream finished - Stop reason: {stop_reason}, "
            f"input tokens: {usage.input_tokens}, output tokens: {usage.output_tokens}"
        )
        yield TurnStop(stop_reason=stop_reason, usage=usage)

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Execute Anthropic API request with retry logic."""
        for attempt in range(self.config.max_retries):
            try:
                return await call()

            except APIError as e:
                status_code = getattr(e, "status_code", None)
                if status_code == 429:  # Rate limit exceeded
                    retry_after = 60
                    response = getattr(e, "response", None)
                    if response is not None and hasattr(response, "headers"):
                        retry_after = int(response.headers.get("retry-after", 60))

                    if retry_after < 120 and attempt < self.config.max_retries - 1:
                        logger.warning(f"Model rate limited, retrying in {retry_after}s")
                        await asyncio.sleep(retry_after)
                        continue

                elif status_code is not None and status_code >= 500 and attempt < self.config.max_retries - 1:
                    # Server error, retry with exponential backoff
                    logger.warning(f"Model server error {status_code}, retrying (attempt {attempt + 1})")
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue

                raise

        raise UpstreamModelError(f"Failed to complete request after {self.config.max_retries} attempts")

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single message.

        Args:
            message: Message content

        Returns:
            Estimated token count
        """
        try:
            return len(self.tokenizer.encode(message)) if self.tokenizer else len(message) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(message) // 4

    def _message_text(self, message: LLMMessage) -> str:
        if isinstance(message.content, str):
            return message.content
        parts: list[str] = []
        for block in message.content:
            if block.type == "text":
                parts.append(block.text)
            elif block.type == "tool_use":
                parts.append(str(block.input))
            elif block.type == "tool_result":
                parts.append(block.content)
        return "".join(parts)

    def truncate_conversation(
        self, messages: list[LLMMessage], system_prompt: str, tools: list[AnthropicTool] | None = None
    ) -> list[LLMMessage]:
        """Truncate conversation from the beginning to fit within token limits.

        The kept history never starts with an assistant message or with a tool
        result whose tool use was dropped.

        Args:
            messages: Conversation messages
            system_prompt: System prompt
            tools: Available tools

        Returns:
            Truncated message list that fits within limits
        """
        if not messages:
            return messages

        available_tokens = self.config.max_conversation_tokens - self.config.token_headroom
        available_tokens -= self.estimate_message_tokens(system_prompt)

        if tools:
            tool_content = ""
            for tool in tools:
                tool_content += tool.name + tool.description + str(tool.input_schema)
            available_tokens -= self.estimate_message_tokens(tool_content)

        truncated_messages: list[LLMMessage] = []
        current_tokens = 0

        for message in reversed(messages):
            message_tokens = self.estimate_message_tokens(self._message_text(message))
            if current_tokens + message_tokens > available_tokens:
                break
            truncated_messages.insert(0, message)
            current_tokens += message_tokens

        if len(truncated_messages) < len(messages):
            while truncated_messages and not self._starts_conversation(truncated_messages[0]):
                truncated_messages.pop(0)
            logger.warning(
                f"Truncated conversation from {len(messages)} to {len(truncated_messages)} messages "
                f"to fit within {available_tokens} token limit"
            )

        return truncated_messages

    @staticmethod
    def _starts_conversation(message: LLMMessage) -> bool:
        if message.role != "user":
            return False
        if isinstance(message.content, str):
            return True
        return not any(isinstance(block, ToolResultBlock) for block in message.content)


_anthropic_client: AnthropicClient | None = None


def get_anthropic_client() -> AnthropicClient:
    """Get or create Anthropic client instance."""
    global _anthropic_client
    if _anthropic_client is None:
        _anthropic_client = AnthropicClient()
    return _anthropic_client
