"""Chat client session: sends turns to the server and folds the reply stream."""

import asyncio
from collections.abc import Callable

import httpx
from httpx_sse import aconnect_sse

from ragchat.client.state import ChatState
from ragchat.exceptions import TransportError
from ragchat.models.chat import Message, StreamEvent
from ragchat.utils.logging import get_logger
from ragchat.utils.sse import parse_event

logger = get_logger(__name__)

EventCallback = Callable[[StreamEvent, ChatState], None]


class PromotionScheduler:
    """Deferred promotion of finished tool calls, one cancellable task per call id."""

    def __init__(self, promote: Callable[[str], object], delay: float = 2.0):
        self._promote = promote
        self.delay = delay
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def pending(self) -> list[str]:
        return list(self._tasks)

    def schedule(self, tool_call_id: str) -> None:
        if tool_call_id in self._tasks:
            return
        self._tasks[tool_call_id] = asyncio.create_task(self._promote_later(tool_call_id))

    def cancel(self, tool_call_id: str) -> bool:
        task = self._tasks.pop(tool_call_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    def flush(self) -> None:
        """Cancel every pending timer and promote its call right away."""
        for tool_call_id in list(self._tasks):
            self.cancel(tool_call_id)
            self._promote(tool_call_id)

    async def _promote_later(self, tool_call_id: str) -> None:
        await asyncio.sleep(self.delay)
        self._tasks.pop(tool_call_id, None)
        self._promote(tool_call_id)


class ChatSession:
    """A conversation with the chat server.

    Each ``send`` posts the full committed history and streams the assistant's
    turn back into ``state``.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        http_client: httpx.AsyncClient | None = None,
        system_prompt: str | None = None,
        promotion_delay: float = 2.0,
        on_event: EventCallback | None = None,
        timeout: float = 300.0,
    ):
        self.client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.system_prompt = system_prompt
        self.on_event = on_event
        self.state = ChatState()
        self.scheduler = PromotionScheduler(self.state.promote, delay=promotion_delay)

    async def send(self, content: str) -> Message | None:
        """Send a user message and stream the reply.

        Returns:
            The committed assistant message, the synthetic error message if the
            stream broke, or None if the reply had no text.
        """
        self.scheduler.flush()
        self.state.add_user_message(content)

        try:
            await self._stream_turn()
        except TransportError as e:
            logger.error(f"Chat turn failed: {e}")
            self.state.commit()
            return self.state.add_error_message(str(e))

        return self.state.commit()

    async def _stream_turn(self) -> None:
        payload: dict = {"messages": [message.model_dump() for message in self.state.messages]}
        if self.system_prompt:
            payload["systemPrompt"] = self.system_prompt

        finished = False
        saw_error = False

        try:
            async with aconnect_sse(self.client, "POST", "/chat", json=payload) as event_source:
                response = event_source.response
                if response.status_code != 200:
                    detail = (await response.aread()).decode(errors="replace")
                    raise TransportError(f"Chat request failed ({response.status_code}): {detail}")

                async for sse in event_source.aiter_sse():
                    event = parse_event(sse.data)
                    if event is None:
                        continue
                    finished = finished or event.is_end_of_turn
                    saw_error = saw_error or event.type == "error"
                    self._handle(event)
        except httpx.HTTPError as e:
            raise TransportError(f"Connection to chat server failed: {e}") from e

        if not finished and not saw_error:
            raise TransportError("Connection closed before the response was complete")

    def _handle(self, event: StreamEvent) -> None:
        promotable = self.state.apply(event)
        if promotable is not None:
            self.scheduler.schedule(promotable)
        if self.on_event is not None:
            self.on_event(event, self.state)

    async def aclose(self) -> None:
        self.scheduler.flush()
        await self.client.aclose()
