"""Server-sent event framing for the chat stream.

Each event is one ``data: <json>\\n\\n`` frame. On the client, httpx_sse
reassembles frames across chunk boundaries and ``parse_event`` turns each
frame's data into a ``StreamEvent``.
"""

from pydantic import ValidationError

from ragchat.models.chat import StreamEvent
from ragchat.utils.logging import get_logger

logger = get_logger(__name__)

DATA_PREFIX = "data: "


def format_event(event: StreamEvent) -> str:
    """Encode one event as an SSE frame."""
    return f"{DATA_PREFIX}{event.model_dump_json()}\n\n"


def parse_event(data: str) -> StreamEvent | None:
    """Decode one frame's data, or None if it is not a valid event."""
    try:
        return StreamEvent.model_validate_json(data)
    except ValidationError:
        logger.warning(f"Dropping malformed stream frame: {data[:200]}")
        return None
