"""API endpoints for the interview research chat service."""

import asyncio
import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from ragchat import __version__
from ragchat.exceptions import RequestValidationError, SearchError
from ragchat.models.chat import ChatRequest, ErrorResponse, HealthResponse, StreamEvent
from ragchat.models.search import SearchRequest
from ragchat.services.interviews import get_interview_catalog
from ragchat.services.orchestrator import ConversationOrchestrator, get_orchestrator
from ragchat.services.search import get_search_service
from ragchat.utils.logging import get_logger
from ragchat.utils.sse import format_event

logger = get_logger(__name__)

router = APIRouter()

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


def _error_response(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=error, details=details).model_dump(exclude_none=True)
    return JSONResponse(status_code=status_code, content=body)


async def _read_json(request: Request) -> object:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise RequestValidationError("Request body must be valid JSON") from e


async def parse_chat_request(request: Request) -> ChatRequest:
    """Read and validate a chat request body.

    Raises:
        RequestValidationError: If the body is not JSON, has no messages array,
            or holds a malformed message
    """
    body = await _read_json(request)
    if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
        raise RequestValidationError("Messages array is required")
    try:
        return ChatRequest.model_validate(body)
    except ValidationError as e:
        raise RequestValidationError("Invalid messages", str(e)) from e


async def parse_search_request(request: Request) -> SearchRequest:
    body = await _read_json(request)
    try:
        return SearchRequest.model_validate(body)
    except ValidationError as e:
        raise RequestValidationError("Invalid search request", str(e)) from e


async def _stream_turn(orchestrator: ConversationOrchestrator, chat_request: ChatRequest) -> AsyncIterator[str]:
    """Frame one turn as SSE, ending with the empty text frame on success."""
    try:
        async for event in orchestrator.run_turn(chat_request.messages, chat_request.system_prompt):
            yield format_event(event)
    except asyncio.CancelledError:
        logger.info("Client disconnected; stopping turn")
        raise
    except Exception as e:
        logger.error(f"Chat stream failed: {e}", exc_info=True)
        yield format_event(StreamEvent.error(f"RAG processing failed: {e}"))
        return

    yield format_event(StreamEvent.end_of_turn())


@router.post("/chat", tags=["Chat"], response_class=StreamingResponse)
async def chat(request: Request):
    """Stream one assistant turn as server-sent events.

    The body is ``{messages: [{role, content}], systemPrompt?}``. Each frame is
    ``data: <StreamEvent JSON>``; a final empty ``text`` frame marks the end of
    the turn.
    """
    try:
        chat_request = await parse_chat_request(request)
    except RequestValidationError as e:
        logger.warning(f"Rejected chat request: {e}")
        return _error_response(400, str(e), e.details)

    try:
        orchestrator = get_orchestrator()
    except Exception as e:
        logger.error(f"Failed to set up chat: {e}", exc_info=True)
        return _error_response(500, "RAG processing failed", str(e))

    logger.info(f"Starting chat turn over {len(chat_request.messages)} messages")
    return StreamingResponse(
        _stream_turn(orchestrator, chat_request),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


@router.post("/search", tags=["Search"])
async def search(request: Request):
    """Search interview passages and join the matching interviews' metadata."""
    try:
        search_request = await parse_search_request(request)
    except RequestValidationError as e:
        return _error_response(400, str(e), e.details)

    try:
        chunks = await get_search_service().search(
            search_request.query,
            mode=search_request.search_type,
            filters=search_request.filters,
            top_k=search_request.top_k,
            alpha=search_request.alpha,
        )
    except (SearchError, ValueError) as e:
        logger.error(f"Search failed: {e}", exc_info=True)
        return _error_response(500, "Search failed", str(e))

    interview_ids = [chunk.interview_id for chunk in chunks if chunk.interview_id]
    try:
        interviews = get_interview_catalog().get_interviews_by_ids(interview_ids)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not load interview metadata: {e}")
        interviews = []

    return {
        "chunks": [chunk.model_dump() for chunk in chunks],
        "interviews": [interview.model_dump() for interview in interviews],
    }


@router.get("/interviews", tags=["Interviews"])
async def list_interviews():
    """List every interview's id and participant."""
    try:
        interviews = get_interview_catalog().list_interviews()
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load interviews: {e}", exc_info=True)
        return _error_response(500, "Failed to load interviews", str(e))
    return {"interviews": [interview.model_dump() for interview in interviews]}


@router.get("/interviews/{interview_id}", tags=["Interviews"])
async def get_interview(interview_id: str):
    try:
        interview = get_interview_catalog().get_interview(interview_id)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load interviews: {e}", exc_info=True)
        return _error_response(500, "Failed to load interviews", str(e))
    if interview is None:
        return _error_response(404, "Interview not found")
    return {"interview": interview.model_dump()}


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
    )
