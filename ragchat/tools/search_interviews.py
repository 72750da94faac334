"""Interview search tool."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ragchat.exceptions import SearchError
from ragchat.models.search import SearchFilters, SearchMode
from ragchat.services.search import InterviewSearchService
from ragchat.tools.base import ToolDefinition
from ragchat.utils.logging import get_logger

logger = get_logger(__name__)

SEARCH_INTERVIEWS = "search_interviews"

SEARCH_INTERVIEWS_DESCRIPTION = (
    "Search for relevant interview content using vector similarity, keyword search, or a hybrid of both. "
    "Returns ranked passages with the interview and participant they came from."
)


class SearchInterviewsInput(BaseModel):
    """Input schema for the interview search tool."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(
        ...,
        min_length=1,
        description=(
            "The search query to find relevant interview content. Make the query self-contained and clear, "
            "so it can be understood without the rest of the conversation."
        ),
    )
    search_type: SearchMode = Field(default="hybrid", alias="searchType", description="Type of search to perform")
    filters: SearchFilters | None = Field(default=None, description="Optional filters to apply to the search")
    top_k: int = Field(default=10, ge=1, le=50, alias="topK", description="Number of results to return")
    alpha: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Hybrid blend weight: 0 is pure keyword, 1 is pure semantic",
    )


def summarize_search_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Derive the client-facing summary of a search payload."""
    return {
        "query": payload.get("query"),
        "searchType": payload.get("searchType"),
        "resultsCount": payload.get("resultsCount"),
        "hasError": "error" in payload,
    }


def create_search_interviews_tool(search_service: InterviewSearchService) -> ToolDefinition:
    async def search_interviews_handler(params: SearchInterviewsInput) -> dict[str, Any]:
        try:
            results = await search_service.search(
                params.query,
                mode=params.search_type,
                filters=params.filters,
                top_k=params.top_k,
                alpha=params.alpha,
            )
        except (SearchError, ValueError) as e:
            logger.error(f"Search error: {e}")
            return {"error": "Failed to search interviews", "details": str(e)}

        formatted_results = [
            {
                "rank": index + 1,
                "score": result.score,
                "interview_id": result.interview_id,
                "participant_id": result.participant_id,
                "interview_title": result.interview_title,
                "paragraph_title": result.paragraph_title,
                "paragraph_text": result.paragraph_text,
            }
            for index, result in enumerate(results)
        ]

        return {
            "query": params.query,
            "searchType": params.search_type,
            "resultsCount": len(formatted_results),
            "results": formatted_results,
        }

    return ToolDefinition(
        name=SEARCH_INTERVIEWS,
        description=SEARCH_INTERVIEWS_DESCRIPTION,
        input_schema_class=SearchInterviewsInput,
        handler=search_interviews_handler,
        summarize=summarize_search_payload,
    )
