"""Search request and result models."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

SearchMode = Literal["vector", "keyword", "hybrid"]

RESULT_ATTRIBUTES = [
    "interview_id",
    "participant_id",
    "interview_title",
    "paragraph_title",
    "paragraph_text",
]


class SearchFilters(BaseModel):
    """Conjunctive equality filters on indexed attributes."""

    interview_id: str | None = Field(default=None, description="Only return passages from this interview")
    participant_id: str | None = Field(default=None, description="Only return passages from this participant")

    def as_conditions(self) -> list[tuple[str, str, str]]:
        """Return one ``(attribute, "Eq", value)`` condition per filter that is set."""
        return [(key, "Eq", value) for key, value in self.model_dump().items() if value is not None]


class SearchResult(BaseModel):
    """A ranked passage with its provenance."""

    id: str | int
    score: float
    interview_id: str | None = None
    participant_id: str | None = None
    interview_title: str | None = None
    paragraph_title: str | None = None
    paragraph_text: str | None = None
    vector_score: float | None = None
    keyword_score: float | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any], score: float) -> "SearchResult":
        """Build a result from a backend row carrying the indexed attributes."""
        row_id = row["id"]
        if not isinstance(row_id, str | int):
            row_id = str(row_id)
        return cls(id=row_id, score=score, **{attr: row.get(attr) for attr in RESULT_ATTRIBUTES})


class SearchRequest(BaseModel):
    """Request body for the standalone search endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1)
    search_type: SearchMode = Field(default="hybrid", alias="searchType")
    filters: SearchFilters = Field(default_factory=SearchFilters)
    top_k: int = Field(default=10, ge=1, le=100, alias="topK")
    alpha: float = Field(default=0.5, ge=0.0, le=1.0)
