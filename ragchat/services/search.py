"""Hybrid interview search over the hosted index."""

import asyncio
import math
from typing import Any

from ragchat.clients.embeddings import Embedder, OpenAIEmbedder
from ragchat.clients.turbopuffer import SearchBackend, SearchConfig, TurbopufferBackend
from ragchat.exceptions import SearchError
from ragchat.models.search import RESULT_ATTRIBUTES, SearchFilters, SearchMode, SearchResult
from ragchat.utils.logging import get_logger

logger = get_logger(__name__)


def build_filters(filters: SearchFilters | None) -> Any | None:
    """Convert filters to the index's filter expression.

    No conditions means an unfiltered query, one condition is used as-is and
    several are joined with ``And``.
    """
    conditions = filters.as_conditions() if filters else []
    if not conditions:
        return None
    if len(conditions) == 1:
        return conditions[0]
    return ("And", conditions)


def merge_hybrid(
    vector_results: list[SearchResult],
    keyword_results: list[SearchResult],
    alpha: float,
    top_k: int,
) -> list[SearchResult]:
    """Blend vector and keyword hits into one ranking.

    Hits are unioned by id; ``score = alpha * vector_score + (1 - alpha) * keyword_score``
    with a missing side counted as 0.0. The sort is stable, so ties keep
    vector-first arrival order.
    """
    combined: dict[str, SearchResult] = {}

    for result in vector_results:
        combined[str(result.id)] = result.model_copy(
            update={"vector_score": result.score, "keyword_score": 0.0}
        )

    for result in keyword_results:
        doc_id = str(result.id)
        if doc_id in combined:
            combined[doc_id].keyword_score = result.score
        else:
            combined[doc_id] = result.model_copy(update={"vector_score": 0.0, "keyword_score": result.score})

    for result in combined.values():
        result.score = alpha * result.vector_score + (1 - alpha) * result.keyword_score

    ranked = sorted(combined.values(), key=lambda r: r.score, reverse=True)
    return ranked[:top_k]


class InterviewSearchService:
    """Vector, keyword and hybrid search over interview passages."""

    def __init__(
        self,
        backend: SearchBackend,
        embedder: Embedder,
        title_boost: float = 2.0,
    ):
        self.backend = backend
        self.embedder = embedder
        self.title_boost = title_boost

    async def search(
        self,
        query: str,
        mode: SearchMode = "hybrid",
        filters: SearchFilters | None = None,
        top_k: int = 10,
        alpha: float = 0.5,
    ) -> list[SearchResult]:
        """Search the index.

        Args:
            query: Text of the search query
            mode: ``vector``, ``keyword`` or ``hybrid``
            filters: Optional equality filters
            top_k: Number of results to return
            alpha: Hybrid blend weight (0.0 = only keyword, 1.0 = only vector)

        Returns:
            Results ordered best first

        Raises:
            ValueError: If the arguments are out of range
            SearchError: If the embedding service or the index fails
        """
        if not query.strip():
            raise ValueError("query must not be empty")
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        if not 0.0 <= alpha <= 1.0:
            raise ValueError("alpha must be between 0 and 1")

        logger.info(f"Running {mode} search (top_k={top_k}, alpha={alpha}): {query[:80]}")

        if mode == "vector":
            return await self.vector_search(query, filters, top_k)
        if mode == "keyword":
            return await self.keyword_search(query, filters, top_k)
        return await self.hybrid_search(query, filters, top_k, alpha)

    async def vector_search(
        self, query: str, filters: SearchFilters | None = None, top_k: int = 10
    ) -> list[SearchResult]:
        """Nearest-neighbour search; score is ``1 - distance``."""
        return await self._vector_query(query, build_filters(filters), top_k)

    async def keyword_search(
        self, query: str, filters: SearchFilters | None = None, top_k: int = 10
    ) -> list[SearchResult]:
        """BM25 search across titles (boosted) and paragraph text."""
        rank_by = (
            "Sum",
            [
                ("Product", [self.title_boost, ("interview_title", "BM25", query)]),
                ("Product", [self.title_boost, ("paragraph_title", "BM25", query)]),
                ("paragraph_text", "BM25", query),
            ],
        )
        return await self._keyword_query(rank_by, build_filters(filters), top_k)

    async def hybrid_search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        top_k: int = 10,
        alpha: float = 0.5,
    ) -> list[SearchResult]:
        """Run the vector and keyword sides concurrently and blend their scores."""
        filter_expr = build_filters(filters)
        vector_k = math.ceil(top_k * alpha)
        keyword_k = math.ceil(top_k * (1 - alpha))

        async def no_results() -> list[SearchResult]:
            return []

        vector_results, keyword_results = await asyncio.gather(
            self._vector_query(query, filter_expr, vector_k) if vector_k > 0 else no_results(),
            self._keyword_query(("Sum", [("paragraph_text", "BM25", query)]), filter_expr, keyword_k)
            if keyword_k > 0
            else no_results(),
        )

        logger.debug(f"Hybrid search: {len(vector_results)} vector hits, {len(keyword_results)} keyword hits")
        return merge_hybrid(vector_results, keyword_results, alpha, top_k)

    async def _vector_query(self, query: str, filter_expr: Any | None, top_k: int) -> list[SearchResult]:
        try:
            query_vector = (await self.embedder.embed([query]))[0]
            rows = await self.backend.query(
                rank_by=("vector", "ANN", query_vector),
                top_k=top_k,
                filters=filter_expr,
                include_attributes=RESULT_ATTRIBUTES,
            )
        except Exception as e:
            logger.error(f"Vector search failed: {e}")
            raise SearchError(str(e)) from e

        return [SearchResult.from_row(row, 1 - (row.get("$dist") or 0)) for row in rows]

    async def _keyword_query(self, rank_by: Any, filter_expr: Any | None, top_k: int) -> list[SearchResult]:
        try:
            rows = await self.backend.query(
                rank_by=rank_by,
                top_k=top_k,
                filters=filter_expr,
                include_attributes=RESULT_ATTRIBUTES,
            )
        except Exception as e:
            logger.error(f"Keyword search failed: {e}")
            raise SearchError(str(e)) from e

        return [SearchResult.from_row(row, row.get("$dist") or 0.0) for row in rows]


_search_service: InterviewSearchService | None = None


def get_search_service() -> InterviewSearchService:
    """Get or create the search service instance."""
    global _search_service
    if _search_service is None:
        config = SearchConfig()
        _search_service = InterviewSearchService(
            backend=TurbopufferBackend(config),
            embedder=OpenAIEmbedder(),
            title_boost=config.title_boost,
        )
    return _search_service
