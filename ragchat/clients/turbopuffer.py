"""turbopuffer namespace client for the interview index."""

import os
from dataclasses import dataclass, field
from typing import Any, Protocol

from turbopuffer import AsyncTurbopuffer

from ragchat.exceptions import ConfigurationError
from ragchat.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class SearchConfig:
    """Configuration for the hosted interview index."""

    api_key: str | None = field(default_factory=lambda: os.getenv("TURBOPUFFER_API_KEY"))
    base_url: str | None = field(
        default_factory=lambda: os.getenv("TURBOPUFFER_BASE_URL", "https://api.turbopuffer.com")
    )
    region: str | None = field(default_factory=lambda: os.getenv("TURBOPUFFER_REGION"))
    namespace: str = field(
        default_factory=lambda: os.getenv("TURBOPUFFER_NAMESPACE", "2025_aug_interview_contextualized")
    )
    title_boost: float = 2.0


class SearchBackend(Protocol):
    """Interface for a ranked query against the interview index.

    Rows are plain dicts holding ``id``, ``$dist`` (distance for ANN queries,
    relevance for BM25 queries) and the requested attributes.
    """

    async def query(
        self,
        *,
        rank_by: Any,
        top_k: int,
        filters: Any | None,
        include_attributes: list[str],
    ) -> list[dict[str, Any]]:
        """Run one ranked query."""
        ...


class TurbopufferBackend:
    """SearchBackend over a turbopuffer namespace."""

    def __init__(self, config: SearchConfig | None = None):
        self.config = config or SearchConfig()
        if not self.config.api_key:
            raise ConfigurationError("TURBOPUFFER_API_KEY environment variable is required")

        client_kwargs: dict[str, Any] = {"api_key": self.config.api_key}
        if self.config.region:
            client_kwargs["region"] = self.config.region
        elif self.config.base_url:
            client_kwargs["base_url"] = self.config.base_url

        self.client = AsyncTurbopuffer(**client_kwargs)
        self.namespace = self.client.namespace(self.config.namespace)

    async def query(
        self,
        *,
        rank_by: Any,
        top_k: int,
        filters: Any | None,
        include_attributes: list[str],
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "rank_by": rank_by,
            "top_k": top_k,
            "include_attributes": include_attributes,
        }
        if filters is not None:
            params["filters"] = filters

        logger.debug(f"Querying namespace {self.config.namespace} with top_k={top_k}")
        result = await self.namespace.query(**params)
        return [row.model_dump() if hasattr(row, "model_dump") else dict(row) for row in result.rows or []]
