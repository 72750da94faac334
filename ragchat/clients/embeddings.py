"""Query embedding client."""

import os
from typing import Protocol

from openai import AsyncOpenAI

from ragchat.exceptions import ConfigurationError
from ragchat.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-ada-002"


class Embedder(Protocol):
    """Interface for turning texts into embedding vectors."""

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed each text, preserving order."""
        ...


class OpenAIEmbedder:
    """Embedder backed by the OpenAI embeddings API."""

    def __init__(self, api_key: str | None = None, model: str | None = None):
        openai_api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY environment variable is required")

        self.model = model or os.getenv("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)
        self.client = AsyncOpenAI(api_key=openai_api_key)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        logger.debug(f"Embedding {len(texts)} texts with {self.model}")
        response = await self.client.embeddings.create(input=texts, model=self.model)
        return [item.embedding for item in response.data]
