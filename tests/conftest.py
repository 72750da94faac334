"""Shared fixtures."""

import pytest
from fakes import FakeBackend, FakeEmbedder, passage

from ragchat.services.search import InterviewSearchService
from ragchat.tools.registry import ToolsRegistry


@pytest.fixture
def backend():
    """Index with three vector hits and two keyword hits, overlapping on ``c``."""
    return FakeBackend(
        vector_rows=[passage("a", 0.1), passage("b", 0.2), passage("c", 0.4, interview_id="int-2")],
        keyword_rows=[passage("c", 3.0, interview_id="int-2"), passage("d", 1.0, interview_id="int-3")],
    )


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def search_service(backend, embedder):
    return InterviewSearchService(backend=backend, embedder=embedder)


@pytest.fixture
def tools_registry(search_service):
    return ToolsRegistry(search_service)
