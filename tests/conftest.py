"""Pytest configuration and fixtures for planning QA tests.

No test touches a real database or the OpenAI API: the chunk store, the
embedding provider and the chat-completion client are replaced by mocks.
"""

from typing import AsyncGenerator, Callable, Optional
from unittest.mock import MagicMock

import numpy as np
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from planning_qa.core.config import RAGConfig
from planning_qa.knowledge.embeddings import OpenAIEmbeddingProvider
from planning_qa.knowledge.models import Chunk, Municipality, ScoredCandidate
from planning_qa.knowledge.store import ChunkStore
from planning_qa.main import app as main_app
from planning_qa.observability import MetricsCollector
from planning_qa.services.municipal_qa import MunicipalQAService, get_qa_service
from planning_qa.services.openai_client import ChatCompletionClient, Completion
from planning_qa.services.retry import RetryPolicy

ALELLA_ID = 401


# -------------------------------------------------------------------------
# Configuration Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def config() -> RAGConfig:
    """RAG configuration with batch pacing disabled."""
    return RAGConfig(batch_pacing_seconds=0.0, batch_base_delay=0.0)


@pytest.fixture
def metrics() -> MetricsCollector:
    """Fresh in-memory metrics collector."""
    return MetricsCollector()


@pytest.fixture
def no_wait_retry() -> RetryPolicy:
    """Retry policy that never sleeps."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=False)


# -------------------------------------------------------------------------
# Record Factories
# -------------------------------------------------------------------------


@pytest.fixture
def make_chunk() -> Callable[..., Chunk]:
    """Factory for chunks of the Alella POUM."""

    def _make(
        chunk_index: int = 0,
        document_url: str = "https://alella.cat/poum.pdf",
        chunk_text: str = "Zona 20a1: edificació aïllada.",
        document_title: str = "POUM Alella - Normes urbanístiques",
        municipality_id: int = ALELLA_ID,
    ) -> Chunk:
        return Chunk(
            document_title=document_title,
            document_url=document_url,
            chunk_index=chunk_index,
            chunk_text=chunk_text,
            municipality_id=municipality_id,
        )

    return _make


@pytest.fixture
def make_candidate(make_chunk) -> Callable[..., ScoredCandidate]:
    """Factory for scored candidates."""

    def _make(
        chunk_index: int = 0,
        similarity: float = 0.0,
        rank: float = 0.0,
        combined: Optional[float] = None,
        document_url: str = "https://alella.cat/poum.pdf",
        chunk_text: str = "Zona 20a1: edificació aïllada.",
    ) -> ScoredCandidate:
        return ScoredCandidate(
            chunk=make_chunk(
                chunk_index=chunk_index, document_url=document_url, chunk_text=chunk_text
            ),
            semantic_similarity=similarity,
            keyword_rank=rank,
            combined_score=combined,
        )

    return _make


@pytest.fixture
def alella() -> Municipality:
    return Municipality(id=ALELLA_ID, name="Alella", country="ES", corpus_language="ca")


# -------------------------------------------------------------------------
# Collaborator Mocks
# -------------------------------------------------------------------------


@pytest.fixture
def mock_store(alella: Municipality) -> MagicMock:
    """Chunk store returning Alella and no chunks by default."""
    store = MagicMock(spec=ChunkStore)
    store.get_municipality.return_value = alella
    store.search_by_vector.return_value = []
    store.search_by_text.return_value = []
    store.list_municipalities.return_value = []
    return store


@pytest.fixture
def mock_embedder() -> MagicMock:
    """Embedding provider returning a fixed vector."""
    embedder = MagicMock(spec=OpenAIEmbeddingProvider)
    embedder.embed.return_value = np.ones(8, dtype=np.float32)
    return embedder


@pytest.fixture
def llm_responses() -> dict:
    """Per-operation responses for the mock chat client.

    Values may be a Completion, an exception, or a list consumed in order.
    """
    return {}


@pytest.fixture
def mock_llm(llm_responses: dict) -> MagicMock:
    """Chat client answering according to ``llm_responses``."""
    llm = MagicMock(spec=ChatCompletionClient)

    async def complete(system_prompt, user_prompt, **kwargs):
        operation = kwargs.get("operation", "chat.completions")
        response = llm_responses.get(operation)
        if isinstance(response, list):
            response = response.pop(0)
        if response is None:
            return Completion(text="", tokens_used=0)
        if isinstance(response, Exception):
            raise response
        return response

    llm.complete.side_effect = complete
    return llm


@pytest.fixture
def qa_service(mock_store, mock_embedder, mock_llm, config, metrics) -> MunicipalQAService:
    """Pipeline wired to mocked collaborators."""
    return MunicipalQAService(
        store=mock_store,
        embedder=mock_embedder,
        llm=mock_llm,
        config=config,
        metrics=metrics,
    )


# -------------------------------------------------------------------------
# API Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def service_mock() -> MagicMock:
    """Service double injected into the API."""
    return MagicMock(spec=MunicipalQAService)


@pytest.fixture
def app(service_mock: MagicMock) -> FastAPI:
    """FastAPI app with the QA service dependency overridden."""
    main_app.dependency_overrides[get_qa_service] = lambda: service_mock
    yield main_app
    main_app.dependency_overrides.clear()


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
