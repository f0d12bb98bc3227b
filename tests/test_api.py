"""Tests for the HTTP surface."""

import pytest

from planning_qa.core.exceptions import (
    ChunkStoreError,
    GenerationError,
    LLMError,
    MunicipalityNotFoundError,
    PlanningQAError,
    QATimeoutError,
    RetrievalError,
)
from planning_qa.knowledge.models import (
    BatchTranslation,
    Decision,
    IterationRecord,
    MunicipalitySummary,
    QueryType,
    RAGMetadata,
    RAGResponse,
    TranslationResult,
)


@pytest.fixture
def rag_response(make_candidate) -> RAGResponse:
    return RAGResponse(
        answer="Code 20a1 allows detached buildings up to 7 m [Source 1].",
        sources=[
            make_candidate(chunk_index=0, similarity=0.82, rank=0.6, combined=0.71),
            make_candidate(chunk_index=1, similarity=0.74, combined=0.37123),
        ],
        metadata=RAGMetadata(
            top_k=7,
            avg_similarity=0.54,
            search_method="hybrid (semantic + BM25)",
            query_class=QueryType.CODE_LOOKUP,
            iterations_used=1,
            queries_rewritten=0,
            successful_iteration=1,
            municipality_name="Alella",
            model="gpt-4o-mini",
            tokens_used=321,
            elapsed_ms=1834.4,
            translation=TranslationResult(
                translated_query="Què és el codi 20a1?",
                source_language="en",
                target_language="ca",
                was_translated=True,
            ),
            history=[
                IterationRecord(
                    iteration_index=1,
                    query_text="Què és el codi 20a1?",
                    sources_found=2,
                    relevance_score=1.0,
                    avg_similarity=0.54,
                    decision=Decision.ACCEPT,
                )
            ],
        ),
    )


class TestQueryEndpoint:
    """Tests for POST /api/v1/query."""

    async def test_answers_question(self, client, service_mock, rag_response):
        service_mock.ask.return_value = rag_response

        response = await client.post(
            "/api/v1/query",
            json={"query": "What is code 20a1?", "municipality_id": 401},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["municipality"] == "Alella"
        assert data["question"] == "What is code 20a1?"
        assert data["context_chunks_used"] == 2
        assert data["response_time"] == "1834ms"
        assert data["search_method"] == "hybrid (semantic + BM25)"
        assert data["retrieval_calls"] == 1
        assert data["agent_steps"] == 1
        assert data["sources"][0]["similarity_score"] == 0.71
        assert data["sources"][1]["similarity_score"] == 0.3712
        assert data["metadata"]["query_class"] == "code_lookup"
        assert data["metadata"]["translation"]["was_translated"] is True

        service_mock.ask.assert_awaited_once_with(
            401,
            "What is code 20a1?",
            top_k=None,
            verbose=False,
            force_semantic_only=False,
        )

    async def test_passes_options(self, client, service_mock, rag_response):
        service_mock.ask.return_value = rag_response

        await client.post(
            "/api/v1/query",
            json={
                "query": "What is code 20a1?",
                "municipality_id": 401,
                "top_k": 3,
                "verbose": True,
                "force_semantic_only": True,
            },
        )

        kwargs = service_mock.ask.await_args.kwargs
        assert kwargs == {"top_k": 3, "verbose": True, "force_semantic_only": True}

    @pytest.mark.parametrize(
        "payload",
        [
            {"query": "", "municipality_id": 401},
            {"query": "x" * 1001, "municipality_id": 401},
            {"query": "What is code 20a1?"},
            {"query": "What is code 20a1?", "municipality_id": 401, "top_k": 0},
        ],
    )
    async def test_rejects_invalid_payload(self, client, service_mock, payload):
        response = await client.post("/api/v1/query", json=payload)

        assert response.status_code == 422
        service_mock.ask.assert_not_awaited()

    async def test_service_validation_error(self, client, service_mock):
        service_mock.ask.side_effect = ValueError("Question cannot be empty")

        response = await client.post(
            "/api/v1/query", json={"query": "   ", "municipality_id": 401}
        )

        assert response.status_code == 422
        assert response.json()["detail"] == "Question cannot be empty"

    @pytest.mark.parametrize(
        "error,status_code",
        [
            (MunicipalityNotFoundError(9999), 404),
            (QATimeoutError("pipeline", 120.0), 504),
            (GenerationError("Answer generation failed"), 502),
            (LLMError("embedding", "bad key", status_code=401), 502),
            (RetrievalError("Semantic search failed"), 503),
            (ChunkStoreError("search_by_vector", "down"), 503),
            (PlanningQAError("unexpected"), 500),
        ],
    )
    async def test_error_mapping(self, client, service_mock, error, status_code):
        service_mock.ask.side_effect = error

        response = await client.post(
            "/api/v1/query", json={"query": "What is code 20a1?", "municipality_id": 9999}
        )

        assert response.status_code == status_code
        assert response.json()["detail"] == str(error)


class TestSupportEndpoints:
    """Tests for configuration, municipality and batch endpoints."""

    async def test_config(self, client, service_mock):
        service_mock.get_config.return_value = {"relevance_threshold": 0.6, "languages": {}}

        response = await client.get("/api/v1/config")

        assert response.status_code == 200
        assert response.json()["relevance_threshold"] == 0.6

    async def test_municipalities(self, client, service_mock):
        service_mock.list_municipalities.return_value = [
            MunicipalitySummary(id=401, name="Alella", chunk_count=1200, document_count=14)
        ]

        response = await client.get("/api/v1/municipalities")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["municipalities"][0]["name"] == "Alella"

    async def test_municipalities_store_failure(self, client, service_mock):
        service_mock.list_municipalities.side_effect = ChunkStoreError(
            "list_municipalities", "down"
        )

        response = await client.get("/api/v1/municipalities")

        assert response.status_code == 503

    async def test_translate_batch(self, client, service_mock):
        service_mock.translate_batch.return_value = [
            BatchTranslation(
                original="What is the maximum height?",
                translated="Quina és l'alçada màxima?",
                source_language="en",
                target_language="ca",
                was_translated=True,
            )
        ]

        response = await client.post(
            "/api/v1/translate/batch",
            json={"questions": ["What is the maximum height?"], "municipality_id": 401},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["translations"][0]["translated"] == "Quina és l'alçada màxima?"
        service_mock.translate_batch.assert_awaited_once_with(
            ["What is the maximum height?"], 401
        )

    async def test_translate_batch_requires_questions(self, client):
        response = await client.post(
            "/api/v1/translate/batch", json={"questions": [], "municipality_id": 401}
        )
        assert response.status_code == 422


class TestOperationalEndpoints:
    """Tests for health, metrics and request tracing."""

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_request_id_is_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    async def test_request_id_is_generated(self, client):
        response = await client.get("/health")
        assert response.headers["X-Request-ID"]

    async def test_metrics(self, client):
        await client.get("/health")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert 'http_requests_total{method="GET",path="/health",status="200"}' in response.text
