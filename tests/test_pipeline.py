"""End-to-end tests for MunicipalQAService with mocked collaborators."""

import asyncio

import pytest

from planning_qa.core.ai_constants import INSUFFICIENT_INFORMATION_ANSWER
from planning_qa.core.exceptions import (
    ChunkStoreError,
    GenerationError,
    LLMError,
    MunicipalityNotFoundError,
    QATimeoutError,
)
from planning_qa.knowledge.models import Decision, QueryType
from planning_qa.knowledge.retriever import (
    SEARCH_METHOD_FALLBACK,
    SEARCH_METHOD_HYBRID,
    SEARCH_METHOD_SEMANTIC,
)
from planning_qa.services.municipal_qa import MunicipalQAService, validate_question
from planning_qa.services.openai_client import Completion

CODE_TEXT = "Codi 20a1: zona d'edificació aïllada. El codi 20a1 fixa l'alçada màxima en 7 m."


@pytest.fixture
def code_20a1_corpus(mock_store, make_candidate):
    """Alella chunks for the 20a1 zoning code, found by both searches."""
    mock_store.search_by_vector.return_value = [
        make_candidate(chunk_index=0, similarity=0.82, chunk_text=CODE_TEXT),
        make_candidate(chunk_index=1, similarity=0.74, chunk_text=CODE_TEXT),
    ]
    mock_store.search_by_text.return_value = [
        make_candidate(chunk_index=0, rank=0.6, chunk_text=CODE_TEXT),
        make_candidate(chunk_index=2, rank=0.3, chunk_text=CODE_TEXT),
    ]
    return mock_store


@pytest.fixture
def translated(llm_responses):
    llm_responses["translation"] = Completion(text="Què és el codi 20a1?", tokens_used=12)
    llm_responses["answer_generation"] = Completion(
        text="Code 20a1 is a detached-building zone with a 7 m height limit [Source 1].",
        tokens_used=321,
    )
    return llm_responses


class TestAsk:
    """Tests for the full question-answering pipeline."""

    async def test_code_lookup_end_to_end(
        self, qa_service, code_20a1_corpus, translated, mock_llm, mock_embedder
    ):
        response = await qa_service.ask(401, "What is code 20a1?")

        assert [s.chunk.chunk_index for s in response.sources] == [0, 1]
        assert response.sources[0].combined_score == pytest.approx(0.71)
        assert response.sources[1].combined_score == pytest.approx(0.37)
        assert "[Source 1]" in response.answer

        metadata = response.metadata
        assert metadata.query_class == QueryType.CODE_LOOKUP
        assert metadata.top_k == 7
        assert metadata.search_method == SEARCH_METHOD_HYBRID
        assert metadata.iterations_used == 1
        assert metadata.successful_iteration == 1
        assert metadata.queries_rewritten == 0
        assert metadata.tokens_used == 321
        assert metadata.municipality_name == "Alella"
        assert metadata.translation.was_translated is True
        assert metadata.translation.source_language == "en"
        assert metadata.translation.target_language == "ca"
        assert metadata.avg_similarity == pytest.approx(0.54)

        # Retrieval uses the translated query at 4x depth
        mock_embedder.embed.assert_awaited_once_with("Què és el codi 20a1?")
        assert code_20a1_corpus.search_by_text.await_args.args[1] == "Què és el codi 20a1"
        assert code_20a1_corpus.search_by_text.await_args.args[2] == 28

    async def test_generation_uses_original_question(
        self, qa_service, code_20a1_corpus, translated, mock_llm
    ):
        await qa_service.ask(401, "What is code 20a1?")

        call = next(
            c for c in mock_llm.complete.await_args_list
            if c.kwargs["operation"] == "answer_generation"
        )
        system_prompt, user_prompt = call.args
        assert "Alella municipality" in system_prompt
        assert "Question: What is code 20a1?" in user_prompt
        assert "[Source 1] (Relevance: 71.0%)" in user_prompt
        assert "[Source 2] (Relevance: 37.0%)" in user_prompt

    async def test_no_results_returns_insufficiency_answer(
        self, qa_service, mock_llm, llm_responses
    ):
        llm_responses["translation"] = Completion(text="Quina és l'alçada màxima?")
        llm_responses["query_rewrite"] = [
            Completion(text="alçada màxima edificació"),
            Completion(text="altura reguladora"),
        ]

        response = await qa_service.ask(401, "What is the maximum building height?")

        assert response.answer == INSUFFICIENT_INFORMATION_ANSWER
        assert response.sources == []
        assert response.metadata.iterations_used == 3
        assert response.metadata.successful_iteration == -1
        assert response.metadata.tokens_used == 0
        assert response.metadata.history[-1].decision == Decision.MAX_ITERATIONS
        operations = [c.kwargs["operation"] for c in mock_llm.complete.await_args_list]
        assert "answer_generation" not in operations

    async def test_unknown_municipality(self, qa_service, mock_store):
        mock_store.get_municipality.return_value = None

        with pytest.raises(MunicipalityNotFoundError) as exc_info:
            await qa_service.ask(9999, "What is code 20a1?")
        assert exc_info.value.municipality_id == 9999

    @pytest.mark.parametrize("question", ["", "   ", "x" * 1001])
    async def test_invalid_question(self, qa_service, mock_store, question):
        with pytest.raises(ValueError):
            await qa_service.ask(401, question)
        mock_store.get_municipality.assert_not_awaited()

    async def test_invalid_top_k(self, qa_service):
        with pytest.raises(ValueError):
            await qa_service.ask(401, "What is code 20a1?", top_k=0)

    async def test_translation_failure_degrades(
        self, qa_service, code_20a1_corpus, translated, mock_embedder
    ):
        translated["translation"] = LLMError("translation", "server error", 500, True)

        response = await qa_service.ask(401, "What is code 20a1?")

        assert response.metadata.translation.was_translated is False
        mock_embedder.embed.assert_awaited_once_with("What is code 20a1?")
        assert response.sources

    async def test_generation_failure(self, qa_service, code_20a1_corpus, translated):
        translated["answer_generation"] = LLMError("answer_generation", "bad request", 400)

        with pytest.raises(GenerationError):
            await qa_service.ask(401, "What is code 20a1?")

    async def test_empty_generation(self, qa_service, code_20a1_corpus, translated):
        translated["answer_generation"] = None

        with pytest.raises(GenerationError):
            await qa_service.ask(401, "What is code 20a1?")

    async def test_pipeline_timeout(self, qa_service, mock_store, alella):
        async def slow_lookup(municipality_id):
            await asyncio.sleep(1)
            return alella

        mock_store.get_municipality.side_effect = slow_lookup

        with pytest.raises(QATimeoutError) as exc_info:
            await qa_service.ask(401, "What is code 20a1?", timeout=0.01)
        assert exc_info.value.operation == "pipeline"

    async def test_top_k_overrides_classification(
        self, qa_service, code_20a1_corpus, translated
    ):
        response = await qa_service.ask(401, "What is code 20a1?", top_k=1)

        assert response.metadata.top_k == 1
        assert len(response.sources) == 1
        assert code_20a1_corpus.search_by_vector.await_args.args[2] == 4

    async def test_keyword_failure_reports_fallback(
        self, qa_service, code_20a1_corpus, translated
    ):
        code_20a1_corpus.search_by_text.side_effect = ChunkStoreError("search_by_text", "down")

        response = await qa_service.ask(401, "What is code 20a1?")

        assert response.metadata.search_method == SEARCH_METHOD_FALLBACK
        assert all(s.combined_score is None for s in response.sources)

    async def test_force_semantic_only(self, qa_service, code_20a1_corpus, translated):
        response = await qa_service.ask(401, "What is code 20a1?", force_semantic_only=True)

        assert response.metadata.search_method == SEARCH_METHOD_SEMANTIC
        code_20a1_corpus.search_by_text.assert_not_awaited()

    async def test_translation_disabled(
        self, mock_store, mock_embedder, mock_llm, config, metrics, code_20a1_corpus, translated
    ):
        service = MunicipalQAService(
            store=mock_store,
            embedder=mock_embedder,
            llm=mock_llm,
            config=config.model_copy(update={"use_query_translation": False}),
            metrics=metrics,
        )

        response = await service.ask(401, "What is code 20a1?")

        assert response.metadata.translation.was_translated is False
        assert response.metadata.translation.source_language == "en"
        operations = [c.kwargs["operation"] for c in mock_llm.complete.await_args_list]
        assert operations == ["answer_generation"]

    async def test_records_query_metrics(self, qa_service, metrics, code_20a1_corpus, translated):
        await qa_service.ask(401, "What is code 20a1?")

        output = metrics.render_prometheus()
        assert (
            'rag_queries_total{query_class="code_lookup",'
            'search_method="hybrid (semantic + BM25)",decision="accept"} 1'
        ) in output
        assert 'rag_iterations_total{query_class="code_lookup"} 1' in output


class TestServiceHelpers:
    """Tests for batch and configuration helpers."""

    def test_validate_question_strips(self):
        assert validate_question("  What is code 20a1?  ") == "What is code 20a1?"

    async def test_ask_many(self, qa_service, code_20a1_corpus, translated):
        responses = await qa_service.ask_many(
            401, ["What is code 20a1?", "What is code 20a1?"], pacing_seconds=0
        )
        assert len(responses) == 2
        assert all(r.sources for r in responses)

    async def test_translate_batch_delegates(self, qa_service, llm_responses):
        llm_responses["translation"] = Completion(text="Quina és l'alçada màxima?")

        results = await qa_service.translate_batch(["What is the maximum height?"], 401)

        assert results[0].translated == "Quina és l'alçada màxima?"

    def test_get_config(self, qa_service):
        data = qa_service.get_config()

        assert data["relevance_threshold"] == 0.6
        assert "optimizations" in data
        assert data["languages"]["default_document_language"] == "ca"
