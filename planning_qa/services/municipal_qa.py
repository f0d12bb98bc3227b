"""Municipal planning question answering.

Pipeline per question: classify -> translate -> agentic retrieval loop
(hybrid retrieve, rerank, grade, decide) -> grounded answer generation.
Each question runs sequentially in its own task; no mutable state is shared
between questions.
"""

import asyncio
import logging
import time
from typing import Any, Optional

from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from planning_qa.core.ai_constants import INSUFFICIENT_INFORMATION_ANSWER
from planning_qa.core.config import RAGConfig, get_rag_config
from planning_qa.core.database import get_session_factory
from planning_qa.core.exceptions import MunicipalityNotFoundError, with_timeout
from planning_qa.knowledge.agent import AgenticController
from planning_qa.knowledge.classifier import classify
from planning_qa.knowledge.embeddings import OpenAIEmbeddingProvider
from planning_qa.knowledge.languages import detect_language
from planning_qa.knowledge.models import (
    BatchTranslation,
    MunicipalitySummary,
    RAGMetadata,
    RAGResponse,
    TranslationResult,
)
from planning_qa.knowledge.retriever import HybridRetriever
from planning_qa.knowledge.rewriter import QueryRewriter
from planning_qa.knowledge.store import ChunkStore
from planning_qa.knowledge.translator import QueryTranslator
from planning_qa.observability import MetricsBackend, get_metrics_backend
from planning_qa.services.answer_generator import AnswerGenerator
from planning_qa.services.openai_client import ChatCompletionClient, get_openai_client
from planning_qa.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

MAX_QUESTION_LENGTH = 1000
DEFAULT_BATCH_PACING_SECONDS = 1.0

# Global service instance
_qa_service_instance: "MunicipalQAService | None" = None


def validate_question(question: str) -> str:
    """Strip and validate a question.

    Raises:
        ValueError: If the question is empty or too long.
    """
    question = (question or "").strip()
    if not question:
        raise ValueError("Question cannot be empty")
    if len(question) > MAX_QUESTION_LENGTH:
        raise ValueError(f"Question too long (max {MAX_QUESTION_LENGTH} characters)")
    return question


class MunicipalQAService:
    """Answers questions about a municipality's planning documents."""

    def __init__(
        self,
        store: ChunkStore,
        embedder: OpenAIEmbeddingProvider,
        llm: ChatCompletionClient,
        config: RAGConfig,
        metrics: Optional[MetricsBackend] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.metrics = metrics or get_metrics_backend()
        self.translator = QueryTranslator(llm, store, config, retry_policy)
        self.retriever = HybridRetriever(store, config)
        self.controller = AgenticController(
            self.retriever, QueryRewriter(llm, config), embedder, config
        )
        self.generator = AnswerGenerator(llm, config)

    @classmethod
    def create(
        cls,
        config: RAGConfig,
        session_factory: async_sessionmaker[AsyncSession],
        client: AsyncOpenAI,
        metrics: Optional[MetricsBackend] = None,
    ) -> "MunicipalQAService":
        """Wire the service from a session factory and an OpenAI client."""
        metrics = metrics or get_metrics_backend()
        return cls(
            store=ChunkStore(session_factory, config),
            embedder=OpenAIEmbeddingProvider(client, config, metrics),
            llm=ChatCompletionClient(client, config, metrics),
            config=config,
            metrics=metrics,
        )

    async def ask(
        self,
        municipality_id: int,
        question: str,
        *,
        top_k: Optional[int] = None,
        verbose: bool = False,
        force_semantic_only: bool = False,
        timeout: Optional[float] = None,
    ) -> RAGResponse:
        """Answer one question.

        Args:
            municipality_id: Municipality whose documents are searched.
            question: Natural-language question (1-1000 characters).
            top_k: Retrieval depth; overrides the classifier's suggestion.
            verbose: Log pipeline milestones at INFO.
            force_semantic_only: Skip keyword search.
            timeout: Bound for the whole pipeline (defaults to config).

        Returns:
            RAGResponse. When nothing relevant is found the answer states
            that the documents are insufficient and ``sources`` is empty.

        Raises:
            ValueError: Invalid question or ``top_k``.
            MunicipalityNotFoundError: Unknown municipality.
            RetrievalError: Retrieval failed including its fallback.
            GenerationError: Answer generation failed.
            QATimeoutError: An external call or the whole pipeline timed out.
        """
        question = validate_question(question)
        if top_k is not None and top_k <= 0:
            raise ValueError("top_k must be a positive integer")

        timeout = timeout if timeout is not None else self.config.pipeline_timeout
        return await with_timeout(
            self._answer(municipality_id, question, top_k, verbose, force_semantic_only),
            timeout,
            "pipeline",
        )

    async def _answer(
        self,
        municipality_id: int,
        question: str,
        top_k: Optional[int],
        verbose: bool,
        force_semantic_only: bool,
    ) -> RAGResponse:
        log = logger.info if verbose else logger.debug
        start_time = time.perf_counter()

        municipality = await self.store.get_municipality(municipality_id)
        if municipality is None:
            logger.error(f"Municipality {municipality_id} not found")
            raise MunicipalityNotFoundError(municipality_id)

        log(f'Question for {municipality.name}: "{question}"')

        classification = classify(question)
        depth = top_k if top_k is not None else classification.suggested_top_k
        log(f"Query classification: {classification.query_type.value}, top_k={depth}")

        if self.config.use_query_translation:
            translation = await self.translator.translate_if_needed(
                question,
                municipality_id,
                verbose=verbose,
                target_language=municipality.corpus_language,
            )
        else:
            translation = TranslationResult(
                translated_query=question,
                source_language=detect_language(question),
                target_language=municipality.corpus_language,
                was_translated=False,
            )

        outcome = await self.controller.run(
            municipality_id,
            translation.translated_query,
            depth,
            weights=self.config.weights_for(classification.query_type.value),
            force_semantic_only=force_semantic_only,
            verbose=verbose,
        )
        sources = outcome.best.sources

        if sources:
            completion = await self.generator.generate(question, sources, municipality.name)
            answer, tokens_used = completion.text, completion.tokens_used
        else:
            logger.warning(
                f"No relevant chunks for municipality {municipality_id} after "
                f"{outcome.iterations_used} iterations"
            )
            answer, tokens_used = INSUFFICIENT_INFORMATION_ANSWER, 0

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        metadata = RAGMetadata(
            top_k=depth,
            avg_similarity=outcome.best.avg_similarity,
            search_method=outcome.best.search_method,
            query_class=classification.query_type,
            iterations_used=outcome.iterations_used,
            queries_rewritten=outcome.queries_rewritten,
            successful_iteration=outcome.successful_iteration,
            municipality_name=municipality.name,
            model=self.config.model,
            tokens_used=tokens_used,
            elapsed_ms=round(elapsed_ms, 2),
            translation=translation,
            history=outcome.history,
        )

        self.metrics.observe_rag_query(
            classification.query_type.value,
            metadata.search_method,
            outcome.final_decision.value,
            outcome.iterations_used,
            elapsed_ms,
        )
        log(
            f"Answered in {elapsed_ms:.0f}ms with {len(sources)} sources "
            f"({metadata.search_method}, {outcome.iterations_used} iterations)"
        )

        return RAGResponse(answer=answer, sources=sources, metadata=metadata)

    async def ask_many(
        self,
        municipality_id: int,
        questions: list[str],
        *,
        pacing_seconds: float = DEFAULT_BATCH_PACING_SECONDS,
        verbose: bool = False,
    ) -> list[RAGResponse]:
        """Answer questions one after another, pausing between them."""
        responses: list[RAGResponse] = []
        for i, question in enumerate(questions):
            if i > 0 and pacing_seconds > 0:
                await asyncio.sleep(pacing_seconds)
            logger.info(f'Processing {i + 1}/{len(questions)}: "{question[:80]}"')
            responses.append(await self.ask(municipality_id, question, verbose=verbose))
        return responses

    async def translate_batch(
        self,
        questions: list[str],
        municipality_id: int,
    ) -> list[BatchTranslation]:
        """Translate many questions to the municipality's corpus language."""
        return await self.translator.translate_batch(questions, municipality_id)

    async def list_municipalities(self) -> list[MunicipalitySummary]:
        return await self.store.list_municipalities()

    def get_config(self) -> dict[str, Any]:
        """Current tunables, active optimisations and language settings."""
        data = self.config.snapshot()
        data["languages"] = self.translator.get_language_config()
        return data


def get_qa_service() -> MunicipalQAService:
    """Get the global question-answering service, creating it on first use."""
    global _qa_service_instance
    if _qa_service_instance is None:
        _qa_service_instance = MunicipalQAService.create(
            get_rag_config(), get_session_factory(), get_openai_client()
        )
    return _qa_service_instance
