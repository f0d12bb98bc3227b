"""Agentic retrieval controller.

Runs a bounded retrieve -> grade -> decide loop. Each pass is graded
independently of retrieval; low-quality passes trigger a query rewrite until
the iteration budget or the rewriter's distinct-query cap runs out. The
best-seen pass, not necessarily the last one, is returned.
"""

import logging
import re
from typing import Iterable, Optional, TypeVar

from planning_qa.core.config import RAGConfig, ScoringWeights
from planning_qa.core.exceptions import LLMError, PlanningQAError, RetrievalError
from planning_qa.knowledge.embeddings import OpenAIEmbeddingProvider
from planning_qa.knowledge.models import (
    AgentOutcome,
    Decision,
    IterationRecord,
    RetrievalResult,
    ScoredCandidate,
)
from planning_qa.knowledge.retriever import HybridRetriever, extract_key_terms, rerank
from planning_qa.knowledge.rewriter import QueryRewriter

logger = logging.getLogger(__name__)

KEYWORD_SIGNAL_WEIGHT = 0.4
SEMANTIC_SIGNAL_WEIGHT = 0.4
DOCUMENT_BONUS_CAP = 0.2
SEMANTIC_MATCH_TARGET = 0.5

_STOPWORDS = frozenset(
    {
        # en
        "what", "which", "who", "where", "when", "how", "the", "are", "for", "and",
        "with", "does", "can", "about", "there", "this", "that", "from", "into",
        # ca / es / pt
        "què", "que", "quin", "quina", "quins", "quines", "com", "els", "les", "per",
        "amb", "una", "del", "los", "las", "para", "con", "cuál", "cómo", "qué",
        "quais", "como", "uma", "dos", "das",
        # de
        "was", "wie", "die", "der", "und", "ist", "sind", "welche",
    }
)

_TOKEN = re.compile(r"[\w\-_.]+")

R = TypeVar("R", bound=IterationRecord)


def significant_terms(query_text: str) -> set[str]:
    """Lowercase query tokens worth looking for in retrieved text.

    Tokens with a digit (codes) always count; other tokens need three or
    more characters and must not be stopwords.
    """
    terms: set[str] = set()
    for token in _TOKEN.findall(extract_key_terms(query_text).lower()):
        token = token.strip(".-_")
        if not token:
            continue
        if any(ch.isdigit() for ch in token):
            terms.add(token)
        elif len(token) >= 3 and token not in _STOPWORDS:
            terms.add(token)
    return terms


def grade_relevance(query_text: str, sources: list[ScoredCandidate]) -> float:
    """Aggregate relevance of one retrieval pass, in [0, 1].

    Keyword presence contributes up to 0.4, semantic match up to 0.4 and a
    document-count bonus up to 0.2.
    """
    if not sources:
        return 0.0

    terms = significant_terms(query_text)
    if terms:
        corpus = " ".join(s.chunk.chunk_text.lower() for s in sources)
        keyword_signal = sum(1 for t in terms if t in corpus) / len(terms)
    else:
        keyword_signal = 0.0

    avg_similarity = sum(s.semantic_similarity for s in sources) / len(sources)
    semantic_signal = min(avg_similarity / SEMANTIC_MATCH_TARGET, 1.0)

    document_bonus = min(len(sources) / 10, DOCUMENT_BONUS_CAP)

    score = (
        KEYWORD_SIGNAL_WEIGHT * keyword_signal
        + SEMANTIC_SIGNAL_WEIGHT * semantic_signal
        + document_bonus
    )
    return min(score, 1.0)


def decide(
    sources_found: int,
    relevance_score: float,
    iteration: int,
    config: RAGConfig,
) -> tuple[Decision, Optional[str]]:
    """Grade decision for one pass.

    Returns:
        The decision and, unless accepted, the reason for it.
    """
    if sources_found == 0:
        reason = "no sources found"
    elif relevance_score < config.relevance_threshold:
        reason = f"low relevance score ({relevance_score * 100:.0f}%)"
    elif sources_found < config.min_sources_required:
        reason = f"insufficient sources ({sources_found} < {config.min_sources_required})"
    else:
        return Decision.ACCEPT, None

    if iteration < config.max_iterations:
        return Decision.REWRITE_QUERY, reason
    return Decision.MAX_ITERATIONS, reason


def select_best_result(records: Iterable[R]) -> Optional[R]:
    """Highest relevance wins; ties go to the record with more sources."""
    best: Optional[R] = None
    for record in records:
        if best is None:
            best = record
        elif record.relevance_score > best.relevance_score:
            best = record
        elif (
            record.relevance_score == best.relevance_score
            and record.sources_found > best.sources_found
        ):
            best = record
    return best


class AgenticController:
    """Bounded iterative retrieval with grading and query rewriting."""

    def __init__(
        self,
        retriever: HybridRetriever,
        rewriter: QueryRewriter,
        embedder: OpenAIEmbeddingProvider,
        config: RAGConfig,
    ) -> None:
        self._retriever = retriever
        self._rewriter = rewriter
        self._embedder = embedder
        self._config = config

    async def run(
        self,
        municipality_id: int,
        query_text: str,
        top_k: int,
        *,
        weights: Optional[ScoringWeights] = None,
        force_semantic_only: bool = False,
        verbose: bool = False,
    ) -> AgentOutcome:
        """Run the loop until a pass is accepted or the budget is spent.

        Technical failures (store, embedding, timeouts) propagate without a
        rewrite; only retrieval quality problems trigger one.

        Raises:
            RetrievalError: Retrieval or query embedding failed.
            QATimeoutError: A bounded call timed out.
        """
        log = logger.info if verbose else logger.debug

        history: list[IterationRecord] = []
        results: dict[int, RetrievalResult] = {}
        attempts: list[str] = [query_text]
        current_query = query_text

        for iteration in range(1, self._config.max_iterations + 1):
            log(f'Iteration {iteration}/{self._config.max_iterations}: "{current_query}"')

            retrieval = await self._search(
                municipality_id, current_query, top_k, weights, force_semantic_only
            )
            sources = retrieval.sources
            relevance = grade_relevance(current_query, sources)
            decision, reason = decide(len(sources), relevance, iteration, self._config)

            next_query: Optional[str] = None
            if decision is Decision.REWRITE_QUERY:
                next_query = await self._next_query(query_text, attempts, reason)
                if next_query is None:
                    decision = Decision.MAX_ITERATIONS

            history.append(
                IterationRecord(
                    iteration_index=iteration,
                    query_text=current_query,
                    sources_found=len(sources),
                    relevance_score=relevance,
                    avg_similarity=retrieval.avg_similarity,
                    decision=decision,
                )
            )
            results[iteration] = retrieval

            log(
                f"  {len(sources)} sources, relevance {relevance:.2f} -> {decision.value}"
                + (f" ({reason})" if reason else "")
            )

            if decision.is_terminal:
                break

            current_query = next_query
            attempts.append(next_query)

        best_record = select_best_result(history)
        successful = next(
            (r.iteration_index for r in history if r.decision is Decision.ACCEPT), -1
        )
        return AgentOutcome(
            best=results[best_record.iteration_index],
            best_iteration=best_record.iteration_index,
            history=history,
            final_decision=history[-1].decision,
            successful_iteration=successful,
        )

    async def _search(
        self,
        municipality_id: int,
        query_text: str,
        top_k: int,
        weights: Optional[ScoringWeights],
        force_semantic_only: bool,
    ) -> RetrievalResult:
        """Embed and retrieve one query.

        ``HybridRetriever.retrieve`` already cuts to ``top_k``, so the rerank
        step, and with it ``rerank_floor``, only applies to retrievers that
        return more than ``top_k`` results.
        """
        try:
            embedding = await self._embedder.embed(query_text)
        except LLMError as e:
            logger.error(f"Query embedding failed: {e}")
            raise RetrievalError(f"Query embedding failed: {e}") from e

        retrieval = await self._retriever.retrieve(
            municipality_id,
            query_text,
            embedding,
            top_k,
            weights=weights,
            force_semantic_only=force_semantic_only,
        )
        if len(retrieval.sources) > top_k:
            retrieval = RetrievalResult(
                sources=rerank(retrieval.sources, top_k, self._config.rerank_floor),
                search_method=retrieval.search_method,
            )
        return retrieval

    async def _next_query(
        self,
        original_query: str,
        attempts: list[str],
        reason: Optional[str],
    ) -> Optional[str]:
        try:
            return await self._rewriter.rewrite(original_query, attempts, reason)
        except PlanningQAError as e:
            logger.warning(f"Query rewrite failed, keeping best result so far: {e}")
            return None
