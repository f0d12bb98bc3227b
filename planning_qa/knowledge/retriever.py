"""Hybrid retrieval: semantic + keyword candidates fused into one ranking.

Semantic candidates come from vector distance, keyword candidates from the
full-text index. Both sets are merged by ``(document_url, chunk_index)``,
scored as ``w_s * similarity + w_k * keyword_rank``, threshold-filtered and
truncated to the requested depth.
"""

import logging
import re
from typing import TYPE_CHECKING, Iterable, Optional

import numpy as np

from planning_qa.core.config import RAGConfig, ScoringWeights
from planning_qa.core.exceptions import ChunkStoreError, QATimeoutError, RetrievalError
from planning_qa.knowledge.models import RetrievalResult, ScoredCandidate
from planning_qa.knowledge.store import ChunkStore

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

SEARCH_METHOD_HYBRID = "hybrid (semantic + BM25)"
SEARCH_METHOD_FALLBACK = "semantic (fallback)"
SEARCH_METHOD_SEMANTIC = "semantic only"

# Punctuation is stripped; hyphens, underscores and dots survive so that
# codes like "20-a-1", "zone_15" and "ref.123" reach the keyword index intact.
_KEY_TERM_STRIP = re.compile(r"[^\w\s\-_.]")


def combined_score(
    semantic_similarity: float,
    keyword_rank: float,
    weights: ScoringWeights,
) -> float:
    """Weighted fusion of semantic similarity and keyword rank."""
    return weights.semantic * semantic_similarity + weights.keyword * keyword_rank


def extract_key_terms(text: str) -> str:
    """Sanitise question text for ``plainto_tsquery``."""
    cleaned = " ".join(_KEY_TERM_STRIP.sub(" ", text).split())
    return cleaned.rstrip(".").strip()


def deduplicate(candidates: Iterable[ScoredCandidate]) -> list[ScoredCandidate]:
    """Drop repeated ``(document_url, chunk_index)`` keys; the first entry wins."""
    seen: dict[tuple[str, int], ScoredCandidate] = {}
    for candidate in candidates:
        if candidate.key not in seen:
            seen[candidate.key] = candidate
    return list(seen.values())


def merge_candidates(
    semantic: Iterable[ScoredCandidate],
    keyword: Iterable[ScoredCandidate],
) -> list[ScoredCandidate]:
    """Union semantic and keyword candidates.

    Semantic entries come first. A chunk found by both searches keeps its
    semantic entry and gains the keyword rank, so it carries both scores.
    """
    merged = {c.key: c for c in deduplicate(semantic)}
    for candidate in deduplicate(keyword):
        existing = merged.get(candidate.key)
        if existing is None:
            merged[candidate.key] = candidate
        elif existing.keyword_rank == 0.0 and candidate.keyword_rank > 0.0:
            merged[candidate.key] = existing.model_copy(
                update={"keyword_rank": candidate.keyword_rank}
            )
    return list(merged.values())


def apply_weights(
    candidates: Iterable[ScoredCandidate],
    weights: ScoringWeights,
) -> list[ScoredCandidate]:
    return [
        c.model_copy(
            update={
                "combined_score": combined_score(c.semantic_similarity, c.keyword_rank, weights)
            }
        )
        for c in candidates
    ]


def filter_by_threshold(
    candidates: Iterable[ScoredCandidate],
    threshold: float,
) -> list[ScoredCandidate]:
    """Keep candidates whose score is at least ``threshold``."""
    return [c for c in candidates if c.score >= threshold]


def sort_by_score(candidates: Iterable[ScoredCandidate]) -> list[ScoredCandidate]:
    """Descending by score; equal scores keep their incoming order."""
    return sorted(candidates, key=lambda c: c.score, reverse=True)


def rerank(
    candidates: Iterable[ScoredCandidate],
    top_k: int,
    min_score: float = 0.15,
) -> list[ScoredCandidate]:
    """Secondary quality filter: sort, drop weak matches, truncate.

    Uses the combined score when present, otherwise raw semantic similarity.
    """
    ranked = sort_by_score(candidates)
    return [c for c in ranked if c.score >= min_score][:top_k]


class HybridRetriever:
    """Fused semantic + keyword retrieval over the chunk store."""

    def __init__(self, store: ChunkStore, config: RAGConfig) -> None:
        self._store = store
        self._config = config

    async def retrieve(
        self,
        municipality_id: int,
        query_text: str,
        query_embedding: "NDArray[np.float32]",
        top_k: int,
        *,
        weights: Optional[ScoringWeights] = None,
        force_semantic_only: bool = False,
    ) -> RetrievalResult:
        """Retrieve the best ``top_k`` chunks for a query.

        Args:
            municipality_id: Municipality to search within.
            query_text: Text used for the keyword search.
            query_embedding: Embedding of ``query_text``.
            top_k: Maximum number of sources returned.
            weights: Fusion profile (defaults to the general profile).
            force_semantic_only: Skip the keyword search entirely.

        Returns:
            RetrievalResult with ranked sources and the search method used.

        Raises:
            RetrievalError: Semantic search failed, including the fallback.
            QATimeoutError: The fallback semantic search timed out.
        """
        weights = weights or self._config.general_weights
        limit = top_k * self._config.candidate_multiplier

        if force_semantic_only or not self._config.use_hybrid_search:
            return await self._semantic_only(
                municipality_id, query_embedding, top_k, SEARCH_METHOD_SEMANTIC
            )

        try:
            semantic = await self._store.search_by_vector(
                municipality_id, query_embedding, limit
            )
        except (ChunkStoreError, QATimeoutError) as e:
            logger.warning(f"Hybrid search failed, falling back to semantic: {e}")
            return await self._semantic_only(
                municipality_id, query_embedding, top_k, SEARCH_METHOD_FALLBACK
            )

        try:
            keyword = await self._store.search_by_text(
                municipality_id, extract_key_terms(query_text), limit
            )
        except (ChunkStoreError, QATimeoutError) as e:
            logger.warning(f"Keyword search failed, falling back to semantic: {e}")
            return self._semantic_result(semantic, top_k, SEARCH_METHOD_FALLBACK)

        fused = apply_weights(merge_candidates(semantic, keyword), weights)
        ranked = sort_by_score(filter_by_threshold(fused, self._config.similarity_threshold))

        logger.debug(
            f"Hybrid search: {len(semantic)} semantic + {len(keyword)} keyword candidates, "
            f"{len(fused)} unique, {len(ranked)} above threshold"
        )
        return RetrievalResult(sources=ranked[:top_k], search_method=SEARCH_METHOD_HYBRID)

    async def _semantic_only(
        self,
        municipality_id: int,
        query_embedding: "NDArray[np.float32]",
        top_k: int,
        search_method: str,
    ) -> RetrievalResult:
        try:
            semantic = await self._store.search_by_vector(
                municipality_id,
                query_embedding,
                top_k,
                min_similarity=self._config.similarity_threshold,
            )
        except ChunkStoreError as e:
            logger.error(f"Semantic search failed: {e}")
            raise RetrievalError(f"Semantic search failed: {e}") from e
        return self._semantic_result(semantic, top_k, search_method)

    def _semantic_result(
        self,
        candidates: list[ScoredCandidate],
        top_k: int,
        search_method: str,
    ) -> RetrievalResult:
        ranked = sort_by_score(
            filter_by_threshold(deduplicate(candidates), self._config.similarity_threshold)
        )
        return RetrievalResult(sources=ranked[:top_k], search_method=search_method)
