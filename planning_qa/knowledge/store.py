"""Chunk store adapter over PostgreSQL + pgvector.

Executes semantic (vector distance) and keyword (full-text rank) candidate
queries against ``pdm_document_embeddings`` for one municipality. Rows are
validated into typed records here; SQL and driver faults surface as
``ChunkStoreError``.
"""

import logging
from typing import Any, Optional, Sequence

import numpy as np
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from planning_qa.core.config import RAGConfig
from planning_qa.core.exceptions import ChunkStoreError, with_timeout
from planning_qa.knowledge.languages import corpus_language_for
from planning_qa.knowledge.models import (
    Chunk,
    Municipality,
    MunicipalitySummary,
    ScoredCandidate,
)

logger = logging.getLogger(__name__)

SEMANTIC_SEARCH_SQL = text(
    """
    SELECT
        pde.municipality_id,
        pde.document_title,
        pde.document_url,
        pde.chunk_index,
        pde.chunk_text,
        1 - (pde.embedding <=> CAST(:embedding AS vector)) AS similarity
    FROM pdm_document_embeddings pde
    WHERE pde.municipality_id = :municipality_id
      AND 1 - (pde.embedding <=> CAST(:embedding AS vector)) >= :min_similarity
    ORDER BY pde.embedding <=> CAST(:embedding AS vector)
    LIMIT :limit
    """
)

KEYWORD_SEARCH_SQL = text(
    """
    SELECT
        pde.municipality_id,
        pde.document_title,
        pde.document_url,
        pde.chunk_index,
        pde.chunk_text,
        ts_rank(pde.fts_document, plainto_tsquery('simple', :terms)) AS keyword_rank
    FROM pdm_document_embeddings pde
    WHERE pde.municipality_id = :municipality_id
      AND pde.fts_document @@ plainto_tsquery('simple', :terms)
    ORDER BY keyword_rank DESC
    LIMIT :limit
    """
)

MUNICIPALITY_SQL = text(
    """
    SELECT m.id, m.name, m.country
    FROM municipalities m
    WHERE m.id = :municipality_id
    """
)

INDEXED_MUNICIPALITIES_SQL = text(
    """
    SELECT
        m.id,
        m.name,
        COUNT(*) AS chunk_count,
        COUNT(DISTINCT pde.document_url) AS document_count
    FROM pdm_document_embeddings pde
    JOIN municipalities m ON m.id = pde.municipality_id
    GROUP BY m.id, m.name
    ORDER BY m.name
    """
)


def to_pgvector(vector: Sequence[float] | np.ndarray) -> str:
    """Format an embedding as a pgvector text literal."""
    values = np.asarray(vector, dtype=np.float32).tolist()
    return "[" + ",".join(repr(float(v)) for v in values) + "]"


def _clamp_unit(value: Any) -> float:
    return max(0.0, min(1.0, float(value or 0.0)))


def _chunk_from_row(row: Any) -> Chunk:
    return Chunk(
        municipality_id=row["municipality_id"],
        document_title=row["document_title"] or "",
        document_url=row["document_url"],
        chunk_index=row["chunk_index"],
        chunk_text=row["chunk_text"] or "",
    )


class ChunkStore:
    """Query adapter for indexed planning-document chunks.

    Every query runs in its own session under the configured search timeout.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: RAGConfig,
    ) -> None:
        self._session_factory = session_factory
        self._config = config

    async def _fetch(
        self,
        operation: str,
        statement: Any,
        params: dict[str, Any],
    ) -> list[Any]:
        async def run() -> list[Any]:
            async with self._session_factory() as session:
                result = await session.execute(statement, params)
                return list(result.mappings().all())

        try:
            return await with_timeout(run(), self._config.search_timeout, operation)
        except (SQLAlchemyError, OSError) as e:
            # asyncpg connect failures surface as bare OSError
            logger.error(f"Chunk store {operation} failed: {e!r}")
            raise ChunkStoreError(operation, str(e)) from e

    async def search_by_vector(
        self,
        municipality_id: int,
        vector: Sequence[float] | np.ndarray,
        limit: int,
        min_similarity: float = 0.0,
    ) -> list[ScoredCandidate]:
        """Nearest chunks by cosine similarity.

        Args:
            municipality_id: Municipality to search within.
            vector: Query embedding.
            limit: Maximum number of rows.
            min_similarity: Rows below this similarity are excluded.

        Returns:
            Candidates ordered by vector distance, ``keyword_rank`` = 0.
        """
        rows = await self._fetch(
            "search_by_vector",
            SEMANTIC_SEARCH_SQL,
            {
                "embedding": to_pgvector(vector),
                "municipality_id": municipality_id,
                "min_similarity": min_similarity,
                "limit": limit,
            },
        )

        candidates: list[ScoredCandidate] = []
        for row in rows:
            try:
                candidates.append(
                    ScoredCandidate(
                        chunk=_chunk_from_row(row),
                        semantic_similarity=_clamp_unit(row["similarity"]),
                        keyword_rank=0.0,
                    )
                )
            except ValidationError as e:
                logger.warning(f"Skipping malformed chunk row: {e}")
        return candidates

    async def search_by_text(
        self,
        municipality_id: int,
        terms: str,
        limit: int,
    ) -> list[ScoredCandidate]:
        """Chunks matching the full-text index, ranked by ``ts_rank``.

        Returns:
            Candidates ordered by keyword rank, ``semantic_similarity`` = 0.
        """
        if not terms.strip():
            return []

        rows = await self._fetch(
            "search_by_text",
            KEYWORD_SEARCH_SQL,
            {"terms": terms, "municipality_id": municipality_id, "limit": limit},
        )

        candidates: list[ScoredCandidate] = []
        for row in rows:
            try:
                candidates.append(
                    ScoredCandidate(
                        chunk=_chunk_from_row(row),
                        semantic_similarity=0.0,
                        keyword_rank=max(0.0, float(row["keyword_rank"] or 0.0)),
                    )
                )
            except ValidationError as e:
                logger.warning(f"Skipping malformed chunk row: {e}")
        return candidates

    async def get_municipality(self, municipality_id: int) -> Optional[Municipality]:
        """Look up municipality metadata, or ``None`` if it does not exist."""
        rows = await self._fetch(
            "get_municipality", MUNICIPALITY_SQL, {"municipality_id": municipality_id}
        )
        if not rows:
            return None

        row = rows[0]
        return Municipality(
            id=row["id"],
            name=row["name"],
            country=row["country"],
            corpus_language=corpus_language_for(
                row["id"],
                row["country"],
                self._config.document_language_overrides,
                self._config.default_document_language,
            ),
        )

    async def list_municipalities(self) -> list[MunicipalitySummary]:
        """Municipalities that have indexed chunks, with chunk/document counts."""
        rows = await self._fetch("list_municipalities", INDEXED_MUNICIPALITIES_SQL, {})
        return [
            MunicipalitySummary(
                id=row["id"],
                name=row["name"],
                chunk_count=row["chunk_count"],
                document_count=row["document_count"],
            )
            for row in rows
        ]
