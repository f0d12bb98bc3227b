"""Typed records for planning-document retrieval and answers.

Rows coming out of the chunk store are validated into these models at the
adapter boundary; everything downstream works on typed, immutable records.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class QueryType(str, Enum):
    """Classification of an incoming question."""

    SIMPLE = "simple"
    COMPLEX = "complex"
    CODE_LOOKUP = "code_lookup"
    COMPARATIVE = "comparative"


class Decision(str, Enum):
    """Outcome of grading one agentic iteration."""

    ACCEPT = "accept"
    REWRITE_QUERY = "rewrite_query"
    MAX_ITERATIONS = "max_iterations"

    @property
    def is_terminal(self) -> bool:
        return self is not Decision.REWRITE_QUERY


class Chunk(BaseModel):
    """A retrievable fragment of a municipal planning document."""

    model_config = ConfigDict(frozen=True)

    document_title: str = Field(..., description="Title of the source document")
    document_url: str = Field(..., description="URL of the source document")
    chunk_index: int = Field(..., ge=0, description="Ordinal of the chunk within its document")
    chunk_text: str = Field(..., description="Chunk text content")
    municipality_id: int


class ScoredCandidate(BaseModel):
    """A chunk together with its retrieval scores.

    ``combined_score`` is ``None`` when no keyword component was computed
    (semantic-only retrieval); ``score`` then falls back to the raw semantic
    similarity.
    """

    model_config = ConfigDict(frozen=True)

    chunk: Chunk
    semantic_similarity: float = Field(0.0, ge=0.0, le=1.0)
    keyword_rank: float = Field(0.0, ge=0.0)
    combined_score: Optional[float] = None

    @property
    def key(self) -> tuple[str, int]:
        """Deduplication key: (document_url, chunk_index)."""
        return (self.chunk.document_url, self.chunk.chunk_index)

    @property
    def score(self) -> float:
        """Ranking score used for filtering and sorting."""
        if self.combined_score is not None:
            return self.combined_score
        return self.semantic_similarity


class QueryClassification(BaseModel):
    """Query type and suggested retrieval depth for one question."""

    model_config = ConfigDict(frozen=True)

    query_type: QueryType
    suggested_top_k: int = Field(..., gt=0)


class TranslationResult(BaseModel):
    """Outcome of cross-language query translation."""

    model_config = ConfigDict(frozen=True)

    translated_query: str
    source_language: str
    target_language: str
    was_translated: bool = False


class BatchTranslation(BaseModel):
    """One item of a batch translation run."""

    model_config = ConfigDict(frozen=True)

    original: str
    translated: str
    source_language: str
    target_language: str
    was_translated: bool = False


class RetrievalResult(BaseModel):
    """Ranked sources from one hybrid retrieval call."""

    model_config = ConfigDict(frozen=True)

    sources: list[ScoredCandidate] = Field(default_factory=list)
    search_method: str

    @property
    def avg_similarity(self) -> float:
        if not self.sources:
            return 0.0
        return sum(s.score for s in self.sources) / len(self.sources)


class IterationRecord(BaseModel):
    """One pass of the agentic retrieve-grade-decide loop."""

    model_config = ConfigDict(frozen=True)

    iteration_index: int = Field(..., ge=1)
    query_text: str
    sources_found: int = Field(..., ge=0)
    relevance_score: float = Field(..., ge=0.0, le=1.0)
    avg_similarity: float = 0.0
    decision: Decision


class AgentOutcome(BaseModel):
    """Best-seen retrieval across all iterations plus the loop history."""

    model_config = ConfigDict(frozen=True)

    best: RetrievalResult
    best_iteration: int
    history: list[IterationRecord]
    final_decision: Decision
    successful_iteration: int = -1

    @property
    def iterations_used(self) -> int:
        return len(self.history)

    @property
    def queries_rewritten(self) -> int:
        return max(0, len(self.history) - 1)


class Municipality(BaseModel):
    """Municipality metadata needed by the pipeline."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    country: Optional[str] = None
    corpus_language: str = "ca"


class MunicipalitySummary(BaseModel):
    """Municipality with indexed document statistics."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    chunk_count: int = 0
    document_count: int = 0


class RAGMetadata(BaseModel):
    """Diagnostics attached to every answer."""

    model_config = ConfigDict(frozen=True)

    top_k: int
    avg_similarity: float = 0.0
    search_method: str
    query_class: QueryType
    iterations_used: int = 0
    queries_rewritten: int = 0
    successful_iteration: int = -1
    municipality_name: str
    model: str
    tokens_used: Optional[int] = None
    elapsed_ms: float = 0.0
    translation: TranslationResult
    history: list[IterationRecord] = Field(default_factory=list)


class RAGResponse(BaseModel):
    """Final grounded answer with its sources."""

    model_config = ConfigDict(frozen=True)

    answer: str
    sources: list[ScoredCandidate] = Field(default_factory=list)
    metadata: RAGMetadata
