"""Question-answering endpoints.

Thin HTTP surface over ``MunicipalQAService``:
- POST /query - answer a question about one municipality
- GET /config - current retrieval/generation tunables
- GET /municipalities - municipalities with indexed documents
- POST /translate/batch - translate questions to the corpus language
"""

import logging
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from planning_qa.core.exceptions import (
    ChunkStoreError,
    GenerationError,
    LLMError,
    MunicipalityNotFoundError,
    PlanningQAError,
    QATimeoutError,
    RetrievalError,
)
from planning_qa.knowledge.models import BatchTranslation, MunicipalitySummary
from planning_qa.services.municipal_qa import (
    MAX_QUESTION_LENGTH,
    MunicipalQAService,
    get_qa_service,
)

router = APIRouter()
logger = logging.getLogger(__name__)

QAService = Annotated[MunicipalQAService, Depends(get_qa_service)]


# -------------------------------------------------------------------------
# Request/Response Models
# -------------------------------------------------------------------------


class QueryRequest(BaseModel):
    """Question about a municipality's planning documents."""

    query: str = Field(..., min_length=1, max_length=MAX_QUESTION_LENGTH)
    municipality_id: int
    top_k: Optional[int] = Field(None, gt=0, le=50)
    verbose: bool = False
    force_semantic_only: bool = False


class SourceResponse(BaseModel):
    """One cited source."""

    document_title: str
    document_url: str
    chunk_index: int
    similarity_score: float


class QueryResponse(BaseModel):
    """Grounded answer with sources and retrieval diagnostics."""

    answer: str
    municipality: str
    question: str
    sources: list[SourceResponse]
    context_chunks_used: int
    response_time: str
    search_method: str
    retrieval_calls: int
    agent_steps: int
    metadata: dict[str, Any]


class MunicipalitiesResponse(BaseModel):
    """Municipalities with indexed planning documents."""

    municipalities: list[MunicipalitySummary]
    count: int


class TranslateBatchRequest(BaseModel):
    """Questions to translate in one batch."""

    questions: list[str] = Field(..., min_length=1, max_length=100)
    municipality_id: int


class TranslateBatchResponse(BaseModel):
    """Batch translation results in input order."""

    translations: list[BatchTranslation]
    count: int


# -------------------------------------------------------------------------
# Error mapping
# -------------------------------------------------------------------------


def to_http_exception(error: PlanningQAError) -> HTTPException:
    """Map pipeline errors to HTTP status codes."""
    if isinstance(error, MunicipalityNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, QATimeoutError):
        status_code = status.HTTP_504_GATEWAY_TIMEOUT
    elif isinstance(error, (GenerationError, LLMError)):
        status_code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(error, (RetrievalError, ChunkStoreError)):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=status_code, detail=str(error))


# -------------------------------------------------------------------------
# Endpoints
# -------------------------------------------------------------------------


@router.post("/query", response_model=QueryResponse)
async def query_municipality(request: QueryRequest, service: QAService) -> QueryResponse:
    """Answer a question from a municipality's planning documents.

    Raises:
        HTTPException: 404 unknown municipality, 422 invalid question,
            502/503/504 on upstream failures.
    """
    try:
        result = await service.ask(
            request.municipality_id,
            request.query,
            top_k=request.top_k,
            verbose=request.verbose,
            force_semantic_only=request.force_semantic_only,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except PlanningQAError as e:
        logger.error(f"Query failed for municipality {request.municipality_id}: {e}")
        raise to_http_exception(e)

    metadata = result.metadata
    return QueryResponse(
        answer=result.answer,
        municipality=metadata.municipality_name,
        question=request.query,
        sources=[
            SourceResponse(
                document_title=s.chunk.document_title,
                document_url=s.chunk.document_url,
                chunk_index=s.chunk.chunk_index,
                similarity_score=round(s.score, 4),
            )
            for s in result.sources
        ],
        context_chunks_used=len(result.sources),
        response_time=f"{metadata.elapsed_ms:.0f}ms",
        search_method=metadata.search_method,
        retrieval_calls=metadata.iterations_used,
        agent_steps=len(metadata.history),
        metadata=metadata.model_dump(mode="json"),
    )


@router.get("/config")
async def get_config(service: QAService) -> dict[str, Any]:
    """Current retrieval and generation configuration."""
    return service.get_config()


@router.get("/municipalities", response_model=MunicipalitiesResponse)
async def list_municipalities(service: QAService) -> MunicipalitiesResponse:
    """List municipalities that have indexed planning documents."""
    try:
        municipalities = await service.list_municipalities()
    except PlanningQAError as e:
        raise to_http_exception(e)
    return MunicipalitiesResponse(municipalities=municipalities, count=len(municipalities))


@router.post("/translate/batch", response_model=TranslateBatchResponse)
async def translate_batch(
    request: TranslateBatchRequest,
    service: QAService,
) -> TranslateBatchResponse:
    """Translate questions into the municipality's document language."""
    try:
        translations = await service.translate_batch(request.questions, request.municipality_id)
    except PlanningQAError as e:
        raise to_http_exception(e)
    return TranslateBatchResponse(translations=translations, count=len(translations))
