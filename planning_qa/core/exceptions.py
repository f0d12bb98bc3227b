"""Error taxonomy for the question-answering pipeline.

Adapters translate raw driver and HTTP exceptions into these types, so a
caller only ever sees a well-formed response or one of the errors below.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

import openai

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PlanningQAError(Exception):
    """Base exception for planning QA errors."""

    pass


class MunicipalityNotFoundError(PlanningQAError):
    """The requested municipality does not exist."""

    def __init__(self, municipality_id: int):
        super().__init__(f"Municipality with ID {municipality_id} not found")
        self.municipality_id = municipality_id


class ChunkStoreError(PlanningQAError):
    """SQL or driver fault inside the chunk store adapter."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class RetrievalError(PlanningQAError):
    """Retrieval failed and no fallback was left to try."""

    pass


class LLMError(PlanningQAError):
    """Chat-completion or embedding provider fault."""

    def __init__(
        self,
        operation: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.status_code = status_code
        self.retryable = retryable


class GenerationError(PlanningQAError):
    """Answer generation failed; the caller may retry the question."""

    pass


class QATimeoutError(PlanningQAError):
    """An external call, or the whole pipeline, exceeded its time bound."""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s")
        self.operation = operation
        self.timeout_seconds = timeout_seconds


def from_openai_error(
    operation: str,
    exc: openai.APIError,
    timeout_seconds: float,
) -> PlanningQAError:
    """Translate an ``openai`` exception into the pipeline taxonomy."""
    if isinstance(exc, openai.APITimeoutError):
        return QATimeoutError(operation, timeout_seconds)
    if isinstance(exc, openai.APIConnectionError):
        return LLMError(operation, str(exc), retryable=True)
    if isinstance(exc, openai.APIStatusError):
        status_code = exc.status_code
        retryable = status_code == 429 or status_code >= 500
        return LLMError(operation, exc.message, status_code=status_code, retryable=retryable)
    return LLMError(operation, str(exc))


async def with_timeout(aw: Awaitable[T], seconds: float, operation: str) -> T:
    """Await ``aw`` with a bound, raising ``QATimeoutError`` when exceeded."""
    try:
        return await asyncio.wait_for(aw, timeout=seconds)
    except asyncio.TimeoutError as e:
        logger.warning("%s exceeded %.1fs timeout", operation, seconds)
        raise QATimeoutError(operation, seconds) from e
