"""Retry policy for batch and background calls.

Interactive questions never retry; batch translation jobs inject a policy
so transient provider faults (429, 5xx, network, timeouts) are retried with
exponential backoff.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from planning_qa.core.config import RAGConfig
from planning_qa.core.exceptions import LLMError, QATimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_error(exc: BaseException) -> bool:
    """Default retry predicate: timeouts and retryable provider errors."""
    if isinstance(exc, QATimeoutError):
        return True
    if isinstance(exc, LLMError):
        return exc.retryable
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with optional full jitter."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 20.0
    jitter: bool = True
    is_retryable: Callable[[BaseException], bool] = field(default=is_transient_error)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")

    @classmethod
    def from_config(cls, config: RAGConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.batch_max_attempts,
            base_delay=config.batch_base_delay,
            max_delay=config.batch_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            return random.uniform(0, delay)
        return delay

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Call ``fn`` until it succeeds, attempts run out, or it fails permanently.

        Raises:
            The last exception raised by ``fn``.
        """
        attempt = 1
        while True:
            try:
                return await fn()
            except Exception as e:
                if attempt >= self.max_attempts or not self.is_retryable(e):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                attempt += 1
