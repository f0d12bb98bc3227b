"""LLM-backed query rewriting for the agentic retrieval loop."""

import logging
from typing import Optional, Sequence

from planning_qa.core.ai_constants import REWRITE_SYSTEM_PROMPT, REWRITE_USER_PROMPT
from planning_qa.core.config import RAGConfig
from planning_qa.services.openai_client import ChatCompletionClient

logger = logging.getLogger(__name__)

# Failure reasons containing these mark infrastructure faults, not relevance
TECHNICAL_FAILURE_MARKERS = ("error", "timeout", "timed out")


def normalize_query(query: str) -> str:
    return " ".join(query.lower().split()).strip(" \"'?.!")


def count_distinct(queries: Sequence[str]) -> int:
    return len({normalize_query(q) for q in queries})


def is_technical_failure(failure_reason: Optional[str]) -> bool:
    if not failure_reason:
        return False
    reason = failure_reason.lower()
    return any(marker in reason for marker in TECHNICAL_FAILURE_MARKERS)


class QueryRewriter:
    """Produces alternative phrasings of a question that failed retrieval."""

    def __init__(self, llm: ChatCompletionClient, config: RAGConfig) -> None:
        self._llm = llm
        self._config = config

    def should_rewrite(
        self,
        previous_attempts: Sequence[str],
        failure_reason: Optional[str],
    ) -> bool:
        """Decline once the distinct-attempt cap is reached or on technical faults."""
        if count_distinct(previous_attempts) >= self._config.max_distinct_queries:
            return False
        return not is_technical_failure(failure_reason)

    async def rewrite(
        self,
        original_query: str,
        previous_attempts: Sequence[str],
        failure_reason: Optional[str],
    ) -> Optional[str]:
        """Return a new query, or ``None`` when rewriting should stop.

        Raises:
            LLMError, QATimeoutError: The rewrite call itself failed.
        """
        if not self.should_rewrite(previous_attempts, failure_reason):
            logger.warning(
                f"Query rewrite declined after {count_distinct(previous_attempts)} "
                f"distinct attempts (reason: {failure_reason})"
            )
            return None

        prompt = REWRITE_USER_PROMPT.format(
            failure_reason=failure_reason or "low relevance",
            original_query=original_query,
            previous_attempts="\n".join(f"- {q}" for q in previous_attempts),
        )
        completion = await self._llm.complete(
            REWRITE_SYSTEM_PROMPT,
            prompt,
            temperature=self._config.rewrite_temperature,
            max_tokens=self._config.rewrite_max_tokens,
            operation="query_rewrite",
            timeout=self._config.rewrite_timeout,
        )

        candidate = completion.text.strip().strip('"').strip()
        if not candidate:
            logger.warning("Query rewrite returned empty text")
            return None

        tried = {normalize_query(q) for q in previous_attempts}
        if normalize_query(candidate) in tried:
            logger.warning(f'Query rewrite repeated a previous attempt: "{candidate}"')
            return None

        return candidate
