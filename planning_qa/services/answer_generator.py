"""Grounded answer generation over retrieved planning-document chunks."""

import logging
from typing import Sequence

from planning_qa.core.ai_constants import ANSWER_SYSTEM_PROMPT, ANSWER_USER_PROMPT
from planning_qa.core.config import RAGConfig
from planning_qa.core.exceptions import GenerationError, LLMError
from planning_qa.knowledge.models import ScoredCandidate
from planning_qa.services.openai_client import ChatCompletionClient, Completion

logger = logging.getLogger(__name__)

CONTEXT_SEPARATOR = "\n\n---\n\n"


def format_context(chunks: Sequence[ScoredCandidate]) -> str:
    """Number each chunk as ``[Source N]`` with its relevance or similarity."""
    sections: list[str] = []
    for i, candidate in enumerate(chunks, 1):
        if candidate.combined_score is not None:
            score_info = f"Relevance: {candidate.combined_score * 100:.1f}%"
        else:
            score_info = f"Similarity: {candidate.semantic_similarity * 100:.1f}%"
        chunk = candidate.chunk
        sections.append(
            f"[Source {i}] ({score_info})\n"
            f"{chunk.document_title} - Chunk {chunk.chunk_index}:\n"
            f"{chunk.chunk_text}"
        )
    return CONTEXT_SEPARATOR.join(sections)


class AnswerGenerator:
    """Asks the chat model to answer strictly from the supplied sources."""

    def __init__(self, llm: ChatCompletionClient, config: RAGConfig) -> None:
        self._llm = llm
        self._config = config

    async def generate(
        self,
        question: str,
        ranked_chunks: Sequence[ScoredCandidate],
        municipality_name: str,
    ) -> Completion:
        """Generate a cited answer.

        Args:
            question: The user's original question.
            ranked_chunks: Sources in rank order; ``[Source N]`` follows it.
            municipality_name: Name used in the system instruction.

        Returns:
            Completion with the answer text and tokens used.

        Raises:
            GenerationError: The model call failed or returned no text.
            QATimeoutError: The call exceeded the generation timeout.
        """
        system_prompt = ANSWER_SYSTEM_PROMPT.format(municipality_name=municipality_name)
        user_prompt = ANSWER_USER_PROMPT.format(
            context=format_context(ranked_chunks), question=question
        )

        try:
            completion = await self._llm.complete(
                system_prompt,
                user_prompt,
                model=self._config.model,
                temperature=self._config.temperature,
                max_tokens=self._config.max_tokens,
                top_p=self._config.top_p,
                operation="answer_generation",
                timeout=self._config.generation_timeout,
            )
        except LLMError as e:
            logger.error(f"Answer generation failed: {e}")
            raise GenerationError(f"Answer generation failed: {e}") from e

        if not completion.text:
            logger.error("Answer generation returned empty text")
            raise GenerationError("Answer generation returned empty text")

        return completion
