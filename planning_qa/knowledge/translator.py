"""Cross-language query translation.

Questions are translated into the municipality's corpus language so that
semantic matching compares like with like. Translation is best-effort: any
failure falls back to the original question.
"""

import asyncio
import logging
from typing import Any, Optional

from planning_qa.core.ai_constants import TRANSLATION_SYSTEM_PROMPT, TRANSLATION_USER_PROMPT
from planning_qa.core.config import RAGConfig
from planning_qa.core.exceptions import LLMError, PlanningQAError
from planning_qa.knowledge.languages import (
    LANGUAGE_NAMES,
    corpus_language_for,
    detect_language,
    language_name,
)
from planning_qa.knowledge.models import BatchTranslation, TranslationResult
from planning_qa.knowledge.store import ChunkStore
from planning_qa.services.openai_client import ChatCompletionClient
from planning_qa.services.retry import RetryPolicy

logger = logging.getLogger(__name__)


class QueryTranslator:
    """Detects question language and translates to the corpus language."""

    def __init__(
        self,
        llm: ChatCompletionClient,
        store: ChunkStore,
        config: RAGConfig,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._llm = llm
        self._store = store
        self._config = config
        self._retry_policy = retry_policy or RetryPolicy.from_config(config)

    async def resolve_document_language(self, municipality_id: int) -> str:
        """Corpus language for a municipality; the default if it is unknown."""
        municipality = await self._store.get_municipality(municipality_id)
        if municipality is None:
            return corpus_language_for(
                municipality_id,
                None,
                self._config.document_language_overrides,
                self._config.default_document_language,
            )
        return municipality.corpus_language

    async def translate(self, question: str, source_language: str, target_language: str) -> str:
        """Translate one question, keeping codes and references verbatim.

        Raises:
            LLMError, QATimeoutError: The translation call failed or the model
                returned no text.
        """
        target_name = language_name(target_language)
        prompt = TRANSLATION_USER_PROMPT.format(
            source_name=language_name(source_language),
            target_name=target_name,
            question=question,
        )
        completion = await self._llm.complete(
            TRANSLATION_SYSTEM_PROMPT,
            prompt,
            model=self._config.translation_model,
            temperature=self._config.translation_temperature,
            max_tokens=self._config.translation_max_tokens,
            operation="translation",
            timeout=self._config.translation_timeout,
        )
        translated = completion.text.strip()
        if not translated:
            raise LLMError("translation", "model returned an empty translation")
        return translated

    async def translate_if_needed(
        self,
        question: str,
        municipality_id: int,
        *,
        force: bool = False,
        verbose: bool = False,
        target_language: Optional[str] = None,
    ) -> TranslationResult:
        """Translate the question when its language differs from the corpus.

        Args:
            question: Original question.
            municipality_id: Municipality whose corpus will be searched.
            force: Translate even when the languages already match.
            verbose: Log progress at INFO instead of DEBUG.
            target_language: Corpus language if the caller already resolved it.

        Returns:
            TranslationResult. Never raises for a failed translation call;
            the original question is used instead.
        """
        log = logger.info if verbose else logger.debug

        source_language = detect_language(question)
        if target_language is None:
            target_language = await self.resolve_document_language(municipality_id)

        log(f"Language detection: {source_language} -> {target_language}")

        if source_language == target_language and not force:
            log(f"No translation needed (both {target_language})")
            return TranslationResult(
                translated_query=question,
                source_language=source_language,
                target_language=target_language,
                was_translated=False,
            )

        try:
            translated = await self.translate(question, source_language, target_language)
        except PlanningQAError as e:
            logger.warning(f"Translation failed, using original question: {e}")
            return TranslationResult(
                translated_query=question,
                source_language=source_language,
                target_language=target_language,
                was_translated=False,
            )

        log(f'Translated: "{question}" -> "{translated}"')
        return TranslationResult(
            translated_query=translated,
            source_language=source_language,
            target_language=target_language,
            was_translated=True,
        )

    async def translate_batch(
        self,
        questions: list[str],
        municipality_id: int,
    ) -> list[BatchTranslation]:
        """Translate many questions with bounded concurrency.

        Each worker paces itself between calls and retries transient faults
        according to the injected retry policy. Results keep input order;
        an item that keeps failing comes back untranslated.
        """
        if not questions:
            return []

        target_language = await self.resolve_document_language(municipality_id)
        semaphore = asyncio.Semaphore(self._config.batch_concurrency)
        pacing = self._config.batch_pacing_seconds

        async def worker(question: str) -> BatchTranslation:
            async with semaphore:
                try:
                    return await self._translate_item(question, target_language)
                finally:
                    if pacing > 0:
                        await asyncio.sleep(pacing)

        results = await asyncio.gather(*(worker(q) for q in questions))

        translated_count = sum(1 for r in results if r.was_translated)
        logger.info(
            f"Batch translation finished: {translated_count}/{len(results)} translated "
            f"to {target_language}"
        )
        return list(results)

    async def _translate_item(self, question: str, target_language: str) -> BatchTranslation:
        source_language = detect_language(question)
        if source_language == target_language:
            return BatchTranslation(
                original=question,
                translated=question,
                source_language=source_language,
                target_language=target_language,
            )

        try:
            translated = await self._retry_policy.run(
                lambda: self.translate(question, source_language, target_language)
            )
        except PlanningQAError as e:
            logger.warning(f'Batch translation gave up on "{question[:50]}": {e}')
            return BatchTranslation(
                original=question,
                translated=question,
                source_language=source_language,
                target_language=target_language,
            )

        return BatchTranslation(
            original=question,
            translated=translated,
            source_language=source_language,
            target_language=target_language,
            was_translated=True,
        )

    def get_language_config(self) -> dict[str, Any]:
        """Supported languages and translation settings."""
        return {
            "supported_languages": dict(LANGUAGE_NAMES),
            "default_document_language": self._config.default_document_language,
            "document_language_overrides": dict(self._config.document_language_overrides),
            "translation_enabled": self._config.use_query_translation,
            "translation_model": self._config.translation_model,
        }
