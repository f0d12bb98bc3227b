"""Chat-completion client shared by translation, rewriting and answering."""

import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import openai
from openai import AsyncOpenAI

from planning_qa.core.config import RAGConfig, get_settings
from planning_qa.core.exceptions import from_openai_error, with_timeout
from planning_qa.observability import MetricsBackend, get_metrics_backend

logger = logging.getLogger(__name__)


@lru_cache
def get_openai_client() -> AsyncOpenAI:
    """Get the cached async OpenAI client."""
    settings = get_settings()
    return AsyncOpenAI(api_key=settings.openai_api_key)


@dataclass(frozen=True)
class Completion:
    """Text returned by the model plus token usage."""

    text: str
    tokens_used: int = 0


class ChatCompletionClient:
    """Thin wrapper over ``chat.completions.create``.

    Records external API metrics for every call and converts ``openai``
    exceptions into ``LLMError`` / ``QATimeoutError``.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        config: RAGConfig,
        metrics: Optional[MetricsBackend] = None,
    ) -> None:
        self._client = client
        self._config = config
        self._metrics = metrics or get_metrics_backend()

    async def complete(
        self,
        system_prompt: Optional[str],
        user_prompt: str,
        *,
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 800,
        top_p: Optional[float] = None,
        operation: str = "chat.completions",
        timeout: Optional[float] = None,
    ) -> Completion:
        """Run one chat completion.

        Args:
            system_prompt: Optional system message.
            user_prompt: User message.
            model: Model override (defaults to the configured chat model).
            temperature: Sampling temperature.
            max_tokens: Completion token cap.
            top_p: Nucleus sampling parameter.
            operation: Label used in metrics, logs and errors.
            timeout: Bound in seconds (defaults to the generation timeout).

        Returns:
            Completion with stripped text and total tokens used.

        Raises:
            LLMError: Provider rejected the request or was unreachable.
            QATimeoutError: The call exceeded its bound.
        """
        timeout = timeout if timeout is not None else self._config.generation_timeout

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        kwargs = {
            "model": model or self._config.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if top_p is not None:
            kwargs["top_p"] = top_p

        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await with_timeout(
                self._client.chat.completions.create(**kwargs), timeout, operation
            )
            status_code = 200
        except openai.APIError as e:
            status_code = getattr(e, "status_code", None) or 500
            raise from_openai_error(operation, e, timeout) from e
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self._metrics.observe_external_api("openai", operation, status_code, duration_ms)
            logger.info(
                "OpenAI API %s status=%s duration_ms=%.2f",
                operation,
                status_code,
                duration_ms,
            )

        content = response.choices[0].message.content if response.choices else None
        return Completion(
            text=(content or "").strip(),
            tokens_used=response.usage.total_tokens if response.usage else 0,
        )
