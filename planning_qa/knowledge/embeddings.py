"""Query embedding generation.

Uses OpenAI's text-embedding-3-small by default, matching the model the
document chunks were embedded with.
"""

import logging
import time
from typing import TYPE_CHECKING, Optional

import numpy as np
import openai
from openai import AsyncOpenAI

from planning_qa.core.config import RAGConfig
from planning_qa.core.exceptions import LLMError, from_openai_error, with_timeout
from planning_qa.observability import MetricsBackend, get_metrics_backend

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider:
    """Embeds query text with the OpenAI embeddings API."""

    def __init__(
        self,
        client: AsyncOpenAI,
        config: RAGConfig,
        metrics: Optional[MetricsBackend] = None,
    ) -> None:
        self._client = client
        self._config = config
        self._metrics = metrics or get_metrics_backend()

    @property
    def model(self) -> str:
        return self._config.embedding_model

    async def embed(self, text: str) -> "NDArray[np.float32]":
        """Generate the embedding for a single query.

        Args:
            text: Query text.

        Returns:
            NumPy array of shape (embedding_dim,).

        Raises:
            LLMError: If the provider rejects the request or returns nothing.
            QATimeoutError: If the call exceeds the embedding timeout.
        """
        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await with_timeout(
                self._client.embeddings.create(model=self.model, input=text),
                self._config.embedding_timeout,
                "embedding",
            )
            status_code = 200
        except openai.APIError as e:
            status_code = getattr(e, "status_code", None) or 500
            raise from_openai_error("embedding", e, self._config.embedding_timeout) from e
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self._metrics.observe_external_api("openai", "embeddings", status_code, duration_ms)
            logger.debug(
                "OpenAI API embeddings status=%s duration_ms=%.2f", status_code, duration_ms
            )

        if not response.data:
            raise LLMError("embedding", "empty embedding response")

        return np.array(response.data[0].embedding, dtype=np.float32)
