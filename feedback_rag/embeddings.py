"""OpenAI embeddings service."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from openai import AsyncOpenAI

from .config import config
from .errors import EmbeddingBackendUnavailable, InvalidRequestError
from .health import EMBEDDING
from .retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from .health import CircuitBreaker

logger = config.get_logger(__name__)


class EmbeddingService:
    """Handles OpenAI embeddings generation."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the EmbeddingService with OpenAI API key and model.

        Args:
            api_key: OpenAI API key. If None,
                reads from OPENAI_API_KEY environment variable.
            model: Embedding model name. If None, uses config.EMBEDDING_MODEL.
            breaker: Circuit breaker for the embedding backend.
            retry_policy: Retry settings. If None, uses the configured policy.
            timeout: Per-request timeout in seconds. If None, uses
                config.EMBEDDING_TIMEOUT_SECONDS.
        """
        api_key = api_key or config.get_openai_api_key()
        default_headers = config.get_api_headers()
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=config.OPENAI_BASE_URL,
            default_headers=default_headers or None,
        )
        self.model = model or config.EMBEDDING_MODEL
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.timeout = timeout if timeout is not None else config.EMBEDDING_TIMEOUT_SECONDS

    async def _create(self, payload: str | list[str]) -> list[np.ndarray]:
        async def request() -> list[np.ndarray]:
            response = await self.client.embeddings.create(
                model=self.model,
                input=payload,
            )
            return [np.asarray(data.embedding, dtype=np.float32) for data in response.data]

        return await call_with_retry(
            request,
            dependency=EMBEDDING,
            error_cls=EmbeddingBackendUnavailable,
            policy=self.retry_policy,
            timeout=self.timeout,
            breaker=self.breaker,
        )

    async def get_embedding(self, text: str) -> np.ndarray:
        """Get embedding for a single text.

        Args:
            text: The input text to generate an embedding for.

        Raises:
            InvalidRequestError: If the text is empty.

        Returns:
            np.ndarray: The embedding vector for the input text.
        """
        if not text or not text.strip():
            msg = "Cannot embed empty text"
            raise InvalidRequestError(msg)
        try:
            embeddings = await self._create(text)
        except EmbeddingBackendUnavailable:
            logger.exception("Error generating embedding")
            raise
        return embeddings[0]

    async def get_embeddings(self, texts: list[str]) -> list[np.ndarray]:
        """Embed several texts in a single request.

        Returns:
            list[np.ndarray]: One vector per input text, in input order.
        """
        if not texts:
            return []
        embeddings = await self._create(list(texts))
        if len(embeddings) != len(texts):
            msg = (
                f"Embedding backend returned {len(embeddings)} vectors "
                f"for {len(texts)} inputs"
            )
            raise EmbeddingBackendUnavailable(msg)
        return embeddings

    async def ping(self) -> None:
        """Issue a minimal embedding request, bypassing retries and the breaker."""
        await self.client.embeddings.create(model=self.model, input="health check")
