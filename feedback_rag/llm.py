"""OpenAI chat completion service."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from openai import AsyncOpenAI, AsyncStream

from .config import config
from .errors import CompletionBackendUnavailable, sanitize_error_message
from .health import COMPLETION
from .retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from .health import CircuitBreaker

logger = config.get_logger(__name__)

ChatMessages = list[dict[str, str]]


class CompletionService:
    """Wraps the chat completions API with retries, timeouts and streaming."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
    ) -> None:
        default_headers = config.get_api_headers()
        self.client = AsyncOpenAI(
            api_key=api_key or config.get_openai_api_key(),
            base_url=config.OPENAI_BASE_URL,
            default_headers=default_headers or None,
        )
        self.model = model or config.CHAT_MODEL
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.timeout = (
            timeout if timeout is not None else config.COMPLETION_TIMEOUT_SECONDS
        )

    async def _create(self, **kwargs: Any) -> Any:
        async def request() -> Any:
            return await self.client.chat.completions.create(model=self.model, **kwargs)

        return await call_with_retry(
            request,
            dependency=COMPLETION,
            error_cls=CompletionBackendUnavailable,
            policy=self.retry_policy,
            timeout=self.timeout,
            breaker=self.breaker,
        )

    async def complete(
        self,
        messages: ChatMessages,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        """Generate a full response.

        Returns:
            The stripped response text; empty if the model returned nothing.
        """
        response = await self._create(
            messages=messages,
            max_tokens=max_tokens or config.CHAT_MAX_TOKENS,
            temperature=(
                temperature if temperature is not None else config.CHAT_TEMPERATURE
            ),
        )
        content = response.choices[0].message.content
        return content.strip() if content else ""

    async def stream(
        self,
        messages: ChatMessages,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        """Yield response tokens in generation order.

        Opening the stream is retried like any other call. A failure after
        the first token has been delivered is not retried, since the caller
        has already observed part of the answer.

        Raises:
            CompletionBackendUnavailable: If the stream breaks or stalls.
        """
        response = await self._create(
            messages=messages,
            max_tokens=max_tokens or config.CHAT_MAX_TOKENS,
            temperature=(
                temperature if temperature is not None else config.CHAT_TEMPERATURE
            ),
            stream=True,
        )

        iterator = response.__aiter__()
        try:
            while True:
                chunk = await asyncio.wait_for(_next_chunk(iterator), self.timeout)
                if chunk is None:
                    break
                if not chunk.choices:
                    continue
                token = chunk.choices[0].delta.content
                if token:
                    yield token
        except Exception as exc:
            if self.breaker is not None:
                self.breaker.record_failure(exc)
            detail = sanitize_error_message(str(exc) or type(exc).__name__)
            logger.exception("Completion stream interrupted")
            msg = f"completion stream interrupted: {detail}"
            raise CompletionBackendUnavailable(msg) from exc
        finally:
            if isinstance(response, AsyncStream):
                await response.close()

    async def ping(self) -> None:
        """Check that the configured model is reachable."""
        await self.client.models.retrieve(self.model)


async def _next_chunk(iterator: AsyncIterator[Any]) -> Any | None:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return None
