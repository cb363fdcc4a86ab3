"""Bounded retry with exponential backoff for backend calls.

Every call to the embedding backend, the completion backend and the vector
store goes through ``call_with_retry``. It applies a per-attempt timeout,
retries transient errors with capped exponential backoff, and reports the
final outcome to the dependency's circuit breaker.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .config import config
from .errors import (
    BackendUnavailableError,
    CircuitOpenError,
    FeedbackRAGError,
    is_retryable,
    sanitize_error_message,
)

if TYPE_CHECKING:
    from .health import CircuitBreaker

T = TypeVar("T")

logger = config.get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for one dependency.

    ``max_attempts`` counts the first call, so 3 means one call plus two
    retries. Delays double per attempt starting at ``base_delay`` and never
    exceed ``max_delay``; ``jitter`` adds up to that many seconds to each.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5

    @classmethod
    def from_config(cls) -> RetryPolicy:
        return cls(
            max_attempts=max(1, config.RETRY_MAX_ATTEMPTS),
            base_delay=config.RETRY_BASE_DELAY_SECONDS,
            max_delay=config.RETRY_MAX_DELAY_SECONDS,
        )

    def wait_strategy(self) -> wait_exponential_jitter:
        return wait_exponential_jitter(
            initial=self.base_delay, max=self.max_delay, jitter=self.jitter
        )


def _should_retry(error: BaseException) -> bool:
    return isinstance(error, Exception) and is_retryable(error)


def _passes_through(error: Exception) -> bool:
    """Domain errors and open circuits are the caller's to handle, not retried."""
    if isinstance(error, CircuitOpenError):
        return True
    return isinstance(error, FeedbackRAGError) and not isinstance(
        error, BackendUnavailableError
    )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    dependency: str,
    error_cls: type[BackendUnavailableError] = BackendUnavailableError,
    policy: RetryPolicy | None = None,
    timeout: float | None = None,
    breaker: CircuitBreaker | None = None,
) -> T:
    """Run ``operation`` with timeout, retries and circuit-breaker accounting.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        dependency: Name of the dependency, used in logs and errors.
        error_cls: Error raised once retries are exhausted.
        policy: Retry settings. Defaults to the configured policy.
        timeout: Per-attempt timeout in seconds, or None for no timeout.
        breaker: Circuit breaker guarding the dependency.

    Raises:
        CircuitOpenError: If the breaker is open.
        FeedbackRAGError: Validation and session errors propagate unchanged.
        BackendUnavailableError: ``error_cls`` after the final failed attempt.

    Returns:
        The operation's result.
    """
    policy = policy or RetryPolicy.from_config()
    if breaker is not None:
        breaker.before_call()

    async def attempt() -> T:
        if timeout is not None:
            return await asyncio.wait_for(operation(), timeout=timeout)
        return await operation()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait_strategy(),
        retry=retry_if_exception(_should_retry),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    try:
        result = await retrying(attempt)
    except Exception as exc:
        if _passes_through(exc):
            raise
        attempts = retrying.statistics.get("attempt_number", 1)
        if breaker is not None:
            breaker.record_failure(exc)
        detail = sanitize_error_message(str(exc) or type(exc).__name__)
        if not is_retryable(exc):
            logger.error("Non-retryable %s error: %s", dependency, detail)
        logger.error(
            "All %d %s attempts failed. Last error: %s", attempts, dependency, detail
        )
        msg = f"{dependency} backend unavailable: {detail}"
        raise error_cls(
            msg,
            details={"dependency": dependency, "attempts": attempts},
        ) from exc

    attempts = retrying.statistics.get("attempt_number", 1)
    if attempts > 1:
        logger.info("%s succeeded on retry attempt %d", dependency, attempts - 1)
    if breaker is not None:
        breaker.record_success()
    return result
