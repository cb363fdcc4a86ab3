"""Error taxonomy for the feedback RAG core.

Every error raised across a component boundary derives from
``FeedbackRAGError`` and carries a stable ``code`` so transport layers can map
it to a response without string matching.
"""

from __future__ import annotations

import asyncio
import re
import sqlite3
from typing import Any

import openai


class FeedbackRAGError(Exception):
    """Base exception for feedback RAG errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for a transport layer.

        Returns:
            Mapping with ``code``, ``message`` and ``details``.
        """
        return {"code": self.code, "message": self.message, "details": self.details}


# Validation errors: rejected immediately, never retried.


class ValidationError(FeedbackRAGError):
    """Request rejected before any backend call."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidRequestError(ValidationError):
    code = "INVALID_REQUEST"


class InvalidFilterError(ValidationError):
    code = "INVALID_FILTER"


class InvalidMetadataError(ValidationError):
    code = "INVALID_METADATA"


class InvalidVectorDimension(ValidationError):
    """Vector length does not match the store's configured dimensionality."""

    code = "INVALID_VECTOR_DIMENSION"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Vector dimension {actual} does not match configured dimension {expected}",
            details={"expected": expected, "actual": actual},
        )


# Transient backend errors: surfaced after retries are exhausted.


class BackendUnavailableError(FeedbackRAGError):
    code = "BACKEND_UNAVAILABLE"
    status_code = 503
    dependency = "backend"


class EmbeddingBackendUnavailable(BackendUnavailableError):
    code = "EMBEDDING_BACKEND_UNAVAILABLE"
    dependency = "embedding"


class CompletionBackendUnavailable(BackendUnavailableError):
    code = "COMPLETION_BACKEND_UNAVAILABLE"
    dependency = "completion"


class VectorStoreUnavailable(BackendUnavailableError):
    code = "VECTOR_STORE_UNAVAILABLE"
    dependency = "vector_store"


class SessionStoreUnavailable(BackendUnavailableError):
    code = "SESSION_STORE_UNAVAILABLE"
    dependency = "session_store"


class CircuitOpenError(BackendUnavailableError):
    """A circuit breaker short-circuited the call."""

    code = "CIRCUIT_OPEN"

    def __init__(self, dependency: str) -> None:
        self.dependency = dependency
        super().__init__(
            f"Circuit breaker for '{dependency}' is open - "
            "service temporarily unavailable",
            details={"dependency": dependency},
        )


# Session errors. Not-found and access-denied present the same message so a
# caller cannot probe for another user's sessions.

SESSION_UNAVAILABLE_MESSAGE = "Chat session not found or access denied"


class SessionNotFoundError(FeedbackRAGError):
    code = "SESSION_NOT_FOUND"
    status_code = 404

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(SESSION_UNAVAILABLE_MESSAGE)


class AccessDeniedError(FeedbackRAGError):
    code = "ACCESS_DENIED"
    status_code = 403

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(SESSION_UNAVAILABLE_MESSAGE)


class SessionArchivedError(FeedbackRAGError):
    code = "SESSION_ARCHIVED"
    status_code = 409

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(
            f"Chat session '{session_id}' is archived and cannot accept new messages",
            details={"session_id": session_id},
        )


_RETRYABLE_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504}


def is_retryable(error: BaseException) -> bool:
    """Decide whether an error is worth another attempt.

    Rate limits, server errors, timeouts and connection problems are
    retryable; authentication failures, bad requests and validation errors
    are not.

    Returns:
        True if the operation should be retried.
    """
    if isinstance(error, CircuitOpenError | ValidationError):
        return False
    if isinstance(error, FeedbackRAGError):
        return isinstance(error, BackendUnavailableError)
    if isinstance(error, TimeoutError | asyncio.TimeoutError | ConnectionError):
        return True
    if isinstance(error, sqlite3.OperationalError):
        return True
    if isinstance(error, openai.APITimeoutError | openai.APIConnectionError):
        return True
    if isinstance(error, openai.APIStatusError):
        return error.status_code in _RETRYABLE_STATUS_CODES
    if isinstance(error, openai.OpenAIError):
        return False

    error_str = str(error).lower()
    if "rate" in error_str and "limit" in error_str:
        return True
    return any(marker in error_str for marker in ("timeout", "connection", "503"))


_SECRET_PATTERNS = (
    (re.compile(r"sk-[a-zA-Z0-9_-]+"), "API_KEY_REDACTED"),
    (
        re.compile(r"api[_-]?key[\"']?\s*[:=]\s*[\"']?[a-zA-Z0-9_-]+", re.IGNORECASE),
        "API_KEY_REDACTED",
    ),
    (re.compile(r"bearer\s+[a-zA-Z0-9._-]+", re.IGNORECASE), "TOKEN_REDACTED"),
)


def sanitize_error_message(message: str) -> str:
    """Remove credentials from an error message before it is logged or stored.

    Returns:
        The message with API keys and bearer tokens redacted.
    """
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message
