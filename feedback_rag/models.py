"""Data models for the feedback RAG core."""

from __future__ import annotations

import datetime
import json
import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal

import numpy as np

from .errors import InvalidFilterError, InvalidMetadataError

MessageRole = Literal["user", "assistant"]

# Reserved metadata keys carry meaning for filtering and display; everything
# else is an open attribute bag.
RESERVED_METADATA_KEYS = {
    "title": str,
    "category": str,
    "sentiment": str,
    "customer_segment": str,
    "created_at": str,
}


def utc_now() -> datetime.datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.datetime.now(tz=datetime.UTC)


def to_utc_iso(value: datetime.datetime | datetime.date | str) -> str:
    """Normalize a timestamp to a sortable ISO-8601 UTC string.

    Naive datetimes are treated as UTC; bare dates map to midnight.

    Returns:
        ISO string with microsecond precision and ``+00:00`` offset.
    """
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value)
    if not isinstance(value, datetime.datetime):
        value = datetime.datetime.combine(value, datetime.time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    return to_utc_iso(utc_now())


def estimate_tokens(text: str) -> int:
    """Approximate token count (roughly four characters per token)."""
    return math.ceil(len(text) / 4)


def validate_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Validate an open metadata map at the component boundary.

    Keys must be strings, values JSON-serializable, and reserved keys must
    hold strings (or ``None``).

    Raises:
        InvalidMetadataError: If the map violates any of the rules above.

    Returns:
        A shallow copy of the validated metadata.
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        msg = "Metadata must be a mapping of string keys to JSON values"
        raise InvalidMetadataError(msg)

    for key, value in metadata.items():
        if not isinstance(key, str):
            msg = f"Metadata key {key!r} is not a string"
            raise InvalidMetadataError(msg)
        expected = RESERVED_METADATA_KEYS.get(key)
        if expected is not None and value is not None and not isinstance(value, expected):
            msg = f"Reserved metadata key '{key}' must be a string"
            raise InvalidMetadataError(msg, details={"key": key})

    try:
        json.dumps(metadata)
    except (TypeError, ValueError) as exc:
        msg = "Metadata values must be JSON-serializable"
        raise InvalidMetadataError(msg) from exc

    if metadata.get("created_at"):
        try:
            to_utc_iso(metadata["created_at"])
        except ValueError as exc:
            msg = "Reserved metadata key 'created_at' must be an ISO-8601 timestamp"
            raise InvalidMetadataError(msg, details={"key": "created_at"}) from exc

    return dict(metadata)


@dataclass
class EmbeddingRecord:
    """One indexed unit of feedback content."""

    id: int
    organization_id: str
    source_item_id: str
    text: str
    vector: np.ndarray = field(repr=False)
    token_count: int
    model: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class SearchFilter:
    """Conjunctive predicate set applied to nearest-neighbor queries.

    Absent fields impose no constraint. Date bounds are inclusive and apply to
    the ``created_at`` metadata key of the feedback item.
    """

    categories: list[str] | None = None
    sentiments: list[str] | None = None
    customer_segments: list[str] | None = None
    date_from: datetime.datetime | None = None
    date_to: datetime.datetime | None = None
    min_similarity: float | None = None

    def __post_init__(self) -> None:
        for name in ("categories", "sentiments", "customer_segments"):
            values = getattr(self, name)
            if values is None:
                continue
            if isinstance(values, str) or not all(isinstance(v, str) for v in values):
                msg = f"Filter field '{name}' must be a list of strings"
                raise InvalidFilterError(msg, details={"field": name})
            setattr(self, name, list(values))

        if self.min_similarity is not None and not 0.0 <= self.min_similarity <= 1.0:
            msg = "min_similarity must be within [0, 1]"
            raise InvalidFilterError(msg, details={"field": "min_similarity"})

        if (
            self.date_from is not None
            and self.date_to is not None
            and to_utc_iso(self.date_from) > to_utc_iso(self.date_to)
        ):
            msg = "date_from must not be later than date_to"
            raise InvalidFilterError(msg, details={"field": "date_from"})

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SearchFilter:
        """Build a filter from a loosely typed request payload.

        Date-only upper bounds cover the whole day.

        Raises:
            InvalidFilterError: If a field is unknown or malformed.

        Returns:
            A validated SearchFilter.
        """
        if not data:
            return cls()
        if not isinstance(data, dict):
            msg = "Filters must be an object"
            raise InvalidFilterError(msg)

        aliases = {
            "categories": "categories",
            "sentiments": "sentiments",
            "customer_segments": "customer_segments",
            "customerSegments": "customer_segments",
            "date_from": "date_from",
            "dateFrom": "date_from",
            "date_to": "date_to",
            "dateTo": "date_to",
            "min_similarity": "min_similarity",
            "minSimilarity": "min_similarity",
        }
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in aliases:
                msg = f"Unknown filter field: {key}"
                raise InvalidFilterError(msg, details={"field": key})
            kwargs[aliases[key]] = value

        for name, end_of_day in (("date_from", False), ("date_to", True)):
            if kwargs.get(name) is not None:
                kwargs[name] = cls._parse_date(kwargs[name], end_of_day=end_of_day)

        if kwargs.get("min_similarity") is not None:
            try:
                kwargs["min_similarity"] = float(kwargs["min_similarity"])
            except (TypeError, ValueError) as exc:
                msg = "min_similarity must be a number"
                raise InvalidFilterError(msg) from exc

        return cls(**kwargs)

    @staticmethod
    def _parse_date(value: Any, *, end_of_day: bool) -> datetime.datetime:
        if isinstance(value, datetime.datetime):
            return value
        if isinstance(value, datetime.date):
            bound = datetime.time.max if end_of_day else datetime.time.min
            return datetime.datetime.combine(value, bound, tzinfo=datetime.UTC)
        if isinstance(value, str):
            try:
                if len(value) == 10:  # noqa: PLR2004
                    day = datetime.date.fromisoformat(value)
                    bound = datetime.time.max if end_of_day else datetime.time.min
                    return datetime.datetime.combine(day, bound, tzinfo=datetime.UTC)
                return datetime.datetime.fromisoformat(value)
            except ValueError as exc:
                msg = f"Invalid date in filter: {value!r}"
                raise InvalidFilterError(msg) from exc
        msg = f"Invalid date in filter: {value!r}"
        raise InvalidFilterError(msg)

    def is_empty(self) -> bool:
        """Return True when no field constrains results."""
        return all(value is None for value in asdict(self).values())


@dataclass
class RetrievedPassage:
    """A ranked search hit."""

    source_item_id: str
    text: str
    metadata: dict[str, Any]
    similarity_score: float
    embedding: np.ndarray | None = field(default=None, repr=False, compare=False)

    @property
    def title(self) -> str:
        return self.metadata.get("title") or "Untitled"


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    ARCHIVED = "archived"


@dataclass
class ChatMessage:
    """A single message in a chat transcript."""

    role: MessageRole
    content: str
    timestamp: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.metadata.get("degraded"))

    @property
    def incomplete(self) -> bool:
        return bool(self.metadata.get("incomplete"))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            timestamp=data["timestamp"],
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ChatSession:
    """An ongoing conversation owned by one user in one organization."""

    id: str
    organization_id: str
    user_id: str
    title: str
    messages: list[ChatMessage] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    state: SessionState = SessionState.ACTIVE
    last_message_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["is_active"] = self.is_active
        return data


@dataclass
class ConversationTurn:
    """Represents a single turn in the conversation."""

    user_message: str
    assistant_message: str
    timestamp: str


@dataclass
class FeedbackItem:
    """Feedback content supplied by the feedback store."""

    id: str
    title: str
    description: str
    category: str | None = None
    sentiment: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def embedding_text(self) -> str:
        return f"{self.title}\n\n{self.description}"

    def embedding_metadata(self) -> dict[str, Any]:
        metadata = dict(self.metadata)
        metadata["title"] = self.title
        if self.category is not None:
            metadata["category"] = self.category
        if self.sentiment is not None:
            metadata["sentiment"] = self.sentiment
        return metadata


@dataclass
class CustomerSegment:
    name: str
    characteristics: list[str] = field(default_factory=list)
    value: str = "SMB"


@dataclass
class OrganizationProfile:
    """Organization-level configuration used to compose the prompt context."""

    industry: str = "Other"
    product_type: str = ""
    company_size: str = "SMB"
    target_market: str = ""
    customer_segments: list[CustomerSegment] = field(default_factory=list)
    business_goals: list[str] = field(default_factory=list)
    current_challenges: list[str] = field(default_factory=list)
    product_features: list[str] = field(default_factory=list)
    category_mapping: dict[str, list[str]] | None = None
    priority_keywords: list[str] | None = None
    customer_value_words: list[str] | None = None


@dataclass
class ChatRequest:
    organization_id: str
    user_id: str
    message: str
    session_id: str | None = None
    filters: SearchFilter | None = None
    enable_streaming: bool = False
    top_k: int | None = None


@dataclass
class Source:
    """A cited passage in a chat response."""

    source_item_id: str
    title: str
    similarity: float
    excerpt: str


@dataclass
class ChatResponse:
    """Structured result of one chat turn."""

    message: str
    confidence: float
    sources: list[Source] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    follow_up_questions: list[str] = field(default_factory=list)
    processing_time_ms: int = 0
    session_id: str | None = None
    turn_id: str | None = None
    degraded: bool = False
    incomplete: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
