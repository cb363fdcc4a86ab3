"""Test configuration and fixtures for feedback RAG tests.

This module provides reusable test fixtures organized by functionality:
- Constants and test data
- Mock embedding and completion services
- OpenAI API response helpers
- Vector store and session store fixtures
- Collaborator fixtures (feedback and profile stores)
- A fully wired service for integration tests
"""

import asyncio
import re
from unittest.mock import AsyncMock, Mock, patch

import numpy as np
import pytest

from feedback_rag import (
    ConversationSessionManager,
    EmbeddingService,
    FeedbackItem,
    FeedbackRAGService,
    HealthMonitor,
    InMemoryFeedbackStore,
    InMemoryProfileStore,
    OrganizationProfile,
    SessionStore,
    get_vector_store,
)
from feedback_rag.errors import (
    CompletionBackendUnavailable,
    EmbeddingBackendUnavailable,
    InvalidRequestError,
)
from feedback_rag.models import CustomerSegment
from feedback_rag.retry import RetryPolicy


class TestConstants:
    """Centralized test constants to avoid repetition across test files.

    All test constants are defined here to maintain consistency across
    the test suite and make it easy to update values globally.
    """

    # API Configuration
    TEST_API_KEY = "test-key"
    TEST_OPENAI_MODEL = "text-embedding-3-small"
    MOCK_EMBEDDING_MODEL = "mock-embedding"
    EMBEDDING_DIMENSION = 128

    # Tenancy
    ORG_ID = "org-acme"
    OTHER_ORG_ID = "org-globex"
    USER_ID = "user-alice"
    OTHER_USER_ID = "user-bob"

    # Chat
    DEFAULT_REPLY = (
        "Most complaints are about mobile login failures. "
        "You should fix the login button on mobile first. "
        "Consider adding CSV export for smaller customers."
    )


SAMPLE_FEEDBACK = [
    FeedbackItem(
        id="F1",
        title="Login button broken on mobile",
        description="Login broken on mobile.",
        category="bug",
        sentiment="negative",
        metadata={"customer_segment": "enterprise", "created_at": "2024-03-01T10:00:00"},
    ),
    FeedbackItem(
        id="F2",
        title="CSV export please",
        description="Add CSV export for monthly reports.",
        category="feature_request",
        sentiment="neutral",
        metadata={"customer_segment": "smb", "created_at": "2024-03-05T09:30:00"},
    ),
    FeedbackItem(
        id="F3",
        title="Dashboard loads slowly",
        description="Dashboard takes ages to load every morning.",
        category="performance",
        sentiment="negative",
        metadata={"customer_segment": "enterprise", "created_at": "2024-02-10T08:00:00"},
    ),
    FeedbackItem(
        id="F4",
        title="Love the new reports",
        description="Reports look great and are easy to share.",
        category="praise",
        sentiment="positive",
        metadata={"customer_segment": "smb", "created_at": "2024-03-10T16:45:00"},
    ),
    FeedbackItem(
        id="F5",
        title="Mobile app crashes during login",
        description="App crashes right after login on mobile.",
        category="bug",
        sentiment="negative",
        metadata={"customer_segment": "smb", "created_at": "2024-03-12T12:00:00"},
    ),
]

_STOPWORDS = {
    "a",
    "after",
    "an",
    "and",
    "are",
    "for",
    "in",
    "is",
    "of",
    "on",
    "please",
    "right",
    "the",
    "to",
    "what",
}
_WORD_RE = re.compile(r"[a-z0-9]+")


class MockEmbeddingService:
    """Mock embedding service for testing without API calls.

    Produces L2-normalized bag-of-words vectors: each distinct non-stopword
    gets its own dimension, so cosine similarity tracks word overlap and
    results are deterministic within a test.
    """

    def __init__(
        self,
        dimension: int = TestConstants.EMBEDDING_DIMENSION,
        model: str = TestConstants.MOCK_EMBEDDING_MODEL,
    ) -> None:
        self.dimension = dimension
        self.model = model
        self.vocabulary: dict[str, int] = {}
        self.poison_words: set[str] = set()
        self.fail = False
        self.batch_calls = 0

    def embed(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype=np.float32)
        words = {w for w in _WORD_RE.findall(text.lower()) if w not in _STOPWORDS}
        if not words:
            vector[0] = 1.0
            return vector
        for word in words:
            # dimension 0 is reserved for texts without content words
            index = self.vocabulary.setdefault(word, len(self.vocabulary) + 1)
            vector[index % self.dimension or 1] += 1.0
        return vector / np.linalg.norm(vector)

    def _check(self, text: str) -> None:
        if self.fail:
            msg = "embedding backend unavailable: request timed out"
            raise EmbeddingBackendUnavailable(msg)
        if any(word in text.lower() for word in self.poison_words):
            msg = "embedding backend unavailable: input rejected"
            raise EmbeddingBackendUnavailable(msg)

    async def get_embedding(self, text: str) -> np.ndarray:
        if not text or not text.strip():
            msg = "Cannot embed empty text"
            raise InvalidRequestError(msg)
        self._check(text)
        return self.embed(text)

    async def get_embeddings(self, texts: list[str]) -> list[np.ndarray]:
        self.batch_calls += 1
        for text in texts:
            self._check(text)
        return [self.embed(text) for text in texts]

    async def ping(self) -> None:
        self._check("")


class MockCompletionService:
    """Scripted completion backend.

    ``complete`` returns ``reply`` for answers and ``rewrite_reply`` for
    standalone-query rewrites; ``stream`` yields ``reply`` word by word.
    Setting ``fail`` makes every call raise.
    """

    def __init__(
        self,
        reply: str = TestConstants.DEFAULT_REPLY,
        *,
        rewrite_reply: str = "",
        token_delay: float = 0.0,
    ) -> None:
        self.reply = reply
        self.rewrite_reply = rewrite_reply
        self.token_delay = token_delay
        self.fail = False
        self.fail_rewrite = False
        self.calls: list[list[dict[str, str]]] = []
        self.rewrite_calls: list[str] = []

    def _raise_if_failing(self) -> None:
        if self.fail:
            msg = "completion backend unavailable: request timed out"
            raise CompletionBackendUnavailable(msg)

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        if "Standalone Question:" in messages[-1]["content"]:
            self.rewrite_calls.append(messages[-1]["content"])
            if self.fail_rewrite:
                msg = "completion backend unavailable: rewrite failed"
                raise CompletionBackendUnavailable(msg)
            return self.rewrite_reply
        self.calls.append(messages)
        self._raise_if_failing()
        return self.reply

    async def stream(
        self,
        messages: list[dict[str, str]],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ):
        self.calls.append(messages)
        self._raise_if_failing()
        for token in re.findall(r"\S+\s*", self.reply):
            await asyncio.sleep(self.token_delay)
            yield token

    async def ping(self) -> None:
        self._raise_if_failing()


class FakeClock:
    """Manually advanced monotonic clock for breaker and cache tests."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def create_mock_openai_response(embeddings: list[list[float]]) -> Mock:
    """Create a mock OpenAI embeddings API response.

    Args:
        embeddings: List of embedding vectors to return.

    Returns:
        Mock object representing OpenAI embeddings API response.
    """
    mock_response = Mock()
    mock_response.data = [Mock(embedding=emb) for emb in embeddings]
    return mock_response


def create_mock_chat_response(content: str | None) -> Mock:
    """Create a mock OpenAI chat completion response.

    Args:
        content: The content for the chat completion response.

    Returns:
        Mock object representing OpenAI chat completion response.
    """
    mock_response = Mock()
    mock_response.choices = [Mock(message=Mock(content=content))]
    return mock_response


def create_mock_stream(tokens: list[str | None]):
    """Create an async iterator of chat completion chunks."""

    async def _stream():
        for token in tokens:
            yield Mock(choices=[Mock(delta=Mock(content=token))])

    return _stream()


@pytest.fixture
def openai_embeddings_api_mock():
    """Patch ``AsyncEmbeddings.create`` so no request leaves the process."""
    with patch(
        "openai.resources.embeddings.AsyncEmbeddings.create", new_callable=AsyncMock
    ) as mock_create:
        yield mock_create


@pytest.fixture
def openai_completions_api_mock():
    """Patch ``AsyncCompletions.create`` for chat completion tests."""
    with patch(
        "openai.resources.chat.completions.AsyncCompletions.create",
        new_callable=AsyncMock,
    ) as mock_create:
        yield mock_create


@pytest.fixture
def no_delay_policy():
    """Retry policy without backoff so failure tests run instantly."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0)


@pytest.fixture
def embedding_service_factory(no_delay_policy):
    """Factory for creating EmbeddingService instances with different configurations."""

    def _create_service(api_key=None, model=None, **kwargs):  # noqa: ANN202
        kwargs.setdefault("retry_policy", no_delay_policy)
        return EmbeddingService(
            api_key=api_key or TestConstants.TEST_API_KEY,
            model=model or TestConstants.TEST_OPENAI_MODEL,
            **kwargs,
        )

    return _create_service


@pytest.fixture
def mock_embedding_service():
    """Fresh bag-of-words embedding service with its own vocabulary."""
    return MockEmbeddingService()


@pytest.fixture
def mock_completion_service():
    return MockCompletionService()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def vector_store_factory(tmp_path):
    """Factory for temporary embedding stores of either backend."""

    def _create_store(
        backend: str = "sqlite",
        *,
        distance_strategy: str = "cosine",
        name: str = "embeddings.db",
    ):
        return get_vector_store(
            backend,
            db_path=tmp_path / name,
            index_dir=tmp_path / f"faiss_{name}",
            dimension=TestConstants.EMBEDDING_DIMENSION,
            distance_strategy=distance_strategy,
        )

    return _create_store


@pytest.fixture(params=["sqlite", "faiss"])
def vector_store(request, vector_store_factory):
    """Embedding store parametrized over both backends."""
    return vector_store_factory(request.param)


@pytest.fixture
def sqlite_store(vector_store_factory):
    return vector_store_factory("sqlite")


@pytest.fixture
def session_store(tmp_path) -> SessionStore:
    return SessionStore(tmp_path / "sessions.db")


@pytest.fixture
def session_manager(session_store) -> ConversationSessionManager:
    return ConversationSessionManager(session_store, memory_window=3)


@pytest.fixture
def feedback_store() -> InMemoryFeedbackStore:
    store = InMemoryFeedbackStore()
    for item in SAMPLE_FEEDBACK:
        store.add(TestConstants.ORG_ID, item)
    return store


@pytest.fixture
def sample_profile() -> OrganizationProfile:
    return OrganizationProfile(
        industry="SaaS",
        product_type="project management platform",
        company_size="Mid-market",
        target_market="Remote teams",
        customer_segments=[
            CustomerSegment(
                name="Enterprise",
                characteristics=["SSO", "audit logs"],
                value="High",
            ),
            CustomerSegment(name="SMB", characteristics=["self-serve"], value="Medium"),
        ],
        business_goals=["Reduce churn", "Grow enterprise revenue"],
        current_challenges=["Mobile stability"],
        product_features=["Dashboards", "Reports", "Mobile app"],
    )


@pytest.fixture
def profile_store(sample_profile) -> InMemoryProfileStore:
    store = InMemoryProfileStore()
    store.put(TestConstants.ORG_ID, sample_profile)
    return store


@pytest.fixture
def health_monitor(fake_clock) -> HealthMonitor:
    return HealthMonitor(cache_ttl=30, probe_timeout=1, clock=fake_clock)


@pytest.fixture
def rag_service(  # noqa: PLR0913
    feedback_store,
    profile_store,
    mock_embedding_service,
    mock_completion_service,
    sqlite_store,
    session_store,
    health_monitor,
    no_delay_policy,
) -> FeedbackRAGService:
    """Fully wired service backed by mocks and temporary SQLite files."""
    return FeedbackRAGService(
        feedback_store,
        profile_store,
        embedding_service=mock_embedding_service,
        completion_service=mock_completion_service,
        vector_store=sqlite_store,
        session_store=session_store,
        monitor=health_monitor,
        retry_policy=no_delay_policy,
    )


@pytest.fixture
async def indexed_service(rag_service) -> FeedbackRAGService:
    """Service with every sample feedback item already embedded."""
    result = await rag_service.ingest_embeddings(
        TestConstants.ORG_ID, [item.id for item in SAMPLE_FEEDBACK]
    )
    assert result == {"indexed": len(SAMPLE_FEEDBACK), "failed": []}
    return rag_service
