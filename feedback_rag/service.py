"""Transport-agnostic API surface of the feedback RAG core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .chat import ChatOrchestrator
from .config import config
from .context import ContextComposer
from .embeddings import EmbeddingService
from .health import (
    COMPLETION,
    EMBEDDING,
    SESSION_STORE,
    VECTOR_STORE,
    HealthMonitor,
)
from .llm import CompletionService
from .models import ChatRequest, SearchFilter
from .pipeline import IngestionPipeline
from .search import SimilaritySearchEngine
from .sessions import ConversationSessionManager, SessionStore
from .streaming import StreamHub
from .vector_store import get_vector_store

if TYPE_CHECKING:
    from .collaborators import FeedbackStore, OrganizationProfileStore
    from .models import ChatResponse, ChatSession, RetrievedPassage
    from .retry import RetryPolicy
    from .streaming import Subscription
    from .vector_store import BaseSQLiteStore

logger = config.get_logger(__name__)


def _as_filter(filters: SearchFilter | dict[str, Any] | None) -> SearchFilter | None:
    if filters is None or isinstance(filters, SearchFilter):
        return filters
    return SearchFilter.from_dict(filters)


class FeedbackRAGService:
    """Wires the RAG components together and exposes their operations.

    Any component can be injected; missing ones are built from ``config``
    and attached to the health monitor's circuit breakers.
    """

    def __init__(  # noqa: PLR0913
        self,
        feedback_store: FeedbackStore,
        profile_store: OrganizationProfileStore,
        *,
        embedding_service: EmbeddingService | None = None,
        completion_service: CompletionService | None = None,
        vector_store: BaseSQLiteStore | None = None,
        session_store: SessionStore | None = None,
        monitor: HealthMonitor | None = None,
        retry_policy: RetryPolicy | None = None,
        openai_api_key: str | None = None,
        top_k: int | None = None,
        mmr_lambda: float | None = None,
    ) -> None:
        self.monitor = monitor or HealthMonitor()
        self.embedding_service = embedding_service or EmbeddingService(
            api_key=openai_api_key,
            breaker=self.monitor.breaker(EMBEDDING),
            retry_policy=retry_policy,
        )
        self.completion_service = completion_service or CompletionService(
            api_key=openai_api_key,
            breaker=self.monitor.breaker(COMPLETION),
            retry_policy=retry_policy,
        )
        self.vector_store = vector_store or get_vector_store()
        self.session_manager = ConversationSessionManager(
            session_store or SessionStore(),
            breaker=self.monitor.breaker(SESSION_STORE),
            retry_policy=retry_policy,
        )
        self.search_engine = SimilaritySearchEngine(
            self.embedding_service,
            self.vector_store,
            breaker=self.monitor.breaker(VECTOR_STORE),
            retry_policy=retry_policy,
        )
        self.composer = ContextComposer(profile_store)
        self.hub = StreamHub()
        self.orchestrator = ChatOrchestrator(
            self.session_manager,
            self.search_engine,
            self.completion_service,
            self.composer,
            self.monitor,
            self.hub,
            top_k=top_k,
            mmr_lambda=mmr_lambda,
        )
        self.pipeline = IngestionPipeline(
            feedback_store,
            self.embedding_service,
            self.vector_store,
            breaker=self.monitor.breaker(VECTOR_STORE),
            retry_policy=retry_policy,
        )

        self.monitor.register_probe(EMBEDDING, self.embedding_service.ping)
        self.monitor.register_probe(COMPLETION, self.completion_service.ping)
        self.monitor.register_probe(VECTOR_STORE, self.vector_store.ping)
        self.monitor.register_probe(SESSION_STORE, self.session_manager.ping)
        logger.info(
            "Feedback RAG service ready (%s vector store)",
            getattr(self.vector_store, "backend", "custom"),
        )

    # Chat

    async def chat(  # noqa: PLR0913
        self,
        organization_id: str,
        user_id: str,
        message: str,
        session_id: str | None = None,
        filters: SearchFilter | dict[str, Any] | None = None,
        *,
        enable_streaming: bool = False,
        top_k: int | None = None,
    ) -> ChatResponse:
        request = ChatRequest(
            organization_id=organization_id,
            user_id=user_id,
            message=message,
            session_id=session_id,
            filters=_as_filter(filters),
            enable_streaming=enable_streaming,
            top_k=top_k,
        )
        return await self.orchestrator.chat(request)

    def cancel_turn(self, session_id: str) -> bool:
        return self.orchestrator.cancel_turn(session_id)

    def subscribe(self, session_id: str) -> Subscription:
        return self.hub.subscribe(session_id)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.hub.unsubscribe(subscription)

    # Sessions

    async def create_session(
        self,
        organization_id: str,
        user_id: str,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ChatSession:
        return await self.session_manager.create_session(
            organization_id, user_id, title, metadata
        )

    async def list_sessions(self, organization_id: str, user_id: str) -> list[ChatSession]:
        return await self.session_manager.list_sessions(organization_id, user_id)

    async def get_session(self, session_id: str, user_id: str) -> ChatSession:
        return await self.session_manager.get_session(session_id, user_id)

    async def delete_session(self, session_id: str, user_id: str) -> None:
        """Archive a session; its transcript is kept."""
        await self.session_manager.archive_session(session_id, user_id)

    def clear_cache(self, organization_id: str) -> None:
        self.session_manager.clear_cache(organization_id)

    # Embeddings

    async def ingest_embeddings(
        self, organization_id: str, source_item_ids: list[str]
    ) -> dict[str, Any]:
        return await self.pipeline.ingest_embeddings(organization_id, source_item_ids)

    async def remove_embeddings(
        self, organization_id: str, source_item_ids: list[str]
    ) -> int:
        return await self.pipeline.remove_embeddings(organization_id, source_item_ids)

    async def refresh_embeddings(
        self, organization_id: str, batch_size: int = 50
    ) -> dict[str, int]:
        return await self.pipeline.refresh_embeddings(organization_id, batch_size)

    async def embedding_stats(self, organization_id: str) -> dict[str, Any]:
        return await self.vector_store.stats(organization_id)

    # Search

    async def search(
        self,
        organization_id: str,
        query: str,
        k: int | None = None,
        filters: SearchFilter | dict[str, Any] | None = None,
    ) -> list[RetrievedPassage]:
        return await self.search_engine.search(
            organization_id, query, k, _as_filter(filters)
        )

    async def diversified_search(  # noqa: PLR0913
        self,
        organization_id: str,
        query: str,
        k: int | None = None,
        fetch_k: int | None = None,
        lambda_mult: float | None = None,
        filters: SearchFilter | dict[str, Any] | None = None,
    ) -> list[RetrievedPassage]:
        return await self.search_engine.diversified_search(
            organization_id, query, k, fetch_k, lambda_mult, _as_filter(filters)
        )

    # Health

    async def health(
        self, *, detailed: bool = False, force_refresh: bool = False
    ) -> dict[str, Any]:
        """Report system health.

        Returns:
            The full SystemHealth when ``detailed``, otherwise the
            availability summary.
        """
        if detailed:
            system_health = await self.monitor.get_system_health(
                force_refresh=force_refresh
            )
            return system_health.to_dict()
        if force_refresh:
            self.monitor.invalidate()
        availability = await self.monitor.get_availability_status()
        return availability.to_dict()
