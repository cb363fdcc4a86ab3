"""Feedback RAG v1.0 - Retrieval-augmented chat over customer feedback."""

from .chat import ChatOrchestrator, RetrievalChain
from .collaborators import InMemoryFeedbackStore, InMemoryProfileStore
from .context import ContextComposer
from .embeddings import EmbeddingService
from .errors import FeedbackRAGError
from .health import CircuitBreaker, HealthMonitor, HealthStatus
from .llm import CompletionService
from .models import (
    ChatRequest,
    ChatResponse,
    ChatSession,
    FeedbackItem,
    OrganizationProfile,
    RetrievedPassage,
    SearchFilter,
)
from .pipeline import IngestionPipeline
from .search import SimilaritySearchEngine
from .service import FeedbackRAGService
from .sessions import ConversationSessionManager, SessionStore
from .streaming import StreamHub
from .vector_store import FaissVectorStore, SQLiteVectorStore, get_vector_store

__all__ = [
    "ChatOrchestrator",
    "ChatRequest",
    "ChatResponse",
    "ChatSession",
    "CircuitBreaker",
    "CompletionService",
    "ContextComposer",
    "ConversationSessionManager",
    "EmbeddingService",
    "FaissVectorStore",
    "FeedbackItem",
    "FeedbackRAGError",
    "FeedbackRAGService",
    "HealthMonitor",
    "HealthStatus",
    "InMemoryFeedbackStore",
    "InMemoryProfileStore",
    "IngestionPipeline",
    "OrganizationProfile",
    "RetrievalChain",
    "RetrievedPassage",
    "SQLiteVectorStore",
    "SearchFilter",
    "SessionStore",
    "SimilaritySearchEngine",
    "StreamHub",
    "get_vector_store",
]
