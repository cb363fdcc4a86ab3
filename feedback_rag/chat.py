"""Chat orchestration: retrieval, prompt assembly, generation and persistence."""

from __future__ import annotations

import asyncio
import re
import time
import uuid
from contextlib import aclosing
from typing import TYPE_CHECKING, Any

import numpy as np

from .config import config
from .errors import (
    AccessDeniedError,
    BackendUnavailableError,
    FeedbackRAGError,
    InvalidRequestError,
    SessionArchivedError,
)
from .health import COMPONENTS, SESSION_STORE
from .models import ChatResponse, Source
from .streaming import (
    TokenReceived,
    TurnCancelled,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .context import ContextComposer
    from .health import HealthMonitor
    from .llm import CompletionService
    from .models import ChatRequest, ChatSession, RetrievedPassage, SearchFilter
    from .search import SimilaritySearchEngine
    from .sessions import ConversationMemory, ConversationSessionManager
    from .streaming import StreamHub

logger = config.get_logger(__name__)

EXCERPT_LENGTH = 200
MAX_SUGGESTIONS = 3
MAX_FOLLOW_UPS = 2
REWRITE_HISTORY_TURNS = 3
DEGRADED_CONFIDENCE = 0.1
NO_CONTEXT_CONFIDENCE = 0.2

DEGRADED_MESSAGE = (
    "I'm sorry, I wasn't able to analyze your feedback data just now. "
    "Please try again in a moment."
)
DEGRADED_SUGGESTIONS = [
    "Try rephrasing your question",
    "Check the service status if the problem persists",
]
DEGRADED_FOLLOW_UPS = ["What specific feedback data would you like to explore?"]
FOLLOW_UP_TEMPLATES = [
    "What specific time period would you like to focus on?",
    "Which customer segment should we analyze further?",
    "Would you like to see the underlying feedback items?",
]
EMPTY_ANSWER = "I apologize, but I couldn't generate a response."

QA_INSTRUCTIONS = (
    "Answer the user's question using the customer feedback provided below.\n\n"
    "Use the following guidelines:\n"
    "1. Base your answer on the feedback context; if it does not cover the "
    "question, say so and ask a clarifying question\n"
    "2. Consider the company's business goals and customer segments\n"
    "3. Suggest specific, actionable next steps where appropriate\n"
    "4. Cite the feedback items you rely on by their [id]\n"
    "5. Keep the conversation history in mind for follow-up questions"
)

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_ACTION_WORDS = re.compile(
    r"\b(should|could|recommend|suggest|consider|try|implement|add|fix|improve)\b",
    re.IGNORECASE,
)


def extract_suggestions(answer: str) -> list[str]:
    """Pull up to three actionable sentences out of a model answer."""
    suggestions: list[str] = []
    for sentence in _SENTENCE_SPLIT.split(answer):
        cleaned = sentence.strip()
        if len(cleaned) > 10 and _ACTION_WORDS.search(cleaned):  # noqa: PLR2004
            suggestions.append(cleaned)
        if len(suggestions) == MAX_SUGGESTIONS:
            break
    return suggestions


def build_sources(passages: list[RetrievedPassage]) -> list[Source]:
    sources = []
    for passage in passages:
        excerpt = passage.text
        if len(excerpt) > EXCERPT_LENGTH:
            excerpt = excerpt[:EXCERPT_LENGTH] + "..."
        sources.append(
            Source(
                source_item_id=passage.source_item_id,
                title=passage.title,
                similarity=passage.similarity_score,
                excerpt=excerpt,
            )
        )
    return sources


def score_confidence(passages: list[RetrievedPassage]) -> float:
    """Mean passage similarity; a low fixed value when nothing was retrieved."""
    if not passages:
        return NO_CONTEXT_CONFIDENCE
    mean = float(np.mean([p.similarity_score for p in passages]))
    return min(1.0, max(0.0, mean))


async def next_token(stream: AsyncIterator[str], cancel_event: asyncio.Event) -> str | None:
    """Wait for the stream's next token unless the turn is cancelled first.

    Returns:
        The token, or None once the stream is exhausted or cancelled.
    """
    if cancel_event.is_set():
        return None
    pending_token = asyncio.ensure_future(anext(stream))
    cancelled = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait(
            {pending_token, cancelled}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        unfinished = [task for task in (pending_token, cancelled) if not task.done()]
        for task in unfinished:
            task.cancel()
        if unfinished:
            # the stream must be idle again before it can be closed
            await asyncio.wait(unfinished)

    if cancel_event.is_set():
        if pending_token.done() and not pending_token.cancelled():
            pending_token.exception()
        return None
    try:
        return pending_token.result()
    except StopAsyncIteration:
        return None


def format_passages(passages: list[RetrievedPassage]) -> str:
    if not passages:
        return "No matching feedback was found for this question."
    blocks = []
    for passage in passages:
        details = [
            f"{key}: {passage.metadata[key]}"
            for key in ("category", "sentiment", "customer_segment", "created_at")
            if passage.metadata.get(key)
        ]
        header = f"[{passage.source_item_id}] {passage.title}"
        if details:
            header += f" ({', '.join(details)})"
        blocks.append(
            f"{header}\nSimilarity: {passage.similarity_score:.4f}\n{passage.text}"
        )
    return "\n\n".join(blocks)


class RetrievalChain:
    """Per-organization retrieval state: composed context plus search settings.

    Chains are stateless across turns, so one cached instance is shared by
    every concurrent chat of the organization.
    """

    def __init__(
        self,
        organization_id: str,
        context_prompt: str,
        search_engine: SimilaritySearchEngine,
        *,
        top_k: int | None = None,
        mmr_lambda: float | None = None,
    ) -> None:
        self.organization_id = organization_id
        self.context_prompt = context_prompt
        self.search_engine = search_engine
        self.top_k = top_k if top_k is not None else config.SEARCH_TOP_K
        self.mmr_lambda = mmr_lambda

    async def retrieve(
        self,
        query: str,
        search_filter: SearchFilter | None = None,
        k: int | None = None,
    ) -> list[RetrievedPassage]:
        k = k or self.top_k
        if self.mmr_lambda is not None:
            return await self.search_engine.diversified_search(
                self.organization_id,
                query,
                k,
                lambda_mult=self.mmr_lambda,
                search_filter=search_filter,
            )
        return await self.search_engine.search(
            self.organization_id, query, k, search_filter
        )

    def build_messages(
        self,
        question: str,
        passages: list[RetrievedPassage],
        memory: ConversationMemory,
    ) -> list[dict[str, str]]:
        """Assemble the completion prompt.

        Returns:
            System context, prior turns, then the question with its passages.
        """
        messages = [
            {"role": "system", "content": f"{self.context_prompt}\n\n{QA_INSTRUCTIONS}"}
        ]
        messages.extend(memory.as_messages())
        messages.append(
            {
                "role": "user",
                "content": (
                    "=== Relevant Customer Feedback ===\n"
                    f"{format_passages(passages)}\n\n"
                    f"Current Question: {question}"
                ),
            }
        )
        return messages


class ChatOrchestrator:
    """Runs chat turns end to end and never hard-fails a user-facing turn.

    Failures after the request has been validated and its session resolved
    produce a degraded response that is still persisted and returned. Turns
    for one session run one at a time in arrival order.
    """

    def __init__(  # noqa: PLR0913
        self,
        session_manager: ConversationSessionManager,
        search_engine: SimilaritySearchEngine,
        completion_service: CompletionService,
        composer: ContextComposer,
        monitor: HealthMonitor,
        hub: StreamHub,
        *,
        top_k: int | None = None,
        mmr_lambda: float | None = None,
    ) -> None:
        self.session_manager = session_manager
        self.search_engine = search_engine
        self.completion_service = completion_service
        self.composer = composer
        self.monitor = monitor
        self.hub = hub
        self.top_k = top_k if top_k is not None else config.SEARCH_TOP_K
        self.mmr_lambda = mmr_lambda
        self._cancellations: dict[str, asyncio.Event] = {}

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Answer one user message within a session.

        Creates a session when ``request.session_id`` is absent.

        Raises:
            InvalidRequestError: If the message is empty or ``top_k`` invalid.
            SessionNotFoundError: If the given session does not exist.
            AccessDeniedError: If the session belongs to someone else.
            SessionArchivedError: If the session is archived.

        Returns:
            The ChatResponse; ``degraded`` is set when generation fell back.
        """
        started = time.perf_counter()
        self._validate(request)
        session = await self._resolve_session(request)
        turn_id = str(uuid.uuid4())

        async with self.session_manager.turn_lock(session.id):
            # Re-read under the lock; an archive may have landed while queued.
            session = await self.session_manager.get_session(session.id, request.user_id)
            if not session.is_active:
                raise SessionArchivedError(session.id)
            return await self._run_turn(request, session, turn_id, started)

    def cancel_turn(self, session_id: str) -> bool:
        """Stop token emission for the session's in-flight streamed turn.

        Returns:
            True if a streamed turn was running and has been asked to stop.
        """
        event = self._cancellations.get(session_id)
        if event is None or event.is_set():
            return False
        event.set()
        logger.info("Cancellation requested for session %s", session_id)
        return True

    def _validate(self, request: ChatRequest) -> None:
        if not request.message or not request.message.strip():
            msg = "Message must not be empty"
            raise InvalidRequestError(msg)
        if not request.organization_id or not request.user_id:
            msg = "organization_id and user_id are required"
            raise InvalidRequestError(msg)
        if request.top_k is not None and request.top_k <= 0:
            msg = "top_k must be a positive integer"
            raise InvalidRequestError(msg)
        k = request.top_k or self.top_k
        if self.mmr_lambda is not None and k > self.search_engine.fetch_k_cap:
            msg = f"top_k must not exceed {self.search_engine.fetch_k_cap} with MMR"
            raise InvalidRequestError(msg)

    async def _resolve_session(self, request: ChatRequest) -> ChatSession:
        if request.session_id is None:
            return await self.session_manager.create_session(
                request.organization_id, request.user_id
            )
        session = await self.session_manager.get_session(
            request.session_id, request.user_id
        )
        if session.organization_id != request.organization_id:
            raise AccessDeniedError(session.id)
        return session

    async def _get_chain(self, organization_id: str) -> RetrievalChain:
        async def build() -> RetrievalChain:
            context_prompt = await self.composer.build_context(organization_id)
            logger.info("Built retrieval chain for %s", organization_id)
            return RetrievalChain(
                organization_id,
                context_prompt,
                self.search_engine,
                top_k=self.top_k,
                mmr_lambda=self.mmr_lambda,
            )

        return await self.session_manager.get_chain(organization_id, build)

    async def _run_turn(
        self,
        request: ChatRequest,
        session: ChatSession,
        turn_id: str,
        started: float,
    ) -> ChatResponse:
        streaming = request.enable_streaming and self.hub.has_subscribers(session.id)
        cancel_event = asyncio.Event()
        if streaming:
            self._cancellations[session.id] = cancel_event
        self.hub.publish(TurnStarted(session.id, turn_id, message=request.message))

        tokens: list[str] = []
        try:
            response = await self._generate(
                request, session, turn_id, tokens, streaming, cancel_event
            )
        except asyncio.CancelledError:
            partial = "".join(tokens)
            logger.warning("Chat turn %s cancelled for session %s", turn_id, session.id)
            await asyncio.shield(
                self._persist(
                    session, request.message, partial, {"incomplete": True}
                )
            )
            self.hub.publish(TurnCancelled(session.id, turn_id, partial_content=partial))
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Chat turn %s failed for session %s; returning degraded response",
                turn_id,
                session.id,
            )
            dependency = getattr(exc, "dependency", None)
            if dependency in COMPONENTS:
                self.monitor.report_failure(dependency, exc)
            response = self._degraded_response(session.id, turn_id)
            self.hub.publish(
                TurnFailed(
                    session.id,
                    turn_id,
                    error_code=getattr(exc, "code", type(exc).__name__),
                    message=response.message,
                )
            )
        finally:
            if self._cancellations.get(session.id) is cancel_event:
                del self._cancellations[session.id]

        response.processing_time_ms = int((time.perf_counter() - started) * 1000)
        await self._persist(
            session,
            request.message,
            response.message,
            {
                "turn_id": turn_id,
                "degraded": response.degraded,
                "incomplete": response.incomplete,
                "confidence": response.confidence,
                "sources": [s.source_item_id for s in response.sources],
            },
        )
        if response.incomplete:
            self.hub.publish(
                TurnCancelled(session.id, turn_id, partial_content=response.message)
            )
        else:
            self.hub.publish(TurnCompleted(session.id, turn_id, response=response))
        logger.info(
            "Chat turn %s completed in %dms (degraded=%s, incomplete=%s)",
            turn_id,
            response.processing_time_ms,
            response.degraded,
            response.incomplete,
        )
        return response

    async def _generate(  # noqa: PLR0913
        self,
        request: ChatRequest,
        session: ChatSession,
        turn_id: str,
        tokens: list[str],
        streaming: bool,  # noqa: FBT001
        cancel_event: asyncio.Event,
    ) -> ChatResponse:
        memory = await self.session_manager.get_memory(session)
        chain = await self._get_chain(session.organization_id)
        query = await self._standalone_query(request.message, memory)
        passages = await chain.retrieve(query, request.filters, request.top_k)
        messages = chain.build_messages(request.message, passages, memory)

        incomplete = False
        if streaming:
            stream = self.completion_service.stream(messages)
            async with aclosing(stream):
                while (token := await next_token(stream, cancel_event)) is not None:
                    tokens.append(token)
                    self.hub.publish(
                        TokenReceived(
                            session.id, turn_id, token=token, index=len(tokens) - 1
                        )
                    )
            incomplete = cancel_event.is_set()
            answer = "".join(tokens).strip()
        else:
            answer = await self.completion_service.complete(messages)

        if not answer and not incomplete:
            answer = EMPTY_ANSWER

        return ChatResponse(
            message=answer,
            confidence=score_confidence(passages),
            sources=build_sources(passages),
            suggestions=[] if incomplete else extract_suggestions(answer),
            follow_up_questions=(
                [] if incomplete else FOLLOW_UP_TEMPLATES[:MAX_FOLLOW_UPS]
            ),
            session_id=session.id,
            turn_id=turn_id,
            incomplete=incomplete,
        )

    async def _standalone_query(self, question: str, memory: ConversationMemory) -> str:
        """Rewrite a follow-up into a self-contained retrieval query.

        Falls back to the raw question when there is no history or the
        rewrite fails.

        Returns:
            The query used for retrieval.
        """
        turns = memory.recent(REWRITE_HISTORY_TURNS)
        if not turns:
            return question

        history = "".join(
            f"Human: {turn.user_message}\nAssistant: {turn.assistant_message}\n"
            for turn in turns
        )
        prompt = (
            "Given the following conversation history and a follow-up question, "
            "rewrite the follow-up question as a standalone question that can be "
            "understood without the conversation context.\n\n"
            f"Conversation History:\n{history}\n"
            f"Follow-up Question: {question}\n\n"
            "Standalone Question:"
        )
        try:
            rewritten = await self.completion_service.complete(
                [{"role": "user", "content": prompt}],
                max_tokens=config.QUERY_REWRITE_MAX_TOKENS,
                temperature=config.QUERY_REWRITE_TEMPERATURE,
            )
        except FeedbackRAGError as exc:
            logger.warning("Query rewrite failed, using original question: %s", exc)
            return question
        standalone = rewritten or question
        logger.info("Generated standalone query: %s", standalone)
        return standalone

    def _degraded_response(self, session_id: str, turn_id: str) -> ChatResponse:
        return ChatResponse(
            message=DEGRADED_MESSAGE,
            confidence=DEGRADED_CONFIDENCE,
            sources=[],
            suggestions=list(DEGRADED_SUGGESTIONS),
            follow_up_questions=list(DEGRADED_FOLLOW_UPS),
            session_id=session_id,
            turn_id=turn_id,
            degraded=True,
        )

    async def _persist(
        self,
        session: ChatSession,
        user_message: str,
        assistant_message: str,
        metadata: dict[str, Any],
    ) -> None:
        try:
            await self.session_manager.append_turn(
                session.id,
                user_message,
                assistant_message,
                assistant_metadata=metadata,
            )
        except BackendUnavailableError as exc:
            logger.exception("Failed to persist chat turn for session %s", session.id)
            self.monitor.report_failure(SESSION_STORE, exc)
