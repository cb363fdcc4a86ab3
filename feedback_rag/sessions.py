"""Chat session persistence, conversation memory and per-organization caches."""

from __future__ import annotations

import asyncio
import datetime
import json
import sqlite3
import uuid
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from contextlib import asynccontextmanager, closing, contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from .cache import KeyedLock, SingleFlightCache
from .config import config
from .errors import (
    AccessDeniedError,
    InvalidRequestError,
    SessionArchivedError,
    SessionNotFoundError,
    SessionStoreUnavailable,
)
from .health import SESSION_STORE
from .models import (
    ChatMessage,
    ChatSession,
    ConversationTurn,
    SessionState,
    to_utc_iso,
    utc_now,
    utc_now_iso,
    validate_metadata,
)
from .retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from .health import CircuitBreaker

T = TypeVar("T")

logger = config.get_logger(__name__)

DEFAULT_SESSION_TITLE = "New Chat"

_ALLOWED_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.UNINITIALIZED: {SessionState.ACTIVE},
    SessionState.ACTIVE: {SessionState.ACTIVE, SessionState.ARCHIVED},
    SessionState.ARCHIVED: {SessionState.ARCHIVED},
}

_SESSION_COLUMNS = (
    "id, organization_id, user_id, title, messages, metadata, state, "
    "last_message_at, created_at, updated_at"
)


def check_transition(session: ChatSession, target: SessionState) -> None:
    """Guard a session state change.

    Raises:
        SessionArchivedError: If an archived session would be reactivated.
    """
    if target not in _ALLOWED_TRANSITIONS[session.state]:
        raise SessionArchivedError(session.id)


def _next_timestamp(previous: str | None) -> datetime.datetime:
    """Current time, nudged forward so transcript timestamps strictly increase."""
    now = utc_now()
    if previous:
        floor = datetime.datetime.fromisoformat(previous) + datetime.timedelta(
            microseconds=1
        )
        now = max(now, floor)
    return now


class SessionStore:
    """SQLite persistence for chat sessions.

    Messages are stored as one JSON document per session, so appending a turn
    is a single-row update inside one transaction: readers see either the
    transcript before the turn or the transcript with both messages.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path if db_path is not None else config.SESSION_DB_PATH)
        self.db_path.parent.mkdir(exist_ok=True, parents=True)
        self._create_tables()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with closing(sqlite3.connect(str(self.db_path), timeout=30)) as conn, conn:
            yield conn

    def _create_tables(self) -> None:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    messages TEXT NOT NULL DEFAULT '[]',
                    metadata TEXT NOT NULL DEFAULT '{}',
                    state TEXT NOT NULL DEFAULT 'active' CHECK(
                        state IN ('uninitialized','active','archived')
                    ),
                    last_message_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_chat_sessions_owner "
                "ON chat_sessions(organization_id, user_id, state, updated_at DESC)"
            )

    @staticmethod
    def _build_session_from_row(row: tuple) -> ChatSession:
        (
            session_id,
            organization_id,
            user_id,
            title,
            messages_json,
            metadata_json,
            state,
            last_message_at,
            created_at,
            updated_at,
        ) = row
        return ChatSession(
            id=session_id,
            organization_id=organization_id,
            user_id=user_id,
            title=title,
            messages=[ChatMessage.from_dict(m) for m in json.loads(messages_json)],
            metadata=json.loads(metadata_json or "{}"),
            state=SessionState(state),
            last_message_at=last_message_at,
            created_at=created_at,
            updated_at=updated_at,
        )

    def _fetch(self, cursor: sqlite3.Cursor, session_id: str) -> ChatSession | None:
        cursor.execute(
            f"SELECT {_SESSION_COLUMNS} FROM chat_sessions WHERE id = ?",  # noqa: S608
            (session_id,),
        )
        row = cursor.fetchone()
        return self._build_session_from_row(row) if row else None

    def insert(self, session: ChatSession) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (
                    id, organization_id, user_id, title, messages, metadata,
                    state, last_message_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.organization_id,
                    session.user_id,
                    session.title,
                    json.dumps([m.to_dict() for m in session.messages]),
                    json.dumps(session.metadata),
                    session.state.value,
                    session.last_message_at,
                    session.created_at,
                    session.updated_at,
                ),
            )

    def get(self, session_id: str) -> ChatSession | None:
        with self._connect() as conn:
            return self._fetch(conn.cursor(), session_id)

    def list_active(
        self, organization_id: str, user_id: str, limit: int
    ) -> list[ChatSession]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM chat_sessions
                WHERE organization_id = ? AND user_id = ? AND state = ?
                ORDER BY updated_at DESC, rowid DESC
                LIMIT ?
                """,  # noqa: S608
                (organization_id, user_id, SessionState.ACTIVE.value, limit),
            )
            return [self._build_session_from_row(row) for row in cursor.fetchall()]

    def append_messages(
        self,
        session_id: str,
        build_messages: Callable[[ChatSession], list[ChatMessage]],
    ) -> ChatSession:
        """Append messages to a session in one write transaction.

        Raises:
            SessionNotFoundError: If the session does not exist.
            SessionArchivedError: If the session is archived.

        Returns:
            The session as committed.
        """
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            session = self._fetch(cursor, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            check_transition(session, SessionState.ACTIVE)

            new_messages = build_messages(session)
            session.messages.extend(new_messages)
            session.last_message_at = new_messages[-1].timestamp
            session.updated_at = new_messages[-1].timestamp
            cursor.execute(
                """
                UPDATE chat_sessions
                SET messages = ?, last_message_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    json.dumps([m.to_dict() for m in session.messages]),
                    session.last_message_at,
                    session.updated_at,
                    session_id,
                ),
            )
        return session

    def set_state(self, session_id: str, state: SessionState) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE chat_sessions SET state = ?, updated_at = ? WHERE id = ?",
                (state.value, utc_now_iso(), session_id),
            )

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1 FROM chat_sessions LIMIT 1").fetchall()


class ConversationMemory:
    """Sliding window of the most recent turns used to condition the model.

    Derived from the persisted transcript and rebuildable at any time.
    Degraded and incomplete turns are left out.
    """

    def __init__(self, window: int | None = None) -> None:
        self.window = max(1, window if window is not None else config.MEMORY_WINDOW_TURNS)
        self.turns: deque[ConversationTurn] = deque(maxlen=self.window)

    @classmethod
    def from_messages(
        cls, messages: list[ChatMessage], window: int | None = None
    ) -> ConversationMemory:
        memory = cls(window)
        pending: ChatMessage | None = None
        for message in messages:
            if message.role == "user":
                pending = message
            elif pending is not None:
                if not (message.degraded or message.incomplete):
                    memory.add_turn(pending.content, message.content, message.timestamp)
                pending = None
        return memory

    def add_turn(
        self, user_message: str, assistant_message: str, timestamp: str | None = None
    ) -> None:
        self.turns.append(
            ConversationTurn(
                user_message=user_message,
                assistant_message=assistant_message,
                timestamp=timestamp or utc_now_iso(),
            )
        )

    def recent(self, count: int | None = None) -> list[ConversationTurn]:
        turns = list(self.turns)
        return turns if count is None else turns[-count:]

    def as_messages(self) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        for turn in self.turns:
            messages.append({"role": "user", "content": turn.user_message})
            messages.append({"role": "assistant", "content": turn.assistant_message})
        return messages

    def __len__(self) -> int:
        return len(self.turns)


class ConversationSessionManager:
    """Owns chat sessions, their memory windows and per-organization chains.

    Memory is cached per ``(organization_id, session_id)`` and retrieval
    chains per organization; both caches are single-flight and can be
    dropped with ``clear_cache`` without touching persisted transcripts.
    Turns for one session are serialized in arrival order via ``turn_lock``.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        memory_window: int | None = None,
        list_limit: int | None = None,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.memory_window = (
            memory_window if memory_window is not None else config.MEMORY_WINDOW_TURNS
        )
        self.list_limit = list_limit if list_limit is not None else config.SESSION_LIST_LIMIT
        self.memories: SingleFlightCache[tuple[str, str], ConversationMemory] = (
            SingleFlightCache("memory")
        )
        self.chains: SingleFlightCache[str, Any] = SingleFlightCache("chain")
        self._turn_locks = KeyedLock()

    async def create_session(
        self,
        organization_id: str,
        user_id: str,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ChatSession:
        """Create an active session owned by ``user_id``.

        Raises:
            InvalidRequestError: If the organization or user is missing.

        Returns:
            The new ChatSession.
        """
        if not organization_id or not user_id:
            msg = "organization_id and user_id are required"
            raise InvalidRequestError(msg)
        now = utc_now_iso()
        session = ChatSession(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            user_id=user_id,
            title=(title or "").strip() or DEFAULT_SESSION_TITLE,
            metadata=validate_metadata(metadata),
            state=SessionState.UNINITIALIZED,
            created_at=now,
            updated_at=now,
        )
        check_transition(session, SessionState.ACTIVE)
        session.state = SessionState.ACTIVE
        await self._call(self.store.insert, session)
        logger.info("Created chat session %s for %s", session.id, organization_id)
        return session

    async def get_session(self, session_id: str, user_id: str) -> ChatSession:
        """Load a session on behalf of its owner.

        Raises:
            SessionNotFoundError: If no session has this id.
            AccessDeniedError: If the session belongs to another user.

        Returns:
            The ChatSession, archived or not.
        """
        session = await self._call(self.store.get, session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.user_id != user_id:
            logger.warning("User %s denied access to session %s", user_id, session_id)
            raise AccessDeniedError(session_id)
        return session

    async def list_sessions(self, organization_id: str, user_id: str) -> list[ChatSession]:
        return await self._call(
            self.store.list_active, organization_id, user_id, self.list_limit
        )

    async def append_turn(
        self,
        session_id: str,
        user_message: str,
        assistant_message: str,
        *,
        assistant_metadata: dict[str, Any] | None = None,
    ) -> ChatSession:
        """Persist one user/assistant exchange atomically.

        Both messages get timestamps later than any already in the transcript,
        the assistant's strictly after the user's. Degraded or incomplete
        replies are flagged through ``assistant_metadata``.

        Raises:
            SessionNotFoundError: If the session does not exist.
            SessionArchivedError: If the session is archived.

        Returns:
            The updated session.
        """

        def build(session: ChatSession) -> list[ChatMessage]:
            previous = session.messages[-1].timestamp if session.messages else None
            user_ts = to_utc_iso(_next_timestamp(previous))
            assistant_ts = to_utc_iso(_next_timestamp(user_ts))
            return [
                ChatMessage(role="user", content=user_message, timestamp=user_ts),
                ChatMessage(
                    role="assistant",
                    content=assistant_message,
                    timestamp=assistant_ts,
                    metadata=dict(assistant_metadata or {}),
                ),
            ]

        session = await self._call(self.store.append_messages, session_id, build)

        memory = self.memories.get((session.organization_id, session_id))
        if memory is not None:
            assistant = session.messages[-1]
            if not (assistant.degraded or assistant.incomplete):
                memory.add_turn(user_message, assistant_message, assistant.timestamp)
        return session

    async def archive_session(self, session_id: str, user_id: str) -> ChatSession:
        """Archive a session; archiving an archived session is a no-op.

        Returns:
            The archived session.
        """
        session = await self.get_session(session_id, user_id)
        if session.state is SessionState.ARCHIVED:
            return session
        check_transition(session, SessionState.ARCHIVED)
        async with self._turn_locks.hold(session_id):
            await self._call(self.store.set_state, session_id, SessionState.ARCHIVED)
        session.state = SessionState.ARCHIVED
        self.memories.invalidate((session.organization_id, session_id))
        logger.info("Archived chat session %s", session_id)
        return session

    async def get_memory(self, session: ChatSession) -> ConversationMemory:
        async def build() -> ConversationMemory:
            return ConversationMemory.from_messages(session.messages, self.memory_window)

        return await self.memories.get_or_create((session.organization_id, session.id), build)

    async def get_chain(self, organization_id: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Return the organization's cached chain, building it at most once."""
        return await self.chains.get_or_create(organization_id, factory)

    def clear_cache(self, organization_id: str) -> None:
        """Drop cached chains and memories for an organization."""
        self.chains.invalidate(organization_id)
        dropped = self.memories.invalidate_where(lambda key: key[0] == organization_id)
        logger.info(
            "Cleared chat cache for %s (%d memories dropped)", organization_id, dropped
        )

    @asynccontextmanager
    async def turn_lock(self, session_id: str) -> AsyncIterator[None]:
        async with self._turn_locks.hold(session_id):
            yield

    async def ping(self) -> None:
        await asyncio.to_thread(self.store.ping)

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking store call off the loop with retries and the breaker."""
        return await call_with_retry(
            lambda: asyncio.to_thread(func, *args),
            dependency=SESSION_STORE,
            error_cls=SessionStoreUnavailable,
            policy=self.retry_policy,
            breaker=self.breaker,
        )
