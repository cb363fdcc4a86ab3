"""Typed per-session event stream for live chat turns.

Subscribers attach to a session id and receive events in publication order.
Turns within a session are processed one at a time, so every event of turn N
reaches a subscriber before any event of turn N+1.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .config import config
from .models import utc_now_iso

if TYPE_CHECKING:
    from .models import ChatResponse

logger = config.get_logger(__name__)


@dataclass(frozen=True)
class StreamEvent:
    session_id: str
    turn_id: str
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass(frozen=True)
class TurnStarted(StreamEvent):
    message: str = ""


@dataclass(frozen=True)
class TokenReceived(StreamEvent):
    token: str = ""
    index: int = 0


@dataclass(frozen=True)
class TurnCompleted(StreamEvent):
    response: ChatResponse | None = None


@dataclass(frozen=True)
class TurnFailed(StreamEvent):
    error_code: str = ""
    message: str = ""


@dataclass(frozen=True)
class TurnCancelled(StreamEvent):
    partial_content: str = ""


_CLOSED = object()


class Subscription:
    """A subscriber's view of one session's events.

    Iterate with ``async for``; iteration ends after ``close`` is called.
    """

    def __init__(self, hub: StreamHub, session_id: str) -> None:
        self.hub = hub
        self.session_id = session_id
        self._queue: asyncio.Queue[StreamEvent | object] = asyncio.Queue()
        self.closed = False

    def _deliver(self, event: StreamEvent | object) -> None:
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> StreamEvent | None:
        """Wait for the next event; None once the subscription is closed."""
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            return None
        return item  # type: ignore[return-value]

    def close(self) -> None:
        self.hub.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class StreamHub:
    """Fan-out of turn events to the subscribers of each session."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, session_id: str) -> Subscription:
        subscription = Subscription(self, session_id)
        self._subscribers.setdefault(session_id, []).append(subscription)
        logger.debug("Subscriber attached to session %s", session_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription.closed:
            return
        subscription.closed = True
        subscribers = self._subscribers.get(subscription.session_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.session_id, None)
        subscription._deliver(_CLOSED)  # noqa: SLF001
        logger.debug("Subscriber detached from session %s", subscription.session_id)

    def has_subscribers(self, session_id: str) -> bool:
        return bool(self._subscribers.get(session_id))

    def publish(self, event: StreamEvent) -> int:
        """Deliver an event to every current subscriber of its session.

        Returns:
            Number of subscribers the event was delivered to.
        """
        subscribers = self._subscribers.get(event.session_id, [])
        for subscription in subscribers:
            subscription._deliver(event)  # noqa: SLF001
        return len(subscribers)
