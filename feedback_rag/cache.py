"""Per-key locking and a single-flight, invalidatable cache."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable
from contextlib import asynccontextmanager
from typing import Generic, TypeVar

from .config import config

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

logger = config.get_logger(__name__)


class KeyedLock:
    """One asyncio lock per key, released and dropped when nobody holds it.

    Waiters on the same key acquire the lock in arrival order.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._holders: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                self._locks.pop(key, None)


class SingleFlightCache(Generic[K, V]):
    """Async cache that builds each key at most once at a time.

    Concurrent ``get_or_create`` calls for the same missing key share a
    single factory invocation. ``invalidate`` drops a key; a build that was in
    flight when its key was invalidated still returns its value to its
    callers but is not stored.
    """

    def __init__(self, name: str = "cache") -> None:
        self.name = name
        self._values: dict[K, V] = {}
        self._generations: dict[K, int] = {}
        self._locks = KeyedLock()

    async def get_or_create(self, key: K, factory: Callable[[], Awaitable[V]]) -> V:
        if key in self._values:
            return self._values[key]

        async with self._locks.hold(key):
            if key in self._values:
                return self._values[key]
            generation = self._generations.get(key, 0)
            value = await factory()
            if self._generations.get(key, 0) == generation:
                self._values[key] = value
                logger.debug("Built %s entry for %s", self.name, key)
            return value

    def get(self, key: K) -> V | None:
        return self._values.get(key)

    def invalidate(self, key: K) -> bool:
        self._generations[key] = self._generations.get(key, 0) + 1
        return self._values.pop(key, None) is not None

    def invalidate_where(self, predicate: Callable[[K], bool]) -> int:
        keys = [key for key in list(self._values) if predicate(key)]
        for key in keys:
            self.invalidate(key)
        return len(keys)
