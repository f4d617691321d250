"""
Keyed in-process state store with per-key locking.

Each key owns its own asyncio.Lock, so work for one tenant-client never
waits on another client's critical section.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Generic, TypeVar

T = TypeVar("T")


class KeyedStore(Generic[T]):
    """Lazily created per-key state, each guarded by its own lock."""

    def __init__(self, factory: Callable[[str], T]):
        self._factory = factory
        self._values: dict[str, T] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> T:
        """Return the state for key, creating it on first access."""
        value = self._values.get(key)
        if value is None:
            value = self._factory(key)
            self._values[key] = value
        return value

    def peek(self, key: str) -> T | None:
        return self._values.get(key)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def locked(self, key: str) -> AsyncIterator[T]:
        """
        Hold the key's lock and yield its state.

        Usage:
            async with store.locked(client_id) as state:
                state.count += 1
        """
        async with self._lock_for(key):
            yield self.get(key)
