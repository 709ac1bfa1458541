"""Per-key asyncio locks for in-process serialization.

Work on the same conversation is linearized through one lock per key while
different keys proceed in parallel. Entries are reference counted and
dropped once no task holds or waits on them.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from unibox.exceptions import TransientStorageError

logger = structlog.get_logger()


class KeyedLocks:
    """Registry of asyncio locks keyed by an arbitrary string."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def _acquire_entry(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
            self._waiters[key] = 0
        self._waiters[key] += 1
        return self._locks[key]

    def _release_entry(self, key: str) -> None:
        self._waiters[key] -= 1
        if self._waiters[key] == 0:
            del self._waiters[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, key: str, timeout: float) -> AsyncIterator[None]:
        """Hold the lock for ``key``, waiting at most ``timeout`` seconds.

        Raises:
            TransientStorageError: If the lock is not acquired in time.
        """
        lock = self._acquire_entry(key)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except TimeoutError as e:
                logger.warning("Lock acquisition timed out", lock=self._name, key=key)
                raise TransientStorageError(f"{self._name} lock", 1, "lock wait timed out") from e
            try:
                yield
            finally:
                lock.release()
        finally:
            self._release_entry(key)

    def __len__(self) -> int:
        return len(self._locks)


# Shared by ingestion and outbound sends so both serialize on the same conversation
conversation_locks = KeyedLocks("conversation")
