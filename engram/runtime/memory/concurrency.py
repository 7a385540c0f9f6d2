"""
Concurrency Primitives - Per-entity locks, single-flight, cancellation

WHAT: Small asyncio helpers shared by the orchestrator and the engines
WHERE: engram/runtime/memory/concurrency.py - coordination layer
WHO: Writers serializing per-id mutations; embedding generation; batch passes
TIME: O(1) bookkeeping per acquire/release

Readers never take these locks. Writers to the same memory or edge id queue
behind one another while writers to unrelated ids proceed concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLocks:
    """Registry of ``asyncio.Lock`` objects keyed by entity id.

    Locks are created on first use and dropped once no coroutine holds or
    waits on them, so the registry stays proportional to in-flight writes.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[key] - 1
            if remaining:
                self._waiters[key] = remaining
            else:
                del self._waiters[key]
                del self._locks[key]


class SingleFlight(Generic[T]):
    """Collapse concurrent calls for the same key into one underlying call.

    The first caller for a key runs ``factory``; callers arriving while it is
    in flight await the same future and observe the same result or error.
    Nothing is remembered once the call settles.
    """

    def __init__(self) -> None:
        self._inflight: Dict[Hashable, asyncio.Future[T]] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    async def do(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug(f"Joining in-flight call for {key!r}")
            return await asyncio.shield(existing)

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await factory()
        except BaseException as exc:
            if isinstance(exc, Exception):
                future.set_exception(exc)
                # retrieved here so an unjoined failure is not reported as never retrieved
                future.exception()
            else:
                future.cancel()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            del self._inflight[key]


class CancellationToken:
    """Cooperative cancellation flag checked between batch items."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "shutdown") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


__all__ = ["CancellationToken", "KeyedLocks", "SingleFlight"]
