"""
RequestDeduplicator - at most one concurrent fetch per resource key.

Callers arriving while a fetch for their key is in flight await the same
task and receive the same value or the same exception.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class InFlightRequest:
    """A fetch that has not settled yet."""

    key: str
    task: asyncio.Task[Any]
    started_at: float = field(default_factory=time.monotonic)
    waiters: int = 1


@dataclass
class DeduplicatorStats:
    started: int = 0  # Fetches actually started
    shared: int = 0  # Callers that joined an in-flight fetch
    in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        total = self.started + self.shared
        if total == 0:
            return 0.0
        return self.shared / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "shared": self.shared,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }


class RequestDeduplicator:
    """
    Usage:
        dedup = RequestDeduplicator()
        data = await dedup.dedupe(key, lambda: executor.execute(endpoint))
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, InFlightRequest] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        """Join the in-flight fetch for ``key`` or start one with ``request_fn``."""
        async with self._lock:
            current = self._in_flight.get(key)
            if current is not None:
                current.waiters += 1
                self._stats.shared += 1
                self._log(f"JOIN: {key[:50]} ({current.waiters} waiters)")
            else:
                task = asyncio.create_task(self._run(key, request_fn))
                current = InFlightRequest(key=key, task=task)
                self._in_flight[key] = current
                self._stats.started += 1
                self._log(f"START: {key[:50]}")

        # A cancelled waiter must not cancel the fetch the others share
        return await asyncio.shield(current.task)

    async def _run(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await request_fn()
        finally:
            current = self._in_flight.get(key)
            if current is not None and current.task is asyncio.current_task():
                del self._in_flight[key]
            self._log(f"SETTLED: {key[:50]}")

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def cancel(self, key: str) -> bool:
        """Cancel the in-flight fetch for ``key``; every waiter sees CancelledError."""
        async with self._lock:
            current = self._in_flight.pop(key, None)
        if current is None:
            return False
        current.task.cancel()
        self._log(f"CANCEL: {key[:50]}")
        return True

    async def cancel_all(self) -> int:
        """Cancel every in-flight fetch except the one calling this."""
        me = asyncio.current_task()
        async with self._lock:
            pending = list(self._in_flight.values())
            self._in_flight.clear()
        for current in pending:
            if current.task is not me:
                current.task.cancel()
        if pending:
            self._log(f"CANCEL_ALL: {len(pending)} fetches cancelled")
        return len(pending)

    def get_in_flight_keys(self) -> list[str]:
        return list(self._in_flight)

    def get_stats(self) -> DeduplicatorStats:
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")
