"""
In-process keyed work queue for reconciliation.

Keys are ``namespace/name``. A key waits in the queue at most once, and is
handed to at most one worker at a time: adding a key that is being processed
marks it dirty, and it is queued again when the worker calls ``done``.

Usage:
    >>> queue = WorkQueue()
    >>> queue.add("default/orders")
    >>> queue.add("default/orders")  # no-op, already waiting
    >>> key = await queue.get()
    >>> ...reconcile...
    >>> queue.done(key)
"""
import asyncio
from typing import Dict, Optional, Set

import structlog

from mssql_operator.services import metrics

logger = structlog.get_logger(__name__)


class WorkQueue:
    """Deduplicating queue with per-key serialization and delayed adds."""

    def __init__(self):
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def add(self, key: str) -> None:
        """Queue ``key`` unless it is already waiting."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.put_nowait(key)
        metrics.queue_depth.set(len(self._dirty))

    def add_after(self, key: str, delay: float) -> None:
        """
        Queue ``key`` once ``delay`` seconds have passed.

        An earlier pending add for the same key wins over a later one.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> str:
        """Wait for the next key and mark it as being processed."""
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        metrics.queue_depth.set(len(self._dirty))
        return key

    def done(self, key: str) -> None:
        """Release ``key``; requeue it if it was added while processing."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def pending_delay(self, key: str) -> Optional[float]:
        """Seconds until a delayed add of ``key`` fires, if one is scheduled."""
        timer = self._timers.get(key)
        if timer is None:
            return None
        return max(0.0, timer.when() - asyncio.get_running_loop().time())

    def shutdown(self) -> None:
        """Drop scheduled adds and refuse new keys."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        logger.info("work_queue_shut_down", dropped=len(self._dirty))

    @property
    def is_shut_down(self) -> bool:
        return self._shutting_down

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    def __contains__(self, key: object) -> bool:
        return key in self._dirty

    def __len__(self) -> int:
        return len(self._dirty)


class ExponentialBackoff:
    """Per-key failure counter producing capped exponential delays."""

    def __init__(self, base_seconds: float, max_seconds: float):
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._failures: Dict[str, int] = {}

    def next_delay(self, key: str) -> float:
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self.base_seconds * (2 ** failures), self.max_seconds)

    def failures(self, key: str) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)
