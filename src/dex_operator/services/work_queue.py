"""
Deduplicating work queue for convergence passes.

Keys are "namespace/name" strings. A key is queued at most once, is handed to
at most one worker at a time, and if it is added again while a worker holds
it, it is queued again when that worker calls done(). Delayed and
rate-limited additions are scheduled on the running event loop.
"""

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class QueueShutDown(Exception):
    """Raised by get() once the queue has been shut down."""


class ReconcileQueue:
    """asyncio work queue with coalescing, delays and per-key backoff."""

    def __init__(
        self,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
        on_depth_change: Callable[[int], None] | None = None,
    ):
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._on_depth_change = on_depth_change
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return self._queue.qsize()

    def _depth_changed(self) -> None:
        if self._on_depth_change is not None:
            self._on_depth_change(self._queue.qsize())

    def add(self, key: str) -> None:
        """Queue a key unless it is already waiting."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.put_nowait(key)
            self._depth_changed()

    def add_after(self, key: str, delay: float) -> None:
        """Queue a key after ``delay`` seconds; an earlier pending timer wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= when:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(when, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: str) -> float:
        """Queue a key after an exponential backoff; returns the delay used."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = min(self.backoff_base * (2**failures), self.backoff_max)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the backoff for a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> str:
        """Wait for the next key and mark it as being processed."""
        key = await self._queue.get()
        self._queue.task_done()
        self._depth_changed()
        if self._shutting_down:
            raise QueueShutDown()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        """Release a key; re-queue it if it was added while being processed."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)
            self._depth_changed()

    def shutdown(self, workers: int = 1) -> None:
        """Stop accepting keys and wake up to ``workers`` blocked getters."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for _ in range(workers):
            self._queue.put_nowait("")


def request_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    namespace, _, name = key.partition("/")
    return namespace, name
