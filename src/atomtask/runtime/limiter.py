"""Bounded-concurrency limiter for coroutine factories.

Submissions are admitted in order; at most ``concurrency`` of them run at
any time. Queued work can be dropped without touching what already runs.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable

from loguru import logger

from ..errors import TaskValidationError


class ConcurrencyLimiter:
    def __init__(self, concurrency: int = 1) -> None:
        if not isinstance(concurrency, int) or concurrency < 1:
            raise TaskValidationError(f"concurrency must be a positive integer, got {concurrency!r}")
        self._concurrency = concurrency
        self._queue: deque[tuple[Callable[[], Awaitable[Any]], asyncio.Future]] = deque()
        self._active = 0
        self._running: set[asyncio.Task] = set()

    # -- Properties ----------------------------------------------------------

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    # -- Submission ----------------------------------------------------------

    def submit(self, fn: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        """Schedule ``fn()``; the returned future settles with its outcome.

        Must be called with a running event loop. If the queue is cleared
        before ``fn`` starts, the future is cancelled.
        """
        future = asyncio.get_running_loop().create_future()
        self._queue.append((fn, future))
        self._pump()
        return future

    def clear_queue(self) -> int:
        """Drop every submission that has not started yet. Returns how many."""
        dropped = 0
        while self._queue:
            _fn, future = self._queue.popleft()
            if not future.done():
                future.cancel()
            dropped += 1
        if dropped:
            logger.debug("Limiter dropped {} queued submission(s)", dropped)
        return dropped

    # -- Internal ------------------------------------------------------------

    def _pump(self) -> None:
        while self._active < self._concurrency and self._queue:
            fn, future = self._queue.popleft()
            if future.done():
                continue
            self._active += 1
            runner = asyncio.ensure_future(self._run(fn, future))
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)

    async def _run(self, fn: Callable[[], Awaitable[Any]], future: asyncio.Future) -> None:
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._active -= 1
            self._pump()
