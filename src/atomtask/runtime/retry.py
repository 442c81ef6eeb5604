"""Retry an async attempt a bounded number of times."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from ..errors import RetryAbandoned, RetryCancelledError, TaskValidationError
from .cancel import CancelToken


class Abandon:
    """Callable handed to each attempt; calling it stops further retries."""

    def __init__(self) -> None:
        self.called = False
        self.reason: Optional[str] = None

    def __call__(self, reason: Optional[str] = None) -> None:
        self.called = True
        self.reason = reason
        raise RetryAbandoned(reason)


async def retry(
    attempt: Callable[[Abandon], Awaitable[Any]],
    *,
    times: int = 3,
    delay: float = 0.0,
    token: Optional[CancelToken] = None,
) -> Any:
    """Run *attempt* up to ``times + 1`` times.

    Waits *delay* seconds between failed attempts. Stops early when the
    attempt calls ``abandon()`` (re-raising ``RetryAbandoned``) or when
    *token* is cancelled (raising ``RetryCancelledError``). After the last
    failure the attempt's exception propagates.
    """
    if times < 0:
        raise TaskValidationError(f"retry times must be >= 0, got {times}")
    abandon = Abandon()

    for n in range(times + 1):
        if token is not None and token.cancelled:
            raise RetryCancelledError(token.reason or "cancelled")
        try:
            return await attempt(abandon)
        except RetryAbandoned:
            raise
        except Exception as exc:
            if abandon.called:
                raise RetryAbandoned(abandon.reason) from exc
            logger.debug("Attempt {}/{} failed: {}", n + 1, times + 1, exc)
            if n == times:
                raise
            if delay <= 0:
                continue
            if token is None:
                await asyncio.sleep(delay)
            elif await token.sleep(delay):
                raise RetryCancelledError(token.reason or "cancelled") from exc
    raise RetryCancelledError("no attempt was made")
