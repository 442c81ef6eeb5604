"""Cooperative cancellation token."""

from __future__ import annotations

import asyncio
from typing import Optional


class CancelToken:
    """A flag an atomic task body can check or await.

    Cancelling never interrupts the holder; the body decides how to react.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason or "cancelled"
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep up to *delay* seconds; return True if cancelled meanwhile."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        state = f"cancelled={self._reason!r}" if self.cancelled else "active"
        return f"<CancelToken {state}>"
