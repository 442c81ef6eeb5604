"""Provide helpers for ids, timestamps and bounded polling."""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Callable


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_id(length: int = 24) -> str:
    """Random lowercase hex id of *length* characters."""
    if length < 1:
        raise ValueError("id length must be positive")
    chunks = []
    while sum(len(c) for c in chunks) < length:
        chunks.append(uuid.uuid4().hex)
    return "".join(chunks)[:length]


async def wait_until(
    condition: Callable[[], bool],
    *,
    timeout: float = 10.0,
    interval: float = 0.5,
) -> None:
    """Poll *condition* every *interval* seconds until it holds.

    Raises ``asyncio.TimeoutError`` once *timeout* seconds have elapsed.
    """
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() >= deadline:
            raise asyncio.TimeoutError(f"condition not met within {timeout:g}s")
        await asyncio.sleep(interval)
