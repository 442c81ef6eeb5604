"""Atomic task executor.

An atomic task wraps one user-supplied body and runs it with a bounded
number of retries, a per-attempt timeout and cooperative cancellation.
Atomic tasks inside a task are independent and unordered: even with
``concurrency=1`` no body should rely on another body's outcome being
visible in the context.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from loguru import logger

from .config import AtomTaskOptions, coerce_options
from .errors import (
    AttemptTimeoutError,
    InvalidTransitionError,
    RetryCancelledError,
    TaskValidationError,
)
from .models import (
    AtomResult,
    AtomTaskSnapshot,
    AtomTaskStatus,
    as_message,
    render_message,
)
from .runtime.cancel import CancelToken
from .runtime.retry import Abandon, retry
from .utils import generate_id


@dataclass(frozen=True)
class AtomTaskCall:
    """What a body receives on every attempt."""

    ctx: Any
    signal: CancelToken
    exec_count: int
    abandon: Abandon


AtomTaskExec = Callable[[AtomTaskCall], Any]


class AtomTask:
    """Smallest independently retryable unit of work inside a task."""

    def __init__(
        self,
        exec: AtomTaskExec,
        *,
        id: Optional[str] = None,
        error_msg: Any = None,
        process_msg: Any = None,
        warning_msg: Any = None,
        success_msg: Any = None,
        options: Union[AtomTaskOptions, dict[str, Any], None] = None,
    ) -> None:
        if not callable(exec):
            raise TaskValidationError("AtomTask exec must be callable")
        self.id = id or generate_id(32)
        self.status = AtomTaskStatus.PENDING
        self.options = coerce_options(AtomTaskOptions, options)
        self.error_msg = as_message(error_msg)
        self.process_msg = as_message(process_msg)
        self.warning_msg = as_message(warning_msg)
        self.success_msg = as_message(success_msg)
        self._exec = exec
        self._ctx: Any = None
        self._retry_token = CancelToken()
        self._attempt_token: Optional[CancelToken] = None
        self._generation = 0
        self._exec_count = 0
        self._error: Optional[str] = None

    def __repr__(self) -> str:
        return f"<AtomTask {self.id} {self.status.value}>"

    @property
    def is_settled(self) -> bool:
        return self.status.is_settled

    # -- Snapshot ------------------------------------------------------------

    def snapshot(self, ctx: Any = None) -> AtomTaskSnapshot:
        """Current state with every message rendered against the context."""
        ctx = ctx if ctx is not None else self._ctx
        return AtomTaskSnapshot(
            id=self.id,
            status=self.status,
            process_msg=render_message(self.process_msg, ctx),
            success_msg=render_message(self.success_msg, ctx),
            error_msg=render_message(self.error_msg, ctx),
            warning_msg=render_message(self.warning_msg, ctx),
            attempts=self._exec_count,
            error=self._error,
        )

    def failure_message(self, ctx: Any = None) -> str:
        snap = self.snapshot(ctx)
        return snap.error_msg or snap.error or f"AtomTask {self.id} failed"

    # -- Lifecycle -----------------------------------------------------------

    async def run(self, ctx: Any) -> AtomTaskSnapshot:
        """Run the body to a terminal disposition. Allowed once per lifecycle."""
        if self.status != AtomTaskStatus.PENDING:
            raise InvalidTransitionError(f"run atomic task {self.id}", self.status, (AtomTaskStatus.PENDING,))

        generation = self._generation
        self.status = AtomTaskStatus.RUNNING
        self._ctx = ctx
        self._exec_count = 0
        self._error = None

        try:
            returned = await retry(
                lambda abandon: self._attempt(ctx, abandon),
                times=self.options.retry_times,
                delay=self.options.retry_delay,
                token=self._retry_token,
            )
        except Exception as exc:
            outcome = AtomResult.failed(str(exc) or type(exc).__name__)
        else:
            outcome = AtomResult.from_return(returned) or AtomResult.completed()

        if generation != self._generation:
            # reset() started a new lifecycle while this run was in flight
            logger.debug("AtomTask {} finished a superseded run; outcome dropped", self.id)
            return self.snapshot(ctx)

        self.status = outcome.status
        self._error = outcome.reason
        if outcome.status == AtomTaskStatus.FAILED:
            logger.debug("AtomTask {} failed after {} attempt(s): {}", self.id, self._exec_count, outcome.reason)
        else:
            logger.debug("AtomTask {} -> {}", self.id, outcome.status.value)
        return self.snapshot(ctx)

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal the retry loop and the in-flight attempt to stop."""
        self._retry_token.cancel(reason)
        if self._attempt_token is not None:
            self._attempt_token.cancel(reason)

    def reset(self) -> None:
        """Start a new lifecycle so the atomic task can run again."""
        self.cancel("reset")
        self._generation += 1
        self._retry_token = CancelToken()
        self._attempt_token = None
        self._exec_count = 0
        self._error = None
        self.status = AtomTaskStatus.PENDING

    # -- Internal ------------------------------------------------------------

    async def _attempt(self, ctx: Any, abandon: Abandon) -> Any:
        self._exec_count += 1
        token = CancelToken()
        self._attempt_token = token
        try:
            outcome = self._exec(AtomTaskCall(ctx=ctx, signal=token, exec_count=self._exec_count, abandon=abandon))
        except asyncio.CancelledError as exc:
            raise RetryCancelledError("attempt cancelled") from exc
        if not inspect.isawaitable(outcome):
            return outcome

        pending = asyncio.ensure_future(outcome)
        try:
            done, _ = await asyncio.wait({pending}, timeout=self.options.timeout)
        except asyncio.CancelledError:
            pending.cancel()
            raise
        if not done:
            token.cancel("timeout")
            pending.add_done_callback(self._drop_late_outcome)
            logger.warning(
                "AtomTask {} attempt {} timed out after {}s",
                self.id, self._exec_count, self.options.timeout,
            )
            raise AttemptTimeoutError(self.options.timeout)
        if pending.cancelled():
            # the body cancelled itself; counts as a failed attempt
            raise RetryCancelledError("attempt cancelled")
        return pending.result()

    def _drop_late_outcome(self, fut: asyncio.Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.debug("AtomTask {} late attempt raised after timeout: {}", self.id, exc)
