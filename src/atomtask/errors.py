"""Exception hierarchy for task orchestration faults."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, Optional

if TYPE_CHECKING:
    from .models import TaskSnapshot


class AtomTaskError(Exception):
    """Base class for every error raised by atomtask."""


# ---------------------------------------------------------------------------
# Validation faults: raised synchronously, never retried
# ---------------------------------------------------------------------------

class TaskValidationError(AtomTaskError):
    """Malformed input or an operation that is illegal in the current state."""


class InvalidTransitionError(TaskValidationError):
    """A lifecycle operation was attempted from a state that does not allow it."""

    def __init__(self, action: str, current: Any, required: Iterable[Any]) -> None:
        self.action = action
        self.current = current
        self.required = tuple(required)
        wanted = " or ".join(_label(s) for s in self.required)
        super().__init__(
            f"Cannot {action}: task is {_label(current)}, must be {wanted}"
        )


class ContextWriteError(TaskValidationError):
    """Direct attribute assignment on a borrowed context."""


# ---------------------------------------------------------------------------
# Attempt faults: recovered by the retry policy
# ---------------------------------------------------------------------------

class AttemptTimeoutError(AtomTaskError):
    """A single attempt did not finish within its timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"timeout after {timeout:g}s")


class RetryAbandoned(AtomTaskError):
    """Raised by ``abandon()`` inside an attempt to stop any further retries."""

    def __init__(self, reason: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(reason or "retries abandoned")


class RetryCancelledError(AtomTaskError):
    """The retry loop was cancelled through its token."""


# ---------------------------------------------------------------------------
# Terminal and orchestration faults
# ---------------------------------------------------------------------------

class AtomTaskFailedError(AtomTaskError):
    """One or more atomic tasks settled FAILED, failing the owning task."""


class DrainTimeoutError(AtomTaskError):
    """Pause drain did not see all in-flight work settle in time."""


class TaskEndedError(AtomTaskError):
    """Raised from ``wait_for_end()`` when a task does not complete."""

    def __init__(self, message: str, snapshot: Optional["TaskSnapshot"] = None) -> None:
        super().__init__(message)
        self.snapshot = snapshot


class TaskCancelledError(TaskEndedError):
    pass


class TaskFailedError(TaskEndedError):
    pass


def _label(status: Any) -> str:
    name = getattr(status, "name", None) or str(status)
    return name.title()
