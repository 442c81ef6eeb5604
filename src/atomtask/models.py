"""Data model for tasks and atomic tasks.

Statuses, message variants, the unified atomic-task result type, immutable
snapshots and the event payload all live here so that the orchestration
modules only deal with behaviour.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from loguru import logger

from .errors import TaskValidationError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AtomTaskStatus(str, Enum):
    """Lifecycle of a single unit of work."""

    PENDING = "pending"
    RUNNING = "running"
    WARNING = "warning"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_settled(self) -> bool:
        return self in (AtomTaskStatus.WARNING, AtomTaskStatus.COMPLETED, AtomTaskStatus.FAILED)


class TaskStatus(str, Enum):
    """Lifecycle of an orchestrating task."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSING = "pausing"  # waiting for in-flight atomic tasks to drain
    PAUSED = "paused"
    CANCEL = "cancel"
    COMPLETED = "completed"
    FAILED = "failed"
    REMOVED = "removed"


class TaskEventType(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    RESTART = "restart"
    ERROR = "error"
    COMPLETE = "complete"
    REMOVE = "remove"
    PROGRESS = "progress"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LiteralMessage:
    text: str

    def render(self, ctx: Any) -> str:
        return self.text


@dataclass(frozen=True)
class TemplateMessage:
    """Message computed from the current context when a snapshot is read."""

    fn: Callable[[Any], Any]

    def render(self, ctx: Any) -> str:
        if ctx is None:
            return ""
        try:
            value = self.fn(ctx)
        except Exception as exc:
            logger.warning("Message template {!r} failed: {}", self.fn, exc)
            return ""
        return "" if value is None else str(value)


Message = Union[LiteralMessage, TemplateMessage]


def as_message(value: Any) -> Optional[Message]:
    """Coerce a plain string or callable into a message variant."""
    if value is None or isinstance(value, (LiteralMessage, TemplateMessage)):
        return value
    if isinstance(value, str):
        return LiteralMessage(value)
    if callable(value):
        return TemplateMessage(value)
    raise TaskValidationError(
        f"Message must be a string or a callable taking the context, got {type(value).__name__}"
    )


def render_message(message: Optional[Message], ctx: Any) -> str:
    if message is None:
        return ""
    return message.render(ctx)


# ---------------------------------------------------------------------------
# Atomic task result
# ---------------------------------------------------------------------------

_TERMINAL_RESULTS = (AtomTaskStatus.COMPLETED, AtomTaskStatus.WARNING, AtomTaskStatus.FAILED)


@dataclass(frozen=True)
class AtomResult:
    """Explicit disposition returned by an atomic task body."""

    status: AtomTaskStatus
    reason: Optional[str] = None

    def __post_init__(self) -> None:
        if self.status not in _TERMINAL_RESULTS:
            raise TaskValidationError(f"AtomResult status must be terminal, got {self.status.value}")

    @classmethod
    def completed(cls) -> "AtomResult":
        return cls(AtomTaskStatus.COMPLETED)

    @classmethod
    def warning(cls, reason: Optional[str] = None) -> "AtomResult":
        return cls(AtomTaskStatus.WARNING, reason)

    @classmethod
    def failed(cls, reason: Optional[str] = None) -> "AtomResult":
        return cls(AtomTaskStatus.FAILED, reason)

    @classmethod
    def from_return(cls, value: Any) -> Optional["AtomResult"]:
        """Map a body's return value onto a disposition.

        ``None`` and unrecognised values mean "no explicit disposition".
        """
        if isinstance(value, AtomResult):
            return value
        if isinstance(value, AtomTaskStatus) and value in _TERMINAL_RESULTS:
            return cls(value)
        return None


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AtomTaskSnapshot:
    id: str
    status: AtomTaskStatus
    process_msg: str = ""
    success_msg: str = ""
    error_msg: str = ""
    warning_msg: str = ""
    attempts: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class TaskErrorInfo:
    name: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "TaskErrorInfo":
        return cls(name=type(exc).__name__, message=str(exc))


@dataclass(frozen=True)
class TaskSnapshot:
    """Point-in-time view of a task, safe to hand to listeners."""

    id: str
    status: TaskStatus
    percent: float
    created_at: str
    name: Optional[str] = None
    description: Optional[str] = None
    completed_at: Optional[str] = None
    ext_info: Any = None
    error: Optional[TaskErrorInfo] = None
    task_msg: Optional[str] = None
    atom_tasks: tuple[AtomTaskSnapshot, ...] = ()
    state: dict[str, Any] = field(default_factory=dict)

    def atom(self, atom_id: str) -> Optional[AtomTaskSnapshot]:
        for item in self.atom_tasks:
            if item.id == atom_id:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "percent": self.percent,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "ext_info": self.ext_info,
            "error": asdict(self.error) if self.error else None,
            "task_msg": self.task_msg,
            "atom_tasks": [a.to_dict() for a in self.atom_tasks],
            "state": dict(self.state),
        }


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TaskEvent:
    """Payload delivered to task event listeners."""

    type: TaskEventType
    snapshot: TaskSnapshot
    percent: Optional[float] = None
    error: Optional[BaseException] = None
