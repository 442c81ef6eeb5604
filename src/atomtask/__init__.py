"""Compose atomic units of work into controllable, observable tasks."""

from .atom_task import AtomTask, AtomTaskCall
from .config import AtomTaskOptions, Settings, TaskOptions, load_settings
from .context import ContextView, TaskContext
from .logging_utils import configure_logging, summarize_snapshot
from .errors import (
    AtomTaskError,
    AtomTaskFailedError,
    AttemptTimeoutError,
    ContextWriteError,
    DrainTimeoutError,
    InvalidTransitionError,
    RetryAbandoned,
    RetryCancelledError,
    TaskCancelledError,
    TaskEndedError,
    TaskFailedError,
    TaskValidationError,
)
from .manager import TaskManager
from .models import (
    AtomResult,
    AtomTaskSnapshot,
    AtomTaskStatus,
    LiteralMessage,
    TaskErrorInfo,
    TaskEvent,
    TaskEventType,
    TaskSnapshot,
    TaskStatus,
    TemplateMessage,
)
from .registry import TaskRegistry
from .task import Task

__version__ = "0.1.0"

__all__ = [
    "AtomResult",
    "AtomTask",
    "AtomTaskCall",
    "AtomTaskError",
    "AtomTaskFailedError",
    "AtomTaskOptions",
    "AtomTaskSnapshot",
    "AtomTaskStatus",
    "AttemptTimeoutError",
    "ContextView",
    "ContextWriteError",
    "DrainTimeoutError",
    "InvalidTransitionError",
    "LiteralMessage",
    "RetryAbandoned",
    "RetryCancelledError",
    "Settings",
    "Task",
    "TaskCancelledError",
    "TaskContext",
    "TaskEndedError",
    "TaskErrorInfo",
    "TaskEvent",
    "TaskEventType",
    "TaskFailedError",
    "TaskManager",
    "TaskOptions",
    "TaskRegistry",
    "TaskSnapshot",
    "TaskStatus",
    "TaskValidationError",
    "TemplateMessage",
    "configure_logging",
    "load_settings",
    "summarize_snapshot",
]
