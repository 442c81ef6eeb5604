"""Weak id to Task index owned by the host application.

The registry never keeps a task alive. A task registers itself when it is
constructed with a registry and unregisters exactly when it is removed.
"""

from __future__ import annotations

import weakref
from typing import TYPE_CHECKING, Iterator, Optional

from loguru import logger

from .errors import TaskValidationError

if TYPE_CHECKING:
    from .task import Task


class TaskRegistry:
    def __init__(self) -> None:
        self._tasks: "weakref.WeakValueDictionary[str, Task]" = weakref.WeakValueDictionary()

    def register(self, task: "Task") -> None:
        existing = self._tasks.get(task.id)
        if existing is not None and existing is not task:
            raise TaskValidationError(f"Task id '{task.id}' is already registered")
        self._tasks[task.id] = task
        logger.debug("Registered task {}", task.id)

    def unregister(self, task_id: str) -> None:
        if self._tasks.pop(task_id, None) is not None:
            logger.debug("Unregistered task {}", task_id)

    def get(self, task_id: str) -> Optional["Task"]:
        """Return the task, or ``None`` if unknown or already removed."""
        return self._tasks.get(task_id)

    def ids(self) -> list[str]:
        return list(self._tasks.keys())

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator["Task"]:
        return iter(list(self._tasks.values()))
