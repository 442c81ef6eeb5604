"""Create tasks with configured defaults and control them by id.

Every control method looks the task up in the manager's registry and returns
``None`` when the id is unknown or the task was already removed.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from loguru import logger

from .atom_task import AtomTask, AtomTaskExec
from .config import Settings, load_settings
from .logging_utils import configure_logging, summarize_snapshot
from .models import TaskEvent, TaskSnapshot
from .registry import TaskRegistry
from .task import Task


class TaskManager:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[TaskRegistry] = None,
        *,
        configure_log: bool = True,
    ) -> None:
        self.settings = settings or Settings()
        if configure_log:
            configure_logging(self.settings.log_level)
        self.registry = registry if registry is not None else TaskRegistry()
        # tasks stay alive until removed; the registry itself only holds weak refs
        self._owned: dict[str, Task] = {}

    @classmethod
    def from_config(cls, path: Optional[Path] = None, **kwargs: Any) -> "TaskManager":
        """Build a manager from ``atomtask.yaml`` (or *path*)."""
        return cls(load_settings(path), **kwargs)

    # -- Construction --------------------------------------------------------

    def create_task(
        self,
        name: Optional[str] = None,
        atom_tasks: Optional[Sequence[AtomTask]] = None,
        **kwargs: Any,
    ) -> Task:
        """Build a registered task using the configured task defaults.

        Keyword arguments are passed to ``Task``; explicit ones win over
        settings.
        """
        if "options" not in kwargs:
            kwargs["options"] = self.settings.task
        task = Task(name, registry=self.registry, **kwargs)
        if atom_tasks:
            task.set_atom_tasks(list(atom_tasks))
        self._owned[task.id] = task
        task.events.on("remove", lambda _event, task_id=task.id: self._owned.pop(task_id, None))
        task.events.on("complete", self._log_end)
        task.events.on("error", self._log_end)
        logger.debug("Manager created task {} ({})", task.id, name or "unnamed")
        return task

    def atom(self, exec: AtomTaskExec, **kwargs: Any) -> AtomTask:
        """Build an atomic task using the configured retry defaults."""
        kwargs.setdefault("options", self.settings.atom_task)
        return AtomTask(exec, **kwargs)

    # -- Lookup --------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.registry.get(task_id)

    def snapshots(self) -> list[TaskSnapshot]:
        return [task.snapshot() for task in self.registry]

    # -- Control by id -------------------------------------------------------

    def start_task(self, task_id: str) -> Optional[Task]:
        return self._apply(task_id, Task.start)

    async def pause_task(self, task_id: str) -> Optional[bool]:
        task = self.get_task(task_id)
        if task is None:
            return None
        return await task.pause()

    def resume_task(self, task_id: str) -> Optional[Task]:
        return self._apply(task_id, Task.resume)

    def cancel_task(self, task_id: str) -> Optional[Task]:
        return self._apply(task_id, Task.cancel)

    def restart_task(self, task_id: str) -> Optional[Task]:
        return self._apply(task_id, Task.restart)

    def remove_task(self, task_id: str) -> Optional[Task]:
        return self._apply(task_id, Task.remove)

    def _apply(self, task_id: str, action: Callable[[Task], None]) -> Optional[Task]:
        task = self.get_task(task_id)
        if task is None:
            logger.debug("No task with id {}", task_id)
            return None
        action(task)
        return task

    def _log_end(self, event: TaskEvent) -> None:
        logger.info("Task ended: {}", summarize_snapshot(event.snapshot))
