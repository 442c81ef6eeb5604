"""Shared key/value context handed to every atomic task of a task."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Iterable, Optional, Sequence, Union

from loguru import logger

from .errors import ContextWriteError, TaskValidationError

if TYPE_CHECKING:
    from .atom_task import AtomTask

AddAtomTasks = Callable[[Sequence["AtomTask"]], Coroutine[Any, Any, None]]
RemoveAtomTasks = Callable[[Iterable[str]], Coroutine[Any, Any, None]]


class TaskContext:
    """Key/value state plus the queue-mutation capabilities of its task.

    Only ``get``/``set``/``get_all`` touch the data; there is no attribute
    storage. ``add_atom_tasks``/``remove_atom_tasks`` schedule the owning
    task's mutation and return the ``asyncio.Task`` doing it, so a body can
    fire and forget; the context keeps the handle alive and logs a failed
    mutation. A body that awaits that handle waits for its own task's pause
    drain, which includes the body itself.
    """

    __slots__ = ("_state", "_add_atom_tasks", "_remove_atom_tasks", "_scheduled")

    def __init__(
        self,
        default_data: Optional[dict[str, Any]] = None,
        *,
        add_atom_tasks: Optional[AddAtomTasks] = None,
        remove_atom_tasks: Optional[RemoveAtomTasks] = None,
    ) -> None:
        object.__setattr__(self, "_state", dict(default_data or {}))
        object.__setattr__(self, "_add_atom_tasks", add_atom_tasks)
        object.__setattr__(self, "_remove_atom_tasks", remove_atom_tasks)
        object.__setattr__(self, "_scheduled", set())

    def __setattr__(self, name: str, value: Any) -> None:
        raise ContextWriteError(f"Direct assignment to ctx.{name} is not allowed. Use ctx.set() instead.")

    def __delattr__(self, name: str) -> None:
        raise ContextWriteError(f"Cannot delete ctx.{name}")

    def __contains__(self, key: Any) -> bool:
        return key in self._state

    def __repr__(self) -> str:
        return f"<TaskContext keys={sorted(map(str, self._state))}>"

    # -- Data ----------------------------------------------------------------

    def set(self, key: Any, value: Any) -> None:
        self._state[key] = value

    def get(self, key: Any, default: Any = None) -> Any:
        return self._state.get(key, default)

    def get_all(self) -> dict[Any, Any]:
        """Shallow copy of every key/value pair."""
        return dict(self._state)

    # -- Capabilities --------------------------------------------------------

    @property
    def is_bound(self) -> bool:
        return self._add_atom_tasks is not None and self._remove_atom_tasks is not None

    def bind_task(self, task: Any) -> None:
        """Inject *task*'s queue mutation methods into this context."""
        add = getattr(task, "add_atom_tasks", None)
        remove = getattr(task, "remove_atom_tasks", None)
        if not callable(add):
            raise TaskValidationError("Task object must have an add_atom_tasks method")
        if not callable(remove):
            raise TaskValidationError("Task object must have a remove_atom_tasks method")
        object.__setattr__(self, "_add_atom_tasks", add)
        object.__setattr__(self, "_remove_atom_tasks", remove)

    def add_atom_tasks(self, atom_tasks: Sequence["AtomTask"]) -> "asyncio.Task[None]":
        if self._add_atom_tasks is None:
            raise TaskValidationError("Context is not bound to a task")
        return self._schedule(self._add_atom_tasks(atom_tasks))

    def remove_atom_tasks(self, ids: Iterable[str]) -> "asyncio.Task[None]":
        if self._remove_atom_tasks is None:
            raise TaskValidationError("Context is not bound to a task")
        return self._schedule(self._remove_atom_tasks(ids))

    def _schedule(self, mutation: Coroutine[Any, Any, None]) -> "asyncio.Task[None]":
        handle = asyncio.ensure_future(mutation)
        self._scheduled.add(handle)
        handle.add_done_callback(self._on_mutation_done)
        return handle

    def _on_mutation_done(self, handle: "asyncio.Task[None]") -> None:
        self._scheduled.discard(handle)
        if handle.cancelled():
            return
        exc = handle.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Atomic task queue mutation failed: {}", exc)


class ContextView:
    """Read-through view of a context borrowed from another task.

    Attribute assignment is rejected; data changes go through ``set()`` and
    the queue capabilities still act on the task that owns the context.
    """

    __slots__ = ("_source",)

    def __init__(self, source: Union[TaskContext, "ContextView"]) -> None:
        if isinstance(source, ContextView):
            source = source._source
        if not isinstance(source, TaskContext):
            raise TaskValidationError(
                f"shared_ctx must be a TaskContext, got {type(source).__name__}"
            )
        object.__setattr__(self, "_source", source)

    def __setattr__(self, name: str, value: Any) -> None:
        raise ContextWriteError(f"Direct assignment to ctx.{name} is not allowed. Use ctx.set() instead.")

    def __delattr__(self, name: str) -> None:
        raise ContextWriteError(f"Cannot delete ctx.{name}")

    def __contains__(self, key: Any) -> bool:
        return key in self._source

    def __repr__(self) -> str:
        return f"<ContextView of {self._source!r}>"

    def set(self, key: Any, value: Any) -> None:
        self._source.set(key, value)

    def get(self, key: Any, default: Any = None) -> Any:
        return self._source.get(key, default)

    def get_all(self) -> dict[Any, Any]:
        return self._source.get_all()

    @property
    def is_bound(self) -> bool:
        return self._source.is_bound

    def add_atom_tasks(self, atom_tasks: Sequence["AtomTask"]) -> "asyncio.Task[None]":
        return self._source.add_atom_tasks(atom_tasks)

    def remove_atom_tasks(self, ids: Iterable[str]) -> "asyncio.Task[None]":
        return self._source.remove_atom_tasks(ids)
