"""Drive a collection of atomic tasks through one task lifecycle.

State machine::

    PENDING --start--> RUNNING
    RUNNING --pause--> PAUSING --(drain)--> PAUSED
    PAUSED  --resume--> RUNNING
    {PENDING, RUNNING, PAUSED} --cancel--> CANCEL
    {FAILED, CANCEL} --restart--> RUNNING        (re-runs every atomic task)
    RUNNING --(all settled, none failed)--> COMPLETED
    RUNNING --(any settled failed)--> FAILED
    RUNNING --failed()--> FAILED
    RUNNING --complete()--> COMPLETED
    {CANCEL, FAILED, COMPLETED} --remove--> REMOVED

Atomic tasks are admitted through a bounded limiter in submission order and
may settle in any order. Progress only credits COMPLETED atomic tasks; a
WARNING atomic task neither fails the task nor counts towards ``percent``.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Iterable, Optional, Sequence, Union

from loguru import logger

from .atom_task import AtomTask
from .config import TaskOptions, coerce_options
from .context import ContextView, TaskContext
from .errors import (
    AtomTaskFailedError,
    DrainTimeoutError,
    InvalidTransitionError,
    TaskCancelledError,
    TaskEndedError,
    TaskFailedError,
    TaskValidationError,
)
from .models import (
    AtomTaskSnapshot,
    AtomTaskStatus,
    TaskErrorInfo,
    TaskEvent,
    TaskEventType,
    TaskSnapshot,
    TaskStatus,
)
from .registry import TaskRegistry
from .runtime.events import EventEmitter
from .runtime.limiter import ConcurrencyLimiter
from .utils import generate_id, now_iso, wait_until

_ACTIVE = (TaskStatus.RUNNING, TaskStatus.PAUSING, TaskStatus.PAUSED)


class Task:
    """Orchestrating unit owning atomic tasks, a limiter and a context.

    Usage::

        task = Task("import", concurrency=4, default_ctx_data={"rows": 0})
        task.set_atom_tasks([AtomTask(load_chunk, id=f"chunk-{i}") for i in range(10)])
        task.events.on("progress", lambda e: print(e.percent))
        task.start()
        snapshot = await task.wait_for_end()
    """

    def __init__(
        self,
        name: Optional[str] = None,
        *,
        id: Optional[str] = None,
        description: Optional[str] = None,
        ext_info: Any = None,
        options: Union[TaskOptions, dict[str, Any], None] = None,
        concurrency: Optional[int] = None,
        default_ctx_data: Optional[dict[str, Any]] = None,
        shared_ctx: Union[TaskContext, ContextView, None] = None,
        registry: Optional[TaskRegistry] = None,
    ) -> None:
        self.options = coerce_options(
            TaskOptions,
            options,
            concurrency=concurrency,
            default_ctx_data=default_ctx_data,
            shared_ctx=shared_ctx,
        )
        self.id = id or generate_id(24)
        self.name = name
        self.description = description
        self.ext_info = ext_info
        self.created_at = now_iso()
        self.completed_at: Optional[str] = None
        self.status = TaskStatus.PENDING
        self.percent = 0.0
        self.error: Optional[TaskErrorInfo] = None
        self.task_msg: Optional[str] = None
        self.events: EventEmitter[TaskEvent] = EventEmitter()

        self._atom_tasks: list[AtomTask] = []
        self._limiter = ConcurrencyLimiter(self.options.concurrency)
        self._epoch = 0

        self._ctx: Union[TaskContext, ContextView]
        if self.options.shared_ctx is not None:
            self._ctx = ContextView(self.options.shared_ctx)
        else:
            self._ctx = TaskContext(self.options.default_ctx_data)
            self._ctx.bind_task(self)

        self._mutation_lock = asyncio.Lock()
        self._end = asyncio.Event()
        self._outcome: Union[TaskSnapshot, TaskEndedError, None] = None

        self._registry = registry
        if registry is not None:
            registry.register(self)

    def __repr__(self) -> str:
        return f"<Task {self.id} {self.status.value} {self.percent:.0f}%>"

    # -- Properties ----------------------------------------------------------

    @property
    def ctx(self) -> Union[TaskContext, ContextView]:
        return self._ctx

    @property
    def atom_tasks(self) -> tuple[AtomTask, ...]:
        return tuple(self._atom_tasks)

    @property
    def concurrency(self) -> int:
        return self._limiter.concurrency

    @property
    def running_count(self) -> int:
        """Atomic tasks currently holding a limiter slot."""
        return self._limiter.active_count

    # -- Snapshot ------------------------------------------------------------

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            id=self.id,
            name=self.name,
            description=self.description,
            status=self.status,
            percent=self.percent,
            created_at=self.created_at,
            completed_at=self.completed_at,
            ext_info=self.ext_info,
            error=self.error,
            task_msg=self.task_msg,
            atom_tasks=tuple(a.snapshot(self._ctx) for a in self._atom_tasks),
            state=self._ctx.get_all(),
        )

    async def wait_for_end(self) -> TaskSnapshot:
        """Wait for the completion handle.

        Returns the snapshot taken on COMPLETED; raises ``TaskCancelledError``
        or ``TaskFailedError`` when the task was cancelled or failed first.
        """
        await self._end.wait()
        if isinstance(self._outcome, TaskEndedError):
            raise self._outcome
        return self._outcome

    # -- Simple setters ------------------------------------------------------

    def update_ext_info(self, info: Any) -> None:
        self.ext_info = info

    def set_task_msg(self, msg: Optional[str] = None) -> None:
        self.task_msg = msg

    def set_percent(self, percent: float) -> None:
        if not 0 <= percent <= 100:
            raise TaskValidationError(f"percent must be within [0, 100], got {percent}")
        self._set_percent(float(percent))

    # -- Queue mutation ------------------------------------------------------

    def set_atom_tasks(self, atom_tasks: Sequence[AtomTask]) -> None:
        """Replace the atomic task collection before the task starts."""
        self._require("set atomic tasks", TaskStatus.PENDING)
        self._atom_tasks = self._validate_atoms(atom_tasks)

    async def add_atom_tasks(self, atom_tasks: Sequence[AtomTask]) -> None:
        """Append atomic tasks.

        While RUNNING the task pauses (full drain), appends, then resumes.
        Concurrent mutations wait for the current pause/mutate/resume cycle.
        """
        self._validate_atoms(atom_tasks, existing=self._atom_tasks)
        async with self._mutation_lock:
            if self.status == TaskStatus.PENDING:
                self._atom_tasks.extend(self._validate_atoms(atom_tasks, existing=self._atom_tasks))
            elif self.status == TaskStatus.RUNNING:
                await self.pause()
                self._atom_tasks.extend(self._validate_atoms(atom_tasks, existing=self._atom_tasks))
                logger.debug("Task {} added {} atomic task(s)", self.id, len(atom_tasks))
                self.resume()
            else:
                raise InvalidTransitionError(
                    "add atomic tasks", self.status, (TaskStatus.PENDING, TaskStatus.RUNNING)
                )

    async def remove_atom_tasks(self, ids: Iterable[str]) -> None:
        """Remove atomic tasks that are still PENDING.

        Ids of running or settled atomic tasks are silently kept. While
        RUNNING the task pauses first, so anything that started during the
        drain is kept as well.
        """
        if isinstance(ids, (str, bytes)) or not isinstance(ids, (list, tuple, set, frozenset)):
            raise TaskValidationError(f"ids must be a list of atomic task ids, got {type(ids).__name__}")
        wanted = set(ids)
        async with self._mutation_lock:
            if self.status == TaskStatus.PENDING:
                self._drop_pending(wanted)
            elif self.status == TaskStatus.RUNNING:
                await self.pause()
                self._drop_pending(wanted)
                self.resume()
            else:
                raise InvalidTransitionError(
                    "remove atomic tasks", self.status, (TaskStatus.PENDING, TaskStatus.RUNNING)
                )

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        self._require("start", TaskStatus.PENDING)
        self._require_loop()
        self._epoch += 1
        self.status = TaskStatus.RUNNING
        logger.info("Task {} started with {} atomic task(s)", self.id, len(self._atom_tasks))
        self._emit(TaskEventType.START)
        self._dispatch()

    async def pause(self) -> bool:
        """Stop admitting work and wait for in-flight atomic tasks to settle.

        Queued atomic tasks go back to PENDING and run again on ``resume()``.
        The task always ends up PAUSED; ``DrainTimeoutError`` is raised if
        the drain exceeded ``drain_timeout``.
        """
        self._require("pause", TaskStatus.RUNNING)
        self.status = TaskStatus.PAUSING
        self._limiter.clear_queue()
        logger.debug("Task {} pausing, {} atomic task(s) in flight", self.id, self._limiter.active_count)
        try:
            await wait_until(
                lambda: self._limiter.active_count < 1,
                timeout=self.options.drain_timeout,
                interval=self.options.drain_poll_interval,
            )
        except asyncio.TimeoutError as exc:
            raise DrainTimeoutError(
                f"Task {self.id}: {self._limiter.active_count} atomic task(s) still running "
                f"after {self.options.drain_timeout:g}s"
            ) from exc
        finally:
            if self.status == TaskStatus.PAUSING:
                self.status = TaskStatus.PAUSED
                logger.info("Task {} paused", self.id)
                self._emit(TaskEventType.PAUSE)
        return True

    def resume(self) -> None:
        self._require("resume", TaskStatus.PAUSED)
        self._require_loop()
        self.status = TaskStatus.RUNNING
        logger.info("Task {} resumed", self.id)
        self._emit(TaskEventType.RESUME)
        self._dispatch()

    def cancel(self) -> None:
        self._require("cancel", TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.PAUSED)
        self._limiter.clear_queue()
        self._signal_running("task cancelled")
        self.status = TaskStatus.CANCEL
        logger.info("Task {} cancelled", self.id)
        snapshot = self._emit(TaskEventType.CANCEL)
        self._settle_end(TaskCancelledError(f"Task {self.id} was cancelled", snapshot))

    def restart(self) -> None:
        """Run every atomic task again, including ones that had completed."""
        self._require("restart", TaskStatus.FAILED, TaskStatus.CANCEL)
        self._require_loop()
        self._epoch += 1
        # bodies of the previous run that ignore their signal keep their slots
        self._limiter.clear_queue()
        for atom in self._atom_tasks:
            atom.reset()
        self.error = None
        self.task_msg = None
        self.completed_at = None
        self.status = TaskStatus.RUNNING
        logger.info("Task {} restarted", self.id)
        self._emit(TaskEventType.RESTART)
        self._set_percent(0.0)
        self._dispatch()

    def failed(self, error: Union[BaseException, str]) -> None:
        self._require("fail", TaskStatus.RUNNING)
        exc = error if isinstance(error, BaseException) else Exception(str(error))
        self.status = TaskStatus.FAILED
        self.error = TaskErrorInfo.from_exception(exc)
        self.task_msg = self.error.message
        self._limiter.clear_queue()
        logger.warning("Task {} failed: {}", self.id, self.error.message)
        snapshot = self._emit(TaskEventType.ERROR, error=exc)
        self._settle_end(TaskFailedError(self.error.message, snapshot))

    def complete(self) -> None:
        self._require("complete", TaskStatus.RUNNING)
        self._set_percent(100.0)
        self.status = TaskStatus.COMPLETED
        self.completed_at = now_iso()
        self._limiter.clear_queue()
        logger.info("Task {} completed", self.id)
        snapshot = self._emit(TaskEventType.COMPLETE)
        self._settle_end(snapshot)

    def remove(self) -> None:
        self._require("remove", TaskStatus.CANCEL, TaskStatus.FAILED, TaskStatus.COMPLETED)
        self._limiter.clear_queue()
        self._signal_running("task removed")
        self.status = TaskStatus.REMOVED
        if self._registry is not None:
            self._registry.unregister(self.id)
        logger.info("Task {} removed", self.id)
        self._emit(TaskEventType.REMOVE)
        self._clear_listeners_later()

    # -- Scheduling ----------------------------------------------------------

    def _dispatch(self) -> None:
        """Submit every PENDING atomic task to the limiter."""
        if not self._atom_tasks:
            # nothing to run; the caller settles the task with complete()/failed()
            return
        if any(a.status == AtomTaskStatus.FAILED for a in self._atom_tasks):
            # an atomic task failed while the task was pausing
            self._maybe_finish()
            return

        first_msg = self._atom_tasks[0].snapshot(self._ctx).process_msg
        if first_msg:
            self.task_msg = first_msg

        epoch = self._epoch
        pending = [a for a in self._atom_tasks if a.status == AtomTaskStatus.PENDING]
        for atom in pending:
            future = self._limiter.submit(functools.partial(self._run_atom, epoch, atom))
            future.add_done_callback(functools.partial(self._on_atom_done, epoch, atom))
        logger.debug(
            "Task {} dispatched {} atomic task(s) (concurrency={})",
            self.id, len(pending), self._limiter.concurrency,
        )
        if not pending:
            self._maybe_finish()

    async def _run_atom(self, epoch: int, atom: AtomTask) -> AtomTaskSnapshot:
        snap = await atom.run(self._ctx)
        if snap.status == AtomTaskStatus.FAILED and epoch == self._epoch and self.status == TaskStatus.RUNNING:
            # before the limiter hands this slot on to queued work
            self._limiter.clear_queue()
        return snap

    def _on_atom_done(self, epoch: int, atom: AtomTask, future: asyncio.Future) -> None:
        if self.status not in _ACTIVE:
            return
        if epoch != self._epoch or future.cancelled():
            # a superseded run released its slot, or the submission never ran
            self._maybe_finish()
            return
        exc = future.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Task {}: atomic task {} crashed", self.id, atom.id)
        else:
            snap = future.result()
            if snap.status == AtomTaskStatus.COMPLETED:
                self.task_msg = snap.success_msg or self.task_msg
            elif snap.status == AtomTaskStatus.FAILED:
                self.task_msg = snap.error_msg or self.task_msg
        self._refresh_percent()
        self._maybe_finish()

    def _maybe_finish(self) -> None:
        if self.status != TaskStatus.RUNNING:
            return
        failed = [a for a in self._atom_tasks if a.status == AtomTaskStatus.FAILED]
        if failed:
            # in-flight siblings keep running; their outcomes are ignored
            message = ", ".join(a.failure_message(self._ctx) for a in failed)
            self.failed(AtomTaskFailedError(message))
        elif self._limiter.active_count or self._limiter.pending_count:
            return
        elif self._atom_tasks and all(a.is_settled for a in self._atom_tasks):
            self.complete()

    def _refresh_percent(self) -> None:
        total = len(self._atom_tasks)
        if not total:
            return
        done = sum(1 for a in self._atom_tasks if a.status == AtomTaskStatus.COMPLETED)
        self._set_percent(max(self.percent, 100.0 * done / total))

    # -- Internal ------------------------------------------------------------

    def _require(self, action: str, *allowed: TaskStatus) -> None:
        if self.status not in allowed:
            raise InvalidTransitionError(action, self.status, allowed)

    def _require_loop(self) -> None:
        if not self._atom_tasks:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            raise TaskValidationError("Running atomic tasks requires a running event loop") from None

    def _validate_atoms(self, atom_tasks: Any, existing: Sequence[AtomTask] = ()) -> list[AtomTask]:
        if not isinstance(atom_tasks, (list, tuple)):
            raise TaskValidationError(f"atom_tasks must be a list, got {type(atom_tasks).__name__}")
        seen = {a.id for a in existing}
        for atom in atom_tasks:
            if not isinstance(atom, AtomTask):
                raise TaskValidationError(f"Expected AtomTask, got {type(atom).__name__}")
            if atom.id in seen:
                raise TaskValidationError(f"Duplicate atomic task id '{atom.id}'")
            seen.add(atom.id)
        return list(atom_tasks)

    def _drop_pending(self, ids: set[str]) -> None:
        before = len(self._atom_tasks)
        self._atom_tasks = [
            a for a in self._atom_tasks
            if a.id not in ids or a.status != AtomTaskStatus.PENDING
        ]
        logger.debug("Task {} removed {} pending atomic task(s)", self.id, before - len(self._atom_tasks))

    def _signal_running(self, reason: str) -> None:
        for atom in self._atom_tasks:
            if atom.status == AtomTaskStatus.RUNNING:
                atom.cancel(reason)

    def _set_percent(self, percent: float) -> None:
        if percent == self.percent:
            return
        self.percent = percent
        self._emit(TaskEventType.PROGRESS, percent=percent)

    def _emit(self, kind: TaskEventType, **extra: Any) -> TaskSnapshot:
        snapshot = self.snapshot()
        self.events.emit(kind, TaskEvent(type=kind, snapshot=snapshot, **extra))
        return snapshot

    def _settle_end(self, outcome: Union[TaskSnapshot, TaskEndedError]) -> None:
        if self._end.is_set():
            logger.debug("Task {} completion handle already settled; ignoring", self.id)
            return
        self._outcome = outcome
        self._end.set()

    def _clear_listeners_later(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop to defer on; delivery above was synchronous
            self.events.clear()
            return
        loop.call_later(self.options.listener_grace, self.events.clear)
