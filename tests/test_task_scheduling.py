"""Tests for how a running task schedules and settles its atomic tasks."""

import asyncio

import pytest
from loguru import logger

from atomtask.atom_task import AtomTask
from atomtask.errors import (
    ContextWriteError,
    DrainTimeoutError,
    InvalidTransitionError,
    TaskCancelledError,
    TaskFailedError,
)
from atomtask.models import AtomResult, AtomTaskStatus, TaskEventType, TaskStatus
from atomtask.task import Task

FAST = {"retry_times": 0, "retry_delay": 0, "timeout": 5}
QUICK_DRAIN = {"drain_poll_interval": 0.01, "drain_timeout": 5}


def make_atom(body, **kwargs):
    kwargs.setdefault("options", FAST)
    return AtomTask(body, **kwargs)


def sleeper(delay, result=None, log=None, name=None):
    async def body(call):
        if log is not None:
            log.append(name)
        await asyncio.sleep(delay)
        return result
    return body


def make_task(atoms, **kwargs):
    options = dict(QUICK_DRAIN)
    options.update(kwargs.pop("options", {}))
    task = Task(options=options, **kwargs)
    task.set_atom_tasks(atoms)
    return task


class TestTaskCompletion:
    def test_runs_all_atoms_and_completes(self):
        log = []
        atoms = [make_atom(sleeper(0.01, log=log, name=i), id=f"a{i}") for i in range(3)]
        task = make_task(atoms, name="batch")

        async def scenario():
            task.start()
            return await task.wait_for_end()

        snap = asyncio.run(scenario())
        assert snap.status == TaskStatus.COMPLETED
        assert snap.percent == 100
        assert log == [0, 1, 2]
        assert all(a.status == AtomTaskStatus.COMPLETED for a in snap.atom_tasks)

    @pytest.mark.parametrize("concurrency", [1, 2, 3])
    def test_concurrency_bound(self, concurrency):
        state = {"active": 0, "peak": 0}

        async def body(call):
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await asyncio.sleep(0.02)
            state["active"] -= 1

        task = make_task([make_atom(body) for _ in range(6)], concurrency=concurrency)

        async def scenario():
            task.start()
            await task.wait_for_end()

        asyncio.run(scenario())
        assert state["peak"] == concurrency

    def test_percent_is_monotonic(self):
        percents = []
        atoms = [make_atom(sleeper(0.005 * (4 - i))) for i in range(4)]
        task = make_task(atoms, concurrency=2)
        task.events.on("progress", lambda e: percents.append(e.percent))

        async def scenario():
            task.start()
            await task.wait_for_end()

        asyncio.run(scenario())
        assert percents == sorted(percents)
        assert percents == [25, 50, 75, 100]

    def test_events_fire_once_in_order(self):
        kinds = []
        task = make_task([make_atom(sleeper(0.01))])
        task.events.on("*", lambda e: kinds.append(e.type))

        async def scenario():
            task.start()
            await task.wait_for_end()

        asyncio.run(scenario())
        assert kinds == [TaskEventType.START, TaskEventType.PROGRESS, TaskEventType.COMPLETE]

    def test_warning_does_not_fail_task(self):
        atoms = [
            make_atom(lambda call: AtomResult.warning("skipped"), id="warn"),
            make_atom(lambda call: None, id="ok"),
        ]
        task = make_task(atoms)

        async def scenario():
            task.start()
            return await task.wait_for_end()

        snap = asyncio.run(scenario())
        assert snap.status == TaskStatus.COMPLETED
        assert snap.atom("warn").status == AtomTaskStatus.WARNING
        assert snap.percent == 100

    def test_success_message_becomes_task_msg(self):
        task = make_task([make_atom(lambda call: None, process_msg="working", success_msg="all good")])

        async def scenario():
            task.start()
            assert task.task_msg == "working"
            return await task.wait_for_end()

        assert asyncio.run(scenario()).task_msg == "all good"
    def test_warning_keeps_previous_task_msg(self):
        task = make_task([make_atom(lambda call: AtomResult.warning(), process_msg="working", warning_msg="careful")])

        async def scenario():
            task.start()
            return await task.wait_for_end()

        assert asyncio.run(scenario()).task_msg == "working"

    def test_shared_context_accumulates(self):
        def bump(call):
            call.ctx.set("count", call.ctx.get("count") + 1)

        task = make_task([make_atom(bump) for _ in range(3)], default_ctx_data={"count": 0})

        async def scenario():
            task.start()
            return await task.wait_for_end()

        assert asyncio.run(scenario()).state == {"count": 3}

    def test_sequential_tasks(self):
        order = []

        def record(label):
            return make_atom(sleeper(0.005, log=order, name=label))

        async def scenario():
            for n in range(3):
                task = make_task([record(f"t{n}-a"), record(f"t{n}-b")])
                task.start()
                await task.wait_for_end()

        asyncio.run(scenario())
        assert order == ["t0-a", "t0-b", "t1-a", "t1-b", "t2-a", "t2-b"]


class TestTaskFailure:
    def test_warning_plus_failure_fails_task(self):
        atoms = [
            make_atom(lambda call: AtomResult.warning(), id="warn"),
            make_atom(lambda call: AtomResult.failed(), id="bad", error_msg="disk full"),
        ]
        task = make_task(atoms)

        async def scenario():
            task.start()
            with pytest.raises(TaskFailedError, match="disk full") as info:
                await task.wait_for_end()
            return info.value.snapshot

        snap = asyncio.run(scenario())
        assert snap.status == TaskStatus.FAILED
        assert snap.atom("warn").status == AtomTaskStatus.WARNING
        assert snap.atom("bad").status == AtomTaskStatus.FAILED
        assert task.error.name == "AtomTaskFailedError"

    def test_failure_message_joins_every_failed_atom(self):
        gate = {}

        async def broken(call):
            await gate["event"].wait()
            raise RuntimeError("io")

        atoms = [
            make_atom(broken, id="a", error_msg="a broke"),
            make_atom(broken, id="b", error_msg="b broke"),
        ]
        task = make_task(atoms, concurrency=2)

        async def scenario():
            gate["event"] = asyncio.Event()
            task.start()
            await asyncio.sleep(0.01)
            gate["event"].set()
            with pytest.raises(TaskFailedError):
                await task.wait_for_end()

        asyncio.run(scenario())
        assert task.error.message == "a broke, b broke"

    def test_failure_stops_admitting_new_work(self):
        ran = []
        atoms = [
            make_atom(lambda call: AtomResult.failed("nope"), id="bad"),
            make_atom(lambda call: ran.append("late"), id="late"),
        ]
        task = make_task(atoms, concurrency=1)

        async def scenario():
            task.start()
            with pytest.raises(TaskFailedError, match="nope"):
                await task.wait_for_end()

        asyncio.run(scenario())
        assert ran == []
        assert task.snapshot().atom("late").status == AtomTaskStatus.PENDING

    def test_error_event_fires_once(self):
        errors = []
        task = make_task([make_atom(lambda call: AtomResult.failed("x"))])
        task.events.on("error", errors.append)

        async def scenario():
            task.start()
            with pytest.raises(TaskFailedError):
                await task.wait_for_end()

        asyncio.run(scenario())
        assert len(errors) == 1
        assert str(errors[0].error) == "x"

    def test_restart_reruns_completed_atoms(self):
        runs = {"ok": 0, "flaky": 0}

        def ok(call):
            runs["ok"] += 1

        def flaky(call):
            runs["flaky"] += 1
            if runs["flaky"] == 1:
                return AtomResult.failed("first time")

        task = make_task([make_atom(ok, id="ok"), make_atom(flaky, id="flaky")])
        kinds = []
        task.events.on("*", lambda e: kinds.append(e.type))

        async def scenario():
            task.start()
            with pytest.raises(TaskFailedError):
                await task.wait_for_end()
            task.restart()
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert runs == {"ok": 2, "flaky": 2}
        assert task.status == TaskStatus.COMPLETED
        assert task.percent == 100
        assert TaskEventType.RESTART in kinds
        assert kinds[-1] == TaskEventType.COMPLETE
    def test_self_cancelling_body_fails_task(self):
        async def body(call):
            raise asyncio.CancelledError()

        task = make_task([make_atom(body, id="quitter")])

        async def scenario():
            task.start()
            with pytest.raises(TaskFailedError, match="attempt cancelled"):
                await asyncio.wait_for(task.wait_for_end(), timeout=1)

        asyncio.run(scenario())
        assert task.status == TaskStatus.FAILED
        assert task.snapshot().atom("quitter").status == AtomTaskStatus.FAILED

    def test_fails_without_waiting_for_siblings(self):
        atoms = [
            make_atom(sleeper(0.5), id="slow"),
            make_atom(lambda call: AtomResult.failed("boom"), id="bad"),
        ]
        task = make_task(atoms, concurrency=2)

        async def scenario():
            task.start()
            await asyncio.sleep(0.05)
            assert task.status == TaskStatus.FAILED
            assert task.snapshot().atom("slow").status == AtomTaskStatus.RUNNING
            with pytest.raises(TaskFailedError, match="boom"):
                await asyncio.wait_for(task.wait_for_end(), timeout=0.1)
            with pytest.raises(InvalidTransitionError):
                await task.pause()
            with pytest.raises(InvalidTransitionError):
                task.cancel()

        asyncio.run(scenario())
        assert task.error.message == "boom"


class TestTaskCancellation:
    def test_cancel_signals_running_atoms(self):
        reasons = []

        async def body(call):
            await call.signal.wait()
            reasons.append(call.signal.reason)

        task = make_task([make_atom(body), make_atom(body)])

        async def scenario():
            task.start()
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(TaskCancelledError):
                await task.wait_for_end()
            await asyncio.sleep(0.01)

        asyncio.run(scenario())
        assert task.status == TaskStatus.CANCEL
        assert reasons == ["task cancelled"]

    def test_late_outcomes_are_ignored_after_cancel(self):
        task = make_task([make_atom(sleeper(0.02))])

        async def scenario():
            task.start()
            await asyncio.sleep(0.005)
            task.cancel()
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert task.status == TaskStatus.CANCEL
        assert task.percent == 0
    def test_restart_keeps_concurrency_bound_with_stubborn_bodies(self):
        state = {"active": 0, "peak": 0}

        async def stubborn(call):
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await asyncio.sleep(0.05)
            state["active"] -= 1

        task = make_task([make_atom(stubborn, id="a"), make_atom(stubborn, id="b")], concurrency=1)
        kinds = []
        task.events.on("*", lambda e: kinds.append(e.type))

        async def scenario():
            task.start()
            await asyncio.sleep(0.01)
            task.cancel()
            task.restart()
            await asyncio.sleep(0.4)

        asyncio.run(scenario())
        assert state["peak"] == 1
        assert task.status == TaskStatus.COMPLETED
        assert kinds[-1] == TaskEventType.COMPLETE


class TestPauseAndQueueMutation:
    def test_pause_drains_then_resume_continues(self):
        atoms = [make_atom(sleeper(0.05), id="a"), make_atom(sleeper(0.01), id="b"), make_atom(sleeper(0.01), id="c")]
        task = make_task(atoms, concurrency=1)

        async def scenario():
            task.start()
            await asyncio.sleep(0.01)
            await task.pause()
            paused = task.snapshot()
            task.resume()
            done = await task.wait_for_end()
            return paused, done

        paused, done = asyncio.run(scenario())
        assert paused.status == TaskStatus.PAUSED
        assert paused.atom("a").status == AtomTaskStatus.COMPLETED
        assert paused.atom("b").status == AtomTaskStatus.PENDING
        assert paused.atom("c").status == AtomTaskStatus.PENDING
        assert done.status == TaskStatus.COMPLETED

    def test_drain_timeout_still_pauses(self):
        task = make_task([make_atom(sleeper(1))], options={"drain_timeout": 0.05})

        async def scenario():
            task.start()
            await asyncio.sleep(0.01)
            with pytest.raises(DrainTimeoutError):
                await task.pause()
            assert task.status == TaskStatus.PAUSED
            task.cancel()

        asyncio.run(scenario())
        assert task.status == TaskStatus.CANCEL

    def test_remove_pending_atoms_while_running(self):
        log = []
        atoms = [
            make_atom(sleeper(0.05, log=log, name="A"), id="A"),
            make_atom(sleeper(0.01, log=log, name="B"), id="B"),
            make_atom(sleeper(0.01, log=log, name="C"), id="C"),
        ]
        task = make_task(atoms, concurrency=1)
        kinds = []
        task.events.on("*", lambda e: kinds.append(e.type))

        async def scenario():
            task.start()
            await asyncio.sleep(0.01)
            await task.remove_atom_tasks(["A", "B", "C"])
            return await task.wait_for_end()

        snap = asyncio.run(scenario())
        assert [a.id for a in snap.atom_tasks] == ["A"]
        assert log == ["A"]
        assert snap.status == TaskStatus.COMPLETED
        assert TaskEventType.PAUSE in kinds
        assert TaskEventType.RESUME in kinds

    def test_add_atoms_while_running(self):
        log = []
        task = make_task([make_atom(sleeper(0.03, log=log, name="first"), id="first")])

        async def scenario():
            task.start()
            await asyncio.sleep(0.01)
            await task.add_atom_tasks([make_atom(sleeper(0.01, log=log, name="second"), id="second")])
            return await task.wait_for_end()

        snap = asyncio.run(scenario())
        assert log == ["first", "second"]
        assert snap.status == TaskStatus.COMPLETED
        assert snap.percent == 100

    def test_add_atoms_rejected_while_paused(self):
        task = make_task([])

        async def scenario():
            task.start()
            await task.pause()
            with pytest.raises(InvalidTransitionError, match="Paused"):
                await task.add_atom_tasks([make_atom(lambda call: None)])

        asyncio.run(scenario())

    def test_body_can_queue_more_work_through_context(self):
        log = []

        async def spawner(call):
            log.append("spawner")
            call.ctx.add_atom_tasks([make_atom(lambda c: log.append("child"), id="child")])
            await asyncio.sleep(0.02)

        task = make_task([make_atom(spawner, id="spawner")])

        async def scenario():
            task.start()
            return await task.wait_for_end()

        snap = asyncio.run(scenario())
        assert log == ["spawner", "child"]
        assert [a.id for a in snap.atom_tasks] == ["spawner", "child"]
        assert snap.status == TaskStatus.COMPLETED
    def test_concurrent_context_mutations_are_serialized(self):
        log = []

        def spawner(child_id):
            async def body(call):
                call.ctx.add_atom_tasks([make_atom(lambda c: log.append(child_id), id=child_id)])
                await asyncio.sleep(0.02)
            return body

        task = make_task([make_atom(spawner("c1"), id="s1"), make_atom(spawner("c2"), id="s2")], concurrency=2)

        async def scenario():
            task.start()
            return await asyncio.wait_for(task.wait_for_end(), timeout=2)

        snap = asyncio.run(scenario())
        assert sorted(log) == ["c1", "c2"]
        assert sorted(a.id for a in snap.atom_tasks) == ["c1", "c2", "s1", "s2"]
        assert snap.status == TaskStatus.COMPLETED

    def test_failed_context_mutation_is_logged(self):
        records = []
        handler_id = logger.add(lambda message: records.append(message.record), level="ERROR")
        task = make_task([])

        async def scenario():
            task.start()
            task.complete()
            handle = task.ctx.add_atom_tasks([make_atom(lambda call: None)])
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            return handle

        try:
            handle = asyncio.run(scenario())
        finally:
            logger.remove(handler_id)
        assert isinstance(handle.exception(), InvalidTransitionError)
        assert any("queue mutation failed" in r["message"] for r in records)


class TestBorrowedContext:
    def test_borrower_writes_into_owner_context(self):
        owner = Task("owner", default_ctx_data={"total": 0})

        def add_ten(call):
            call.ctx.set("total", call.ctx.get("total") + 10)

        borrower = make_task([make_atom(add_ten)], shared_ctx=owner.ctx)

        async def scenario():
            borrower.start()
            await borrower.wait_for_end()

        asyncio.run(scenario())
        assert owner.ctx.get("total") == 10

    def test_direct_assignment_in_body_fails_atom(self):
        owner = Task("owner")

        def assign(call):
            call.ctx.total = 1

        borrower = make_task(
            [make_atom(assign, id="assign")],
            shared_ctx=owner.ctx,
        )

        async def scenario():
            borrower.start()
            with pytest.raises(TaskFailedError, match="ctx.set"):
                await borrower.wait_for_end()

        asyncio.run(scenario())
        with pytest.raises(ContextWriteError):
            borrower.ctx.total = 1
