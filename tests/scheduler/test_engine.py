"""Tests for tickwork/scheduler/engine.py"""
from __future__ import annotations

import asyncio

import pytest

from tickwork.core.errors import DuplicateJobError, InvalidScheduleError, JobNotFoundError
from tickwork.scheduler.engine import SchedulerEngine, SchedulerState
from tickwork.scheduler.executors import ExecutionResult, Executor
from tickwork.scheduler.job import JobDefinition
from tickwork.scheduler.rules import IntervalRule, OnceRule
from tickwork.scheduler.store import InMemoryRunStore
from tickwork.scheduler.tracker import Outcome

DAY = 86400


class GatePerRun(Executor):
    """Each run blocks on its own event, so runs can be released one at a time."""

    def __init__(self) -> None:
        self.gates: list[asyncio.Event] = []

    async def execute(self, executor_ref, token):
        gate = asyncio.Event()
        self.gates.append(gate)
        await gate.wait()
        return ExecutionResult.ok()


def _job(name, **kw) -> JobDefinition:
    defaults = dict(name=name, executor_ref=name, schedule=IntervalRule(60), timezone="UTC")
    defaults.update(kw)
    return JobDefinition(**defaults)


@pytest.fixture
def engine_for(run_store, bus, clock):
    def factory(executor, store=None, **kw):
        return SchedulerEngine.build(
            executor=executor,
            store=store or run_store,
            bus=bus,
            tick_interval=kw.pop("tick_interval", 3600),
            clock=clock,
        )

    return factory


@pytest.mark.asyncio
class TestTick:
    async def test_fires_due_jobs_without_waiting(self, engine_for, make_executor):
        gate = asyncio.Event()
        executor = make_executor(gate=gate)
        engine = engine_for(executor)
        await engine.add_job(_job("a"))
        await engine.add_job(_job("b"))

        fired = await asyncio.wait_for(engine.tick(), timeout=1)

        assert fired == ["a", "b"]
        assert engine.in_flight == 2
        gate.set()
        assert await engine.drain(timeout=1) is True
        assert engine.in_flight == 0
        assert sorted(executor.calls) == ["a", "b"]

    async def test_not_due_jobs_are_left_alone(self, engine_for, executor, clock):
        engine = engine_for(executor)
        await engine.add_job(_job("a", schedule=IntervalRule(1800)))

        await engine.tick()
        await engine.drain()
        clock.advance(600)
        assert await engine.tick() == []
        clock.advance(1200)
        assert await engine.tick() == ["a"]
        await engine.drain()
        assert len(executor.calls) == 2

    async def test_running_job_not_fired_again(self, engine_for, make_executor, clock):
        gate = asyncio.Event()
        engine = engine_for(make_executor(gate=gate))
        await engine.add_job(_job("slow"))

        await engine.tick()
        await asyncio.sleep(0.01)
        clock.advance(120)
        assert await engine.tick() == []

        gate.set()
        await engine.drain()

    async def test_once_job_runs_once_per_day(self, engine_for, executor, clock):
        engine = engine_for(executor)
        await engine.add_job(_job("daily", schedule=OnceRule(), allow_concurrent=True))

        # back-to-back ticks before the first run has even begun
        await engine.tick()
        clock.advance(60)
        await engine.tick()
        await engine.drain()
        assert len(executor.calls) == 1

        clock.advance(3600)
        assert await engine.tick() == []

        clock.advance(DAY)
        assert await engine.tick() == ["daily"]
        await engine.drain()
        assert len(executor.calls) == 2

    async def test_evaluation_error_is_isolated(self, engine_for, executor, bus, monkeypatch):
        engine = engine_for(executor)
        await engine.add_job(_job("bad"))
        await engine.add_job(_job("good"))

        errors = []

        async def on_error(event):
            errors.append((event.source, event.data["phase"]))

        bus.on("job:error", on_error)

        original = engine.tracker.snapshot

        async def snapshot(name):
            if name == "bad":
                raise RuntimeError("corrupt record")
            return await original(name)

        monkeypatch.setattr(engine.tracker, "snapshot", snapshot)

        assert await engine.tick() == ["good"]
        await engine.drain()
        assert executor.calls == ["good"]
        assert errors == [("job:bad", "evaluate")]

    async def test_dispatch_error_is_isolated(self, engine_for, executor, bus, monkeypatch):
        engine = engine_for(executor)
        await engine.add_job(_job("bad"))
        await engine.add_job(_job("good"))

        errors = []

        async def on_error(event):
            errors.append((event.source, event.data["phase"]))

        bus.on("job:error", on_error)

        dispatcher = engine._dispatcher
        original = dispatcher.dispatch

        async def dispatch(job, only_if_due=False, now=None):
            if job.name == "bad":
                raise RuntimeError("boom")
            return await original(job, only_if_due=only_if_due, now=now)

        monkeypatch.setattr(dispatcher, "dispatch", dispatch)

        await engine.tick()
        await engine.drain()
        assert executor.calls == ["good"]
        assert errors == [("job:bad", "dispatch")]

    async def test_failing_job_does_not_affect_others(self, engine_for, make_executor):
        executor = make_executor(raises=RuntimeError("nope"))
        engine = engine_for(executor)
        await engine.add_job(_job("a"))
        await engine.add_job(_job("b"))

        await engine.tick()
        await engine.drain()

        for name in ("a", "b"):
            record = await engine.tracker.snapshot(name)
            assert record.last_outcome is Outcome.FAILURE
            assert record.is_running is False

    async def test_tick_event(self, engine_for, executor, bus, clock):
        ticks = []

        async def on_tick(event):
            ticks.append(event.data)

        bus.on("scheduler:tick", on_tick)
        engine = engine_for(executor)
        await engine.add_job(_job("a"))

        await engine.tick()
        await engine.drain()

        assert ticks == [{"at": clock.now, "due": ["a"]}]


@pytest.mark.asyncio
class TestLifecycle:
    async def test_start_and_stop_are_idempotent(self, engine_for, executor):
        engine = engine_for(executor)
        await engine.add_job(_job("a"))

        await engine.start()
        await engine.start()
        assert engine.state is SchedulerState.RUNNING
        await asyncio.sleep(0.01)
        assert executor.calls == ["a"]

        await engine.stop()
        await engine.stop()
        assert engine.state is SchedulerState.STOPPED
        assert engine.running is False

    async def test_stop_leaves_in_flight_runs_alone(self, engine_for, make_executor):
        gate = asyncio.Event()
        engine = engine_for(make_executor(gate=gate))
        await engine.add_job(_job("slow"))

        await engine.start()
        await asyncio.sleep(0.01)
        await engine.stop()
        assert engine.in_flight == 1

        gate.set()
        assert await engine.drain(timeout=1) is True
        assert (await engine.tracker.snapshot("slow")).last_outcome is Outcome.SUCCESS

    async def test_restart_in_process_keeps_in_flight_run(self, engine_for, make_executor, clock):
        gate = asyncio.Event()
        executor = make_executor(gate=gate)
        engine = engine_for(executor)
        await engine.add_job(_job("slow"))

        await engine.start()
        await asyncio.sleep(0.01)
        await engine.stop()
        await engine.start()
        await asyncio.sleep(0.01)

        record = await engine.tracker.snapshot("slow")
        assert record.is_running is True
        assert record.last_outcome is Outcome.NEVER_RUN
        assert record.last_error is None

        clock.advance(120)
        assert await engine.tick() == []
        assert len(executor.calls) == 1

        gate.set()
        await engine.stop()
        assert await engine.drain(timeout=1) is True
        assert (await engine.tracker.snapshot("slow")).last_outcome is Outcome.SUCCESS

    async def test_drain_timeout(self, engine_for, make_executor):
        gate = asyncio.Event()
        engine = engine_for(make_executor(gate=gate))
        await engine.add_job(_job("slow"))

        await engine.tick()
        assert await engine.drain(timeout=0.01) is False

        gate.set()
        assert await engine.drain(timeout=1) is True

    async def test_drain_with_nothing_in_flight(self, engine_for, executor):
        assert await engine_for(executor).drain() is True

    async def test_loop_survives_tick_errors(self, engine_for, executor, monkeypatch):
        engine = engine_for(executor, tick_interval=0.01)
        calls = []

        async def tick(now=None):
            calls.append(now)
            raise RuntimeError("bad tick")

        monkeypatch.setattr(engine, "tick", tick)
        await engine.start()
        await asyncio.sleep(0.05)
        await engine.stop()

        assert len(calls) >= 2

    async def test_invalid_tick_interval(self, executor):
        with pytest.raises(ValueError):
            SchedulerEngine.build(executor=executor, tick_interval=0)

    async def test_restart_keeps_once_per_day(self, executor, clock):
        store = InMemoryRunStore()
        job = _job("daily", schedule=OnceRule())

        first = SchedulerEngine.build(executor=executor, store=store, clock=clock)
        await first.add_job(job)
        await first.tick()
        await first.drain()

        clock.advance(600)
        second = SchedulerEngine.build(executor=executor, store=store, clock=clock)
        await second.add_job(job)
        await second.tracker.load()
        assert await second.tick() == []
        assert len(executor.calls) == 1

    async def test_restart_after_crash_marks_interrupted(self, make_executor, clock):
        store = InMemoryRunStore()
        crashed = SchedulerEngine.build(
            executor=make_executor(gate=asyncio.Event()), store=store, clock=clock
        )
        await crashed.add_job(_job("backup"))
        await crashed.tick()
        await asyncio.sleep(0.01)
        assert (await store.load_run_records())["backup"].is_running is True

        clock.advance(60)
        executor = make_executor()
        restarted = SchedulerEngine.build(executor=executor, store=store, clock=clock)
        await restarted.add_job(_job("backup"))
        await restarted.start()
        await asyncio.sleep(0.01)
        await restarted.stop()
        await restarted.drain()

        record = await restarted.tracker.snapshot("backup")
        assert record.is_running is False
        # the interrupted run was closed and the job allowed to start again
        assert executor.calls == ["backup"]

        for task in list(crashed._in_flight):
            task.cancel()
        await asyncio.gather(*crashed._in_flight, return_exceptions=True)


@pytest.mark.asyncio
class TestAdministration:
    async def test_add_job_from_dict(self, engine_for, executor, bus):
        added = []

        async def on_added(event):
            added.append(event.source)

        bus.on("job:added", on_added)
        engine = engine_for(executor)

        job = await engine.add_job({"name": "Backups", "every": "6h", "command": "backup.sh"})

        assert job.schedule == IntervalRule(6 * 3600)
        assert engine.registry.get("Backups") is job
        assert added == ["job:Backups"]

    async def test_duplicate_rejected(self, engine_for, executor):
        engine = engine_for(executor)
        await engine.add_job(_job("a"))
        with pytest.raises(DuplicateJobError):
            await engine.add_job(_job("a", schedule=OnceRule()))
        assert engine.registry.get("a").schedule == IntervalRule(60)

    async def test_invalid_dict_adds_nothing(self, engine_for, executor):
        engine = engine_for(executor)
        with pytest.raises(InvalidScheduleError):
            await engine.add_job({"name": "broken", "every": "sometimes", "command": "x"})
        assert len(engine.registry) == 0

    async def test_remove_then_readd_starts_fresh(self, engine_for, executor, run_store):
        engine = engine_for(executor)
        await engine.add_job(_job("a", schedule=OnceRule()))
        await engine.tick()
        await engine.drain()

        assert await engine.remove_job("a") is True
        assert await engine.remove_job("a") is False
        assert "a" not in await run_store.load_run_records()

        await engine.add_job(_job("a", schedule=OnceRule()))
        assert (await engine.tracker.snapshot("a")).last_outcome is Outcome.NEVER_RUN
        assert await engine.tick() == ["a"]
        await engine.drain()

    async def test_remove_while_running(self, engine_for, make_executor):
        gate = asyncio.Event()
        engine = engine_for(make_executor(gate=gate))
        await engine.add_job(_job("a"))
        await engine.tick()
        await asyncio.sleep(0.01)

        assert await engine.remove_job("a") is True
        gate.set()
        await engine.drain()
        assert "a" not in engine.tracker.names

    async def test_readd_while_old_run_in_flight(self, engine_for, clock):
        executor = GatePerRun()
        engine = engine_for(executor)
        await engine.add_job(_job("a"))
        await engine.tick()
        await asyncio.sleep(0.01)

        await engine.remove_job("a")
        await engine.add_job(_job("a"))
        assert await engine.tick() == ["a"]
        await asyncio.sleep(0.01)
        old_run, new_run = executor.gates

        # the removed job's run finishing must not close the new job's run
        old_run.set()
        await asyncio.sleep(0.01)
        record = await engine.tracker.snapshot("a")
        assert record.is_running is True
        assert record.last_outcome is Outcome.NEVER_RUN

        clock.advance(120)
        assert await engine.tick() == []
        assert len(executor.gates) == 2

        new_run.set()
        await engine.drain()
        record = await engine.tracker.snapshot("a")
        assert record.is_running is False
        assert record.last_outcome is Outcome.SUCCESS

    async def test_strict_remove_of_unknown_job(self, engine_for, executor):
        engine = engine_for(executor)
        assert await engine.remove_job("ghost") is False
        with pytest.raises(JobNotFoundError):
            await engine.remove_job("ghost", missing_ok=False)

    async def test_remove_survives_store_failure(self, make_executor, bus, clock):
        class BrokenStore(InMemoryRunStore):
            async def delete_run_record(self, name):
                raise OSError("database is locked")

        removed = []

        async def on_removed(event):
            removed.append(event.source)

        bus.on("job:removed", on_removed)
        engine = SchedulerEngine.build(
            executor=make_executor(), store=BrokenStore(), bus=bus, clock=clock
        )
        await engine.add_job(_job("a"))

        assert await engine.remove_job("a") is True
        assert "a" not in engine.registry
        assert removed == ["job:a"]


@pytest.mark.asyncio
class TestListSchedule:
    async def test_statuses(self, engine_for, make_executor, clock):
        gate = asyncio.Event()
        engine = engine_for(make_executor(gate=gate))
        await engine.add_job(_job("poll"))
        # the fake clock sits at 14:13 UTC
        await engine.add_job(
            JobDefinition.from_dict({
                "name": "nightly",
                "once": True,
                "from": "00:00",
                "to": "01:00",
                "timezone": "UTC",
                "command": "x",
            })
        )

        stopped = await engine.list_schedule()
        assert [e.status for e in stopped] == ["stopped", "stopped"]
        assert all(e.next_check_at is None for e in stopped)

        await engine.start()
        await asyncio.sleep(0.01)
        entries = {e.name: e for e in await engine.list_schedule()}
        assert entries["poll"].status == "running"
        assert entries["nightly"].status == "waiting"
        assert entries["poll"].next_check_at == clock.now + engine.tick_interval
        assert entries["poll"].description == "every 1m, UTC"

        gate.set()
        await engine.drain()
        clock.advance(60)
        entries = {e.name: e for e in await engine.list_schedule()}
        assert entries["poll"].status == "due"
        assert entries["poll"].record.last_outcome is Outcome.SUCCESS

        await engine.stop()
