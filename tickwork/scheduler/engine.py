"""
SchedulerEngine — the background asyncio task that ticks and fires jobs.

Design:
- One coordinator task ticks every ``tick_interval`` seconds (default 60,
  matching the minute-level resolution of schedules)
- Each tick snapshots the registry and asks the rule evaluator about
  every job; due jobs are handed to the dispatcher as independent tasks,
  so the loop never waits on job execution
- Ticks are strictly sequential; runs from tick N may still be going
  when tick N+1 evaluates, which the tracker's running guard handles
- A failure evaluating or dispatching one job is logged and reported as
  a ``job:error`` event; the other jobs in the tick are unaffected
- ``stop()`` halts new ticks only; in-flight runs finish on their own
  (``drain()`` waits for them)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from tickwork.core.bus import EventBus
from tickwork.core.events import Event, EventType
from tickwork.scheduler.dispatcher import Dispatcher
from tickwork.scheduler.executors import Executor
from tickwork.scheduler.job import JobDefinition
from tickwork.scheduler.registry import JobRegistry
from tickwork.scheduler.rules import is_due
from tickwork.scheduler.store import RunStore
from tickwork.scheduler.tracker import RunRecord, RunTracker

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL = 60.0  # seconds between due-job checks


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class ScheduleEntry:
    """One row of the status surface."""

    name: str
    description: str
    next_check_at: float | None  # next tick boundary, best effort
    status: str  # running | due | waiting | stopped
    record: RunRecord


class SchedulerEngine:
    """
    Background scheduler.

    Usage:
        engine = SchedulerEngine.build(executor=ShellExecutor(), store=store)
        await engine.add_job(JobDefinition.from_dict({...}))
        await engine.start()
        ...
        await engine.stop()
        await engine.drain()
    """

    def __init__(
        self,
        registry: JobRegistry,
        tracker: RunTracker,
        dispatcher: Dispatcher,
        bus: EventBus | None = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        self.registry = registry
        self.tracker = tracker
        self.bus = bus
        self._dispatcher = dispatcher
        self._tick_interval = tick_interval
        self._clock = clock
        self._state = SchedulerState.STOPPED
        self._task: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._last_tick_at: float | None = None

    @classmethod
    def build(
        cls,
        executor: Executor,
        store: RunStore | None = None,
        bus: EventBus | None = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> "SchedulerEngine":
        """Wire tracker, registry and dispatcher around one executor."""
        tracker = RunTracker(store)
        return cls(
            registry=JobRegistry(tracker),
            tracker=tracker,
            dispatcher=Dispatcher(tracker, executor, bus=bus, clock=clock),
            bus=bus,
            tick_interval=tick_interval,
            clock=clock,
        )

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    @property
    def tick_interval(self) -> float:
        return self._tick_interval

    @property
    def in_flight(self) -> int:
        """Dispatches started by ticks that have not finished yet."""
        return len(self._in_flight)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the background tick loop. No-op if already running."""
        if self.running:
            return
        await self.tracker.load()
        self._state = SchedulerState.RUNNING
        self._task = asyncio.create_task(self._loop(), name="scheduler")
        logger.info(f"SchedulerEngine started ({len(self.registry)} job(s), tick every {self._tick_interval:g}s)")
        await self._emit(EventType.SCHEDULER_START, {"jobs": self.registry.names})

    async def stop(self) -> None:
        """Stop generating ticks. In-flight runs are left to finish."""
        if not self.running:
            return
        self._state = SchedulerState.STOPPED
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("SchedulerEngine stopped")
        await self._emit(EventType.SCHEDULER_STOP, {"in_flight": self.in_flight})

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight runs. Returns False if *timeout* expired first."""
        if not self._in_flight:
            return True
        _, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
        return not pending

    # ── Internal loop ─────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        while self.running:
            try:
                await self.tick()
            except Exception as e:
                logger.warning(f"Scheduler tick error (non-fatal): {e}", exc_info=True)
            await asyncio.sleep(self._tick_interval)

    async def tick(self, now: float | None = None) -> list[str]:
        """
        Evaluate every registered job once and fire the due ones.

        Returns the names handed to the dispatcher. Does not wait for them.
        """
        t = self._clock() if now is None else now
        self._last_tick_at = t
        fired: list[str] = []
        for job in self.registry.list():
            try:
                record = await self.tracker.snapshot(job.name)
                if not is_due(job, record, t):
                    continue
            except Exception as e:
                await self._job_error(job.name, "evaluate", e)
                continue
            self._spawn(job, t)
            fired.append(job.name)

        if fired:
            logger.debug(f"Tick at {t:.0f}: dispatching {fired}")
        await self._emit(EventType.SCHEDULER_TICK, {"at": t, "due": fired})
        return fired

    def _spawn(self, job: JobDefinition, now: float) -> None:
        task = asyncio.create_task(self._dispatch(job, now), name=f"dispatch:{job.name}")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _dispatch(self, job: JobDefinition, now: float) -> None:
        try:
            await self._dispatcher.dispatch(job, only_if_due=True, now=now)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._job_error(job.name, "dispatch", e)

    async def _job_error(self, name: str, phase: str, error: Exception) -> None:
        logger.error(f"Job {name!r} {phase} error: {error}", exc_info=error)
        try:
            await self._emit(
                EventType.JOB_ERROR,
                {"phase": phase, "error": str(error)},
                source=f"job:{name}",
            )
        except Exception as e:
            logger.debug(f"Could not report error for {name!r}: {e}")

    # ── Administration ────────────────────────────────────────────────────────

    async def add_job(self, job: JobDefinition | dict[str, Any]) -> JobDefinition:
        """
        Register a job (a JobDefinition or its declarative dict).

        Raises DuplicateJobError / InvalidScheduleError; nothing is added then.
        """
        definition = job if isinstance(job, JobDefinition) else JobDefinition.from_dict(job)
        self.registry.add(definition)
        logger.info(f"Job added: {definition.name!r} ({definition.describe()})")
        await self._emit(EventType.JOB_ADDED, {"job": definition.to_dict()}, source=f"job:{definition.name}")
        return definition

    async def remove_job(self, name: str, missing_ok: bool = True) -> bool:
        """
        Unregister a job and drop its run record. Returns True if it existed.

        With missing_ok=False an unknown name raises JobNotFoundError.
        """
        if not missing_ok:
            self.registry.require(name)
        removed = await self.registry.remove(name)
        if removed:
            logger.info(f"Job removed: {name!r}")
            await self._emit(EventType.JOB_REMOVED, {}, source=f"job:{name}")
        return removed

    # ── Status ────────────────────────────────────────────────────────────────

    async def list_schedule(self, now: float | None = None) -> list[ScheduleEntry]:
        """Status of every job, in registration order."""
        t = self._clock() if now is None else now
        next_check = None
        if self.running:
            base = self._last_tick_at if self._last_tick_at is not None else t
            next_check = base + self._tick_interval

        entries: list[ScheduleEntry] = []
        for job in self.registry.list():
            record = await self.tracker.snapshot(job.name)
            if record.is_running:
                status = "running"
            elif not self.running:
                status = "stopped"
            elif is_due(job, record, t):
                status = "due"
            else:
                status = "waiting"
            entries.append(
                ScheduleEntry(
                    name=job.name,
                    description=job.describe(),
                    next_check_at=next_check,
                    status=status,
                    record=record,
                )
            )
        return entries

    async def _emit(self, event_type: str, data: dict, source: str = "engine") -> None:
        if self.bus is not None:
            await self.bus.emit(Event(type=event_type, source=source, data=data))
