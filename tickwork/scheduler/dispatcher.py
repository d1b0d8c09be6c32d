"""
Dispatcher — runs one accepted occurrence of a job.

    begin ─▶ execute (own task) ─┬─ finished ─▶ SUCCESS / FAILURE ─┐
                                 └─ max_runtime expired ─▶ TIMED_OUT┴─▶ complete

``tracker.complete`` is called exactly once for every occurrence that
``tracker.begin`` accepted, whatever happens in between. On timeout the
record is closed at the deadline; the executor task only receives a
cancellation request and may keep running until it notices. Such
stragglers are kept referenced and their late finish is logged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from tickwork.core.bus import EventBus
from tickwork.core.events import Event, EventType
from tickwork.scheduler.executors import CancellationToken, ExecutionResult, Executor
from tickwork.scheduler.job import JobDefinition
from tickwork.scheduler.rules import format_duration, is_due
from tickwork.scheduler.tracker import Outcome, RunTracker

logger = logging.getLogger(__name__)

_OUTCOME_EVENTS = {
    Outcome.SUCCESS: EventType.JOB_COMPLETED,
    Outcome.FAILURE: EventType.JOB_FAILED,
    Outcome.TIMED_OUT: EventType.JOB_TIMED_OUT,
}


class Dispatcher:
    """
    Hands due jobs to the executor and feeds outcomes to the tracker.

    Usage:
        dispatcher = Dispatcher(tracker, ShellExecutor())
        outcome = await dispatcher.dispatch(job)   # None = skipped
    """

    def __init__(
        self,
        tracker: RunTracker,
        executor: Executor,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tracker = tracker
        self._executor = executor
        self._bus = bus
        self._clock = clock
        self._stragglers: set[asyncio.Task] = set()

    @property
    def stragglers(self) -> int:
        """Timed-out executor tasks that have not finished yet."""
        return len(self._stragglers)

    async def dispatch(
        self,
        job: JobDefinition,
        only_if_due: bool = False,
        now: float | None = None,
    ) -> Outcome | None:
        """
        Run one occurrence of *job*.

        With *only_if_due* the rule is re-evaluated atomically with the
        start, so a job handed over by two back-to-back ticks still runs
        once.

        Returns the recorded outcome, or None when the tracker refused the
        occurrence (a previous one still running, or no longer due).
        """
        source = f"job:{job.name}"
        now = self._clock() if now is None else now
        check = (lambda record: is_due(job, record, now)) if only_if_due else None
        ticket = await self._tracker.begin(
            job.name, allow_concurrent=job.allow_concurrent, now=now, check=check
        )
        if ticket is None:
            logger.debug(f"Job {job.name!r} not accepted, skipping occurrence")
            await self._emit(EventType.JOB_SKIPPED, source, {"reason": "already running or not due"})
            return None

        logger.info(f"Dispatching job {job.name!r} ({job.describe()})")
        await self._emit(EventType.JOB_STARTED, source, {"executor": self._executor.name})

        token = CancellationToken()
        task = asyncio.create_task(
            self._executor.execute(job.executor_ref, token),
            name=f"exec:{job.name}",
        )
        outcome, error = Outcome.FAILURE, None
        output = ""
        try:
            done, _ = await asyncio.wait({task}, timeout=job.max_runtime)
            if task in done and task.cancelled():
                error = "executor cancelled"
            elif task in done:
                result: ExecutionResult = task.result()
                outcome = Outcome.SUCCESS if result.success else Outcome.FAILURE
                error = result.error
                output = result.output
            else:
                limit = format_duration(job.max_runtime or 0)
                logger.warning(f"Job {job.name!r} exceeded max runtime of {limit}, cancelling")
                token.cancel("timed out")
                task.cancel()
                self._track_straggler(job.name, task)
                outcome, error = Outcome.TIMED_OUT, f"Timed out after {limit}"
        except asyncio.CancelledError:
            token.cancel("dispatcher cancelled")
            task.cancel()
            error = "cancelled"
            raise
        except Exception as e:
            logger.debug(f"Executor raised for {job.name!r}", exc_info=True)
            error = str(e) or type(e).__name__
        finally:
            await self._tracker.complete(
                job.name, outcome, error=error, now=self._clock(), ticket=ticket
            )

        if outcome is Outcome.FAILURE:
            logger.warning(f"Job {job.name!r} reported failure: {error}")
        else:
            logger.info(f"Job {job.name!r} finished: {outcome.value}")
        await self._emit(
            _OUTCOME_EVENTS[outcome],
            source,
            {"outcome": outcome.value, "error": error, "output": output},
        )
        return outcome

    def _track_straggler(self, name: str, task: asyncio.Task) -> None:
        self._stragglers.add(task)

        def _done(t: asyncio.Task) -> None:
            self._stragglers.discard(t)
            if t.cancelled():
                logger.debug(f"Timed-out run of {name!r} cancelled")
            elif t.exception() is not None:
                logger.debug(f"Timed-out run of {name!r} ended with error: {t.exception()}")
            else:
                logger.info(f"Timed-out run of {name!r} finished late, result discarded")

        task.add_done_callback(_done)

    async def _emit(self, event_type: str, source: str, data: dict) -> None:
        if self._bus is not None:
            await self._bus.emit(Event(type=event_type, source=source, data=data))
