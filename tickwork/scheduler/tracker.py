"""
RunTracker — per-job run bookkeeping.

The tracker is the only mutable state shared between the engine (which
reads snapshots every tick) and the dispatcher (which writes on begin
and complete). Every mutation of a job's record happens under that
job's own lock, so two dispatches of the same job can never interleave
their begin/complete, while different jobs never wait on each other.

Records are written through to the optional RunStore on every begin and
complete, so "already ran today" survives a restart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from tickwork.scheduler.store import RunStore

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Result of the most recent run."""

    NEVER_RUN = "never_run"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"


@dataclass
class RunRecord:
    """Run history of one job. Timestamps are unix seconds."""

    last_run_started_at: float | None = None
    last_run_ended_at: float | None = None
    last_outcome: Outcome = Outcome.NEVER_RUN
    last_error: str | None = None
    is_running: bool = False
    running_since: float | None = None  # only meaningful while is_running
    run_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_run_started_at": self.last_run_started_at,
            "last_run_ended_at": self.last_run_ended_at,
            "last_outcome": self.last_outcome.value,
            "last_error": self.last_error,
            "is_running": self.is_running,
            "running_since": self.running_since,
            "run_count": self.run_count,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "RunRecord":
        return cls(
            last_run_started_at=d.get("last_run_started_at"),
            last_run_ended_at=d.get("last_run_ended_at"),
            last_outcome=Outcome(d.get("last_outcome", Outcome.NEVER_RUN.value)),
            last_error=d.get("last_error"),
            is_running=bool(d.get("is_running", False)),
            running_since=d.get("running_since"),
            run_count=int(d.get("run_count", 0)),
        )


class RunTracker:
    """
    Holds a RunRecord per job name.

    Usage:
        tracker = RunTracker(store)
        await tracker.load()

        ticket = await tracker.begin("backup")
        if ticket is not None:
            ...  # run it
            await tracker.complete("backup", Outcome.SUCCESS, ticket=ticket)

        record = await tracker.snapshot("backup")

    A ticket is the job's generation at the time the run began. ``forget``
    starts a new generation, so a run of a removed job that finishes after
    the name was registered again cannot touch the new job's record.
    """

    def __init__(self, store: "RunStore | None" = None) -> None:
        self._store = store
        self._records: dict[str, RunRecord] = {}
        self._active: dict[str, int] = {}  # overlapping runs per job
        self._locks: dict[str, asyncio.Lock] = {}
        self._generations: dict[str, int] = {}
        self._loaded = False

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def _generation(self, name: str) -> int:
        return self._generations.setdefault(name, 1)

    async def load(self) -> int:
        """
        Pull persisted records from the store. Returns how many were loaded.

        A record saved as running belonged to a process that is gone: it is
        marked not running and its outcome set to FAILURE ("interrupted").
        Only the first call reads the store; after that the in-memory
        records are authoritative (runs may still be in flight).
        """
        if self._store is None or self._loaded:
            return 0
        self._loaded = True
        records = await self._store.load_run_records()
        loaded = 0
        for name, record in records.items():
            async with self._lock(name):
                if name in self._records:
                    continue
                if record.is_running:
                    logger.warning(f"Job {name!r} was running when the process stopped, marking as interrupted")
                    record = replace(
                        record,
                        is_running=False,
                        running_since=None,
                        last_outcome=Outcome.FAILURE,
                        last_error="interrupted",
                    )
                    await self._save(name, record)
                self._records[name] = record
                loaded += 1
        logger.debug(f"Loaded {loaded} run record(s)")
        return loaded

    async def begin(
        self,
        name: str,
        allow_concurrent: bool = False,
        now: float | None = None,
        check: Callable[[RunRecord], bool] | None = None,
    ) -> int | None:
        """
        Mark a run of *name* as started and return its ticket.

        Returns None (and changes nothing) when the job is already running
        and concurrency is not allowed, or when *check* rejects the current
        record. *check* runs under the job lock, so a due-check and the
        start it justifies are atomic.
        """
        t = time.time() if now is None else now
        async with self._lock(name):
            record = self._records.get(name) or RunRecord()
            active = self._active.get(name, 0)
            if active and not allow_concurrent:
                logger.debug(f"Job {name!r} already running since {record.running_since}, refusing overlap")
                return None
            if check is not None and not check(replace(record)):
                return None
            self._records[name] = record
            if not active:
                record.running_since = t
            record.is_running = True
            record.last_run_started_at = t
            record.run_count += 1
            self._active[name] = active + 1
            await self._save(name, replace(record))
            return self._generation(name)

    async def complete(
        self,
        name: str,
        outcome: Outcome,
        error: str | None = None,
        now: float | None = None,
        ticket: int | None = None,
    ) -> RunRecord:
        """
        Record the end of a run of *name* and persist the record.

        A *ticket* from an older generation (the job was removed while the
        run was in flight) leaves the current record alone.
        """
        t = time.time() if now is None else now
        async with self._lock(name):
            record = self._records.get(name)
            stale = ticket is not None and ticket != self._generation(name)
            if record is None or stale:
                # forgotten mid-run (job removed); don't resurrect or clobber it
                logger.debug(f"Run of removed job {name!r} finished with {outcome.value}")
                return RunRecord(last_run_ended_at=t, last_outcome=outcome, last_error=error)
            active = max(self._active.get(name, 0) - 1, 0)
            if active:
                self._active[name] = active
            else:
                self._active.pop(name, None)
                record.is_running = False
                record.running_since = None
            record.last_run_ended_at = t
            record.last_outcome = outcome
            record.last_error = error
            saved = replace(record)
            await self._save(name, saved)
            return saved

    async def snapshot(self, name: str) -> RunRecord:
        """Copy of the current record; a fresh NEVER_RUN record for unknown jobs."""
        async with self._lock(name):
            record = self._records.get(name)
            return replace(record) if record is not None else RunRecord()

    async def forget(self, name: str) -> None:
        """Drop the record of *name*, in memory and in the store, and start a new generation."""
        async with self._lock(name):
            self._records.pop(name, None)
            self._active.pop(name, None)
            self._generations[name] = self._generation(name) + 1
            if self._store is None:
                return
            try:
                await self._store.delete_run_record(name)
            except Exception as e:
                logger.error(f"Failed to delete run record for {name!r}: {e}", exc_info=True)

    @property
    def names(self) -> list[str]:
        return list(self._records)

    async def _save(self, name: str, record: RunRecord) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_run_record(name, record)
        except Exception as e:
            logger.error(f"Failed to persist run record for {name!r}: {e}", exc_info=True)
