"""
Schedule rules and the rule evaluator.

A rule answers one question: given what the run tracker knows about a
job, is the job due at ``now``? Rules never mutate anything, so the
engine can ask as often as it likes.

Rule dict shapes (as produced by ``rule.to_dict()``):
    {"type": "once"}
    {"type": "interval", "seconds": 1800}

Usage:
    rule = make_rule({"type": "interval", "seconds": 1800})
    if is_due(job, tracker_snapshot, time.time()):
        ...
"""

from __future__ import annotations

import datetime
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tickwork.scheduler.job import JobDefinition
    from tickwork.scheduler.tracker import RunRecord


def to_local(ts: float, tz: datetime.tzinfo | None) -> datetime.datetime:
    """Unix timestamp → aware datetime in *tz* (host local zone when None)."""
    if tz is None:
        return datetime.datetime.fromtimestamp(ts).astimezone()
    return datetime.datetime.fromtimestamp(ts, tz)


class ScheduleRule(ABC):
    """Decides, from prior run metadata, whether a job may fire now."""

    kind: str = ""

    @abstractmethod
    def is_due(
        self,
        record: "RunRecord",
        now: float,
        tz: datetime.tzinfo | None,
    ) -> bool:
        """
        Variant-specific due check.

        Window, day and concurrency constraints have already been applied
        by :func:`is_due`; this only looks at the run history.
        """
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description, e.g. 'every 30m'."""
        ...

    @abstractmethod
    def to_dict(self) -> dict:
        ...

    def __eq__(self, other: object) -> bool:
        return type(other) is type(self) and other.to_dict() == self.to_dict()

    def __hash__(self) -> int:
        return hash(tuple(sorted(self.to_dict().items())))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.description!r})"


class OnceRule(ScheduleRule):
    """
    Fires at most once per calendar day in the job's timezone.

    Any started run counts, whatever its outcome: a failed 09:00 run does
    not make the job eligible again at 09:01.
    """

    kind = "once"

    def is_due(self, record: "RunRecord", now: float, tz: datetime.tzinfo | None) -> bool:
        if record.last_run_started_at is None:
            return True
        last = to_local(record.last_run_started_at, tz).date()
        return last != to_local(now, tz).date()

    @property
    def description(self) -> str:
        return "once a day"

    def to_dict(self) -> dict:
        return {"type": "once"}


class IntervalRule(ScheduleRule):
    """
    Fires every N seconds, measured from the start of the previous run.

    A job that has never run is due at the first eligible tick.
    """

    kind = "interval"

    def __init__(self, seconds: float) -> None:
        if seconds < 1:
            raise ValueError("Interval must be at least 1 second")
        self.seconds = seconds

    def is_due(self, record: "RunRecord", now: float, tz: datetime.tzinfo | None) -> bool:
        if record.last_run_started_at is None:
            return True
        return now - record.last_run_started_at >= self.seconds

    @property
    def description(self) -> str:
        return f"every {format_duration(self.seconds)}"

    def to_dict(self) -> dict:
        return {"type": "interval", "seconds": self.seconds}


def make_rule(rule_dict: dict) -> ScheduleRule:
    """
    Build a ScheduleRule from its serialised dict.

    Raises ValueError for unknown rule types.
    """
    t = rule_dict.get("type", "")
    if t == "once":
        return OnceRule()
    elif t == "interval":
        return IntervalRule(float(rule_dict["seconds"]))
    else:
        raise ValueError(f"Unknown rule type: {t!r}")


def format_duration(seconds: float) -> str:
    s = int(seconds)
    if s != seconds:
        return f"{seconds:g}s"
    if s % 86400 == 0:
        return f"{s // 86400}d"
    if s % 3600 == 0:
        return f"{s // 3600}h"
    if s % 60 == 0:
        return f"{s // 60}m"
    return f"{s}s"


# ━━━ Evaluator ━━━


def is_due(job: "JobDefinition", record: "RunRecord", now: float) -> bool:
    """
    Is *job* due at *now* given its run *record*?

    Checks, in order: weekday, day of month, time window, the
    non-concurrent running guard, then the rule itself.
    """
    tz = job.tzinfo
    local = to_local(now, tz)

    if job.days_of_week is not None and local.weekday() not in job.days_of_week:
        return False
    if job.day_of_month is not None and local.day != job.day_of_month:
        return False
    if job.window is not None and not job.window.contains(local.time()):
        return False
    if record.is_running and not job.allow_concurrent:
        return False
    return job.schedule.is_due(record, now, tz)
