"""
JobDefinition — the core data model.

A job describes what to run (an opaque executor reference), which rule
decides when, and the calendar constraints that gate the rule. Jobs are
immutable once built; replacing one means remove + re-add.

Declarative form accepted by ``JobDefinition.from_dict``:

    {
        "name": "Daily Report",
        "once": True,                     # or  "every": "30 minutes"
        "from": "09:00", "to": "17:00",   # optional clock window
        "on": "mon tue wed thu fri",      # optional weekdays
        "day_of_month": 1,                # optional
        "timezone": "Europe/Berlin",      # optional, default host zone
        "allow_concurrent": False,
        "no_longer_than": "5 minutes",    # optional timeout
        "run": {"agent": "writer", "message": "Write the daily report"},
    }

camelCase spellings (``dayOfMonth``, ``allowConcurrent``,
``noLongerThan``) are accepted too.
"""

from __future__ import annotations

import datetime
import re
from dataclasses import dataclass
from typing import Any, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tickwork.core.errors import InvalidScheduleError
from tickwork.scheduler.rules import (
    IntervalRule,
    OnceRule,
    ScheduleRule,
    format_duration,
)

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

_WEEKDAY_ALIASES = {
    "monday": 0, "tues": 1, "tuesday": 1, "wednesday": 2, "thur": 3,
    "thurs": 3, "thursday": 3, "friday": 4, "saturday": 5, "sunday": 6,
    **{tag: i for i, tag in enumerate(WEEKDAYS)},
}

_WEEKDAY_GROUPS = {
    "weekdays": frozenset(range(5)),
    "weekends": frozenset({5, 6}),
    "weekend": frozenset({5, 6}),
    "daily": frozenset(range(7)),
}

_UNIT_SECONDS = {
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]*)")
_CLOCK = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


# ━━━ Parsing helpers ━━━


def parse_duration(value: Any) -> float:
    """
    "30 minutes" / "5m" / "1h 30m" / 90 → seconds.

    Bare numbers are seconds. Raises InvalidScheduleError.
    """
    if isinstance(value, bool):
        raise InvalidScheduleError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        pos, seconds = 0, 0.0
        for match in _DURATION_PART.finditer(text):
            if text[pos:match.start()].strip(" ,") or (not match.group(2) and match.end() != len(text)):
                raise InvalidScheduleError(f"Invalid duration: {value!r}")
            unit = match.group(2) or "s"
            if unit not in _UNIT_SECONDS:
                raise InvalidScheduleError(f"Unknown duration unit {unit!r} in {value!r}")
            seconds += float(match.group(1)) * _UNIT_SECONDS[unit]
            pos = match.end()
        if pos == 0 or text[pos:].strip():
            raise InvalidScheduleError(f"Invalid duration: {value!r}")
    else:
        raise InvalidScheduleError(f"Invalid duration: {value!r}")

    if seconds <= 0:
        raise InvalidScheduleError(f"Duration must be positive: {value!r}")
    return seconds


def parse_clock(value: str) -> datetime.time:
    """'09:00' → time(9, 0). Raises InvalidScheduleError."""
    if isinstance(value, datetime.time):
        return value.replace(second=0, microsecond=0)
    match = _CLOCK.match(str(value).strip())
    if not match:
        raise InvalidScheduleError(f"Invalid clock time {value!r}, expected HH:MM")
    return datetime.time(int(match.group(1)), int(match.group(2)))


def parse_weekdays(value: str | Iterable[str | int]) -> frozenset[int]:
    """
    'mon tue wed' / 'mon,fri' / ['monday', 'sat'] / 'weekdays' → {0, 1, 2}.

    Monday is 0, matching ``datetime.weekday()``.
    """
    tokens: Iterable[str | int]
    if isinstance(value, str):
        tokens = [t for t in re.split(r"[\s,]+", value.strip().lower()) if t]
    else:
        tokens = value

    days: set[int] = set()
    for token in tokens:
        if isinstance(token, bool):
            raise InvalidScheduleError(f"Invalid weekday: {token!r}")
        if isinstance(token, int):
            if not 0 <= token <= 6:
                raise InvalidScheduleError(f"Invalid weekday: {token!r}")
            days.add(token)
            continue
        key = str(token).strip().lower()
        if key in _WEEKDAY_GROUPS:
            days |= _WEEKDAY_GROUPS[key]
        elif key in _WEEKDAY_ALIASES:
            days.add(_WEEKDAY_ALIASES[key])
        else:
            raise InvalidScheduleError(f"Invalid weekday: {token!r}")

    if not days:
        raise InvalidScheduleError("Weekday set must not be empty")
    return frozenset(days)


# ━━━ Time window ━━━


@dataclass(frozen=True)
class TimeWindow:
    """
    Same-day clock window, inclusive at minute resolution.

    A missing start means 00:00, a missing end 23:59. Windows that wrap
    past midnight (start > end) are rejected.
    """

    start: datetime.time | None = None
    end: datetime.time | None = None

    def __post_init__(self) -> None:
        if self.start is None and self.end is None:
            raise InvalidScheduleError("Time window needs a start or an end")
        if self.start is not None and self.end is not None and self.start > self.end:
            raise InvalidScheduleError(
                f"Time window {self.start:%H:%M}-{self.end:%H:%M} wraps past midnight",
            )

    @classmethod
    def parse(cls, start: str | None = None, end: str | None = None) -> "TimeWindow":
        return cls(
            start=parse_clock(start) if start is not None else None,
            end=parse_clock(end) if end is not None else None,
        )

    def contains(self, t: datetime.time) -> bool:
        minute = t.replace(second=0, microsecond=0, tzinfo=None)
        if self.start is not None and minute < self.start:
            return False
        if self.end is not None and minute > self.end:
            return False
        return True

    @property
    def description(self) -> str:
        start = f"{self.start:%H:%M}" if self.start else "00:00"
        end = f"{self.end:%H:%M}" if self.end else "23:59"
        return f"{start}-{end}"


# ━━━ Job definition ━━━


@dataclass(frozen=True)
class JobDefinition:
    """A registered recurring job. Validated on construction."""

    name: str
    executor_ref: Any
    schedule: ScheduleRule
    window: TimeWindow | None = None
    days_of_week: frozenset[int] | None = None  # 0 = Monday
    day_of_month: int | None = None
    timezone: str | None = None  # IANA name, None = host local zone
    allow_concurrent: bool = False
    max_runtime: float | None = None  # seconds

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise InvalidScheduleError("Job name must be a non-empty string")
        if not isinstance(self.schedule, ScheduleRule):
            raise InvalidScheduleError(
                f"Invalid schedule for {self.name!r}: {self.schedule!r}", job_name=self.name
            )
        if self.days_of_week is not None:
            object.__setattr__(self, "days_of_week", parse_weekdays(self.days_of_week))
        if self.day_of_month is not None:
            if (
                isinstance(self.day_of_month, bool)
                or not isinstance(self.day_of_month, int)
                or not 1 <= self.day_of_month <= 31
            ):
                raise InvalidScheduleError(
                    f"day_of_month must be 1-31, got {self.day_of_month!r}", job_name=self.name
                )
        if self.max_runtime is not None and self.max_runtime <= 0:
            raise InvalidScheduleError(
                f"max_runtime must be positive, got {self.max_runtime!r}", job_name=self.name
            )
        if self.timezone is not None:
            _zone(self.timezone, self.name)

    @property
    def tzinfo(self) -> datetime.tzinfo | None:
        """ZoneInfo for the configured timezone, None for host local."""
        return _zone(self.timezone, self.name) if self.timezone else None

    def describe(self) -> str:
        """One-line summary, e.g. 'every 30m, 09:00-17:00, mon-fri'."""
        parts = [self.schedule.description]
        if self.window is not None:
            parts.append(self.window.description)
        if self.days_of_week is not None:
            parts.append(" ".join(WEEKDAYS[d] for d in sorted(self.days_of_week)))
        if self.day_of_month is not None:
            parts.append(f"day {self.day_of_month}")
        if self.timezone:
            parts.append(self.timezone)
        if self.max_runtime is not None:
            parts.append(f"max {format_duration(self.max_runtime)}")
        return ", ".join(parts)

    # ── Declarative form ──────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "JobDefinition":
        """Build a job from its declarative dict. Raises InvalidScheduleError."""
        name = d.get("name")
        if not isinstance(name, str) or not name.strip():
            raise InvalidScheduleError("Job needs a non-empty 'name'")

        every = d.get("every")
        once = _flag(d, name, "once")
        if every is not None and once:
            raise InvalidScheduleError(
                f"Job {name!r}: 'every' and 'once' are mutually exclusive", job_name=name
            )
        if every is not None:
            try:
                schedule: ScheduleRule = IntervalRule(parse_duration(every))
            except ValueError as e:
                raise InvalidScheduleError(f"Job {name!r}: {e}", job_name=name) from e
        elif once:
            schedule = OnceRule()
        else:
            raise InvalidScheduleError(f"Job {name!r} needs 'every' or 'once'", job_name=name)

        window = None
        if d.get("from") is not None or d.get("to") is not None:
            window = TimeWindow.parse(d.get("from"), d.get("to"))

        days = d.get("on", d.get("days_of_week"))
        runtime = _first(d, "no_longer_than", "noLongerThan", "max_runtime")

        return cls(
            name=name,
            executor_ref=_executor_ref(d, name),
            schedule=schedule,
            window=window,
            days_of_week=parse_weekdays(days) if days is not None else None,
            day_of_month=_first(d, "day_of_month", "dayOfMonth"),
            timezone=d.get("timezone"),
            allow_concurrent=_flag(d, name, "allow_concurrent", "allowConcurrent"),
            max_runtime=parse_duration(runtime) if runtime is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name}
        if isinstance(self.schedule, IntervalRule):
            d["every"] = format_duration(self.schedule.seconds)
        else:
            d["once"] = True
        if self.window is not None:
            if self.window.start is not None:
                d["from"] = f"{self.window.start:%H:%M}"
            if self.window.end is not None:
                d["to"] = f"{self.window.end:%H:%M}"
        if self.days_of_week is not None:
            d["on"] = " ".join(WEEKDAYS[i] for i in sorted(self.days_of_week))
        if self.day_of_month is not None:
            d["day_of_month"] = self.day_of_month
        if self.timezone:
            d["timezone"] = self.timezone
        d["allow_concurrent"] = self.allow_concurrent
        if self.max_runtime is not None:
            d["no_longer_than"] = format_duration(self.max_runtime)
        d["run"] = self.executor_ref
        return d


def _first(d: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if d.get(key) is not None:
            return d[key]
    return None


def _flag(d: dict[str, Any], name: str, *keys: str) -> bool:
    value = _first(d, *keys)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise InvalidScheduleError(
            f"Job {name!r}: {keys[0]!r} must be true or false, got {value!r}", job_name=name
        )
    return value


def _executor_ref(d: dict[str, Any], name: str) -> Any:
    if d.get("run") is not None:
        return d["run"]
    if d.get("agent") is not None:
        return {"agent": d["agent"], "message": d.get("message", "")}
    if d.get("command") is not None:
        return {"command": d["command"]}
    raise InvalidScheduleError(
        f"Job {name!r} needs something to run ('run', 'agent' or 'command')", job_name=name
    )


def _zone(name: str, job_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidScheduleError(
            f"Unknown timezone {name!r} for job {job_name!r}", job_name=job_name
        ) from e
