"""Tests for tickwork/scheduler/job.py"""
from __future__ import annotations

import datetime

import pytest

from tickwork.core.errors import InvalidScheduleError
from tickwork.scheduler.job import (
    JobDefinition,
    TimeWindow,
    parse_clock,
    parse_duration,
    parse_weekdays,
)
from tickwork.scheduler.rules import IntervalRule, OnceRule


# ── parse_duration ───────────────────────────────────────────────────────────

class TestParseDuration:
    @pytest.mark.parametrize(
        "text,seconds",
        [
            ("30 minutes", 1800),
            ("5m", 300),
            ("1 hour", 3600),
            ("2h", 7200),
            ("90s", 90),
            ("1 day", 86400),
            ("1h 30m", 5400),
            ("0.5h", 1800),
            ("45", 45),
            (120, 120),
        ],
    )
    def test_valid(self, text, seconds):
        assert parse_duration(text) == seconds

    @pytest.mark.parametrize("text", ["", "soon", "5 weeks", "30 5m", "-5m", "0m", True, None])
    def test_invalid(self, text):
        with pytest.raises(InvalidScheduleError):
            parse_duration(text)


# ── parse_weekdays ───────────────────────────────────────────────────────────

class TestParseWeekdays:
    def test_space_separated_tags(self):
        assert parse_weekdays("mon tue wed thu fri") == frozenset(range(5))

    def test_commas_and_full_names(self):
        assert parse_weekdays("Monday, friday") == frozenset({0, 4})

    def test_list_and_ints(self):
        assert parse_weekdays(["sat", 6]) == frozenset({5, 6})

    def test_groups(self):
        assert parse_weekdays("weekdays") == frozenset(range(5))
        assert parse_weekdays("weekends") == frozenset({5, 6})

    @pytest.mark.parametrize("value", ["funday", "", [7], ["mon", True]])
    def test_invalid(self, value):
        with pytest.raises(InvalidScheduleError):
            parse_weekdays(value)


# ── TimeWindow ───────────────────────────────────────────────────────────────

class TestTimeWindow:
    def test_parse_clock(self):
        assert parse_clock("09:05") == datetime.time(9, 5)
        assert parse_clock("9:05") == datetime.time(9, 5)

    @pytest.mark.parametrize("value", ["24:00", "9", "09:60", "nine"])
    def test_parse_clock_invalid(self, value):
        with pytest.raises(InvalidScheduleError):
            parse_clock(value)

    def test_wrapping_window_rejected(self):
        with pytest.raises(InvalidScheduleError, match="wraps past midnight"):
            TimeWindow.parse("22:00", "06:00")

    def test_empty_window_rejected(self):
        with pytest.raises(InvalidScheduleError):
            TimeWindow()

    def test_single_minute_window(self):
        window = TimeWindow.parse("12:00", "12:00")
        assert window.contains(datetime.time(12, 0, 30))
        assert not window.contains(datetime.time(12, 1))

    def test_description(self):
        assert TimeWindow.parse("09:00", "17:00").description == "09:00-17:00"
        assert TimeWindow.parse(end="06:00").description == "00:00-06:00"


# ── JobDefinition ────────────────────────────────────────────────────────────

class TestJobDefinition:
    def test_from_dict_interval(self):
        job = JobDefinition.from_dict({
            "name": "Health Check",
            "every": "30 minutes",
            "noLongerThan": "5 minutes",
            "run": {"command": "curl -fsS localhost/health"},
        })
        assert job.schedule == IntervalRule(1800)
        assert job.max_runtime == 300
        assert job.allow_concurrent is False
        assert job.timezone is None
        assert job.executor_ref == {"command": "curl -fsS localhost/health"}

    def test_from_dict_once_with_constraints(self):
        job = JobDefinition.from_dict({
            "name": "Daily Report",
            "once": True,
            "from": "09:00",
            "to": "17:00",
            "on": "mon tue wed thu fri",
            "dayOfMonth": 1,
            "timezone": "Europe/Berlin",
            "allowConcurrent": True,
            "agent": "writer",
            "message": "Write the report",
        })
        assert isinstance(job.schedule, OnceRule)
        assert job.window == TimeWindow.parse("09:00", "17:00")
        assert job.days_of_week == frozenset(range(5))
        assert job.day_of_month == 1
        assert job.allow_concurrent is True
        assert job.executor_ref == {"agent": "writer", "message": "Write the report"}
        assert job.tzinfo is not None

    def test_to_dict_round_trips_through_from_dict(self):
        job = JobDefinition.from_dict({
            "name": "Backups",
            "every": "6h",
            "from": "01:00",
            "on": "sat sun",
            "timezone": "UTC",
            "no_longer_than": "1h",
            "command": "backup.sh",
        })
        assert JobDefinition.from_dict(job.to_dict()) == job

    def test_describe(self):
        job = JobDefinition.from_dict({
            "name": "x",
            "every": "30m",
            "from": "09:00",
            "to": "17:00",
            "on": "weekdays",
            "no_longer_than": "5m",
            "command": "true",
        })
        assert job.describe() == "every 30m, 09:00-17:00, mon tue wed thu fri, max 5m"

    @pytest.mark.parametrize(
        "data,match",
        [
            ({"every": "5m", "command": "x"}, "name"),
            ({"name": "a", "command": "x"}, "'every' or 'once'"),
            ({"name": "a", "every": "5m", "once": True, "command": "x"}, "mutually exclusive"),
            ({"name": "a", "every": "5m"}, "something to run"),
            ({"name": "a", "every": "0.5s", "command": "x"}, "at least 1 second"),
            ({"name": "a", "once": True, "from": "18:00", "to": "08:00", "command": "x"}, "midnight"),
            ({"name": "a", "once": True, "on": "someday", "command": "x"}, "weekday"),
            ({"name": "a", "once": True, "day_of_month": 32, "command": "x"}, "1-31"),
            ({"name": "a", "once": True, "day_of_month": 0, "command": "x"}, "1-31"),
            ({"name": "a", "once": True, "timezone": "Mars/Olympus", "command": "x"}, "timezone"),
            ({"name": "a", "once": True, "no_longer_than": "forever", "command": "x"}, "duration"),
            ({"name": "a", "once": "false", "command": "x"}, "'once' must be true or false"),
            ({"name": "a", "once": 1, "command": "x"}, "'once' must be true or false"),
            (
                {"name": "a", "every": "5m", "allowConcurrent": "false", "command": "x"},
                "'allow_concurrent' must be true or false",
            ),
        ],
    )
    def test_from_dict_rejects_invalid(self, data, match):
        with pytest.raises(InvalidScheduleError, match=match):
            JobDefinition.from_dict(data)

    def test_explicit_false_flags(self):
        job = JobDefinition.from_dict(
            {"name": "a", "every": "5m", "once": False, "allow_concurrent": False, "command": "x"}
        )
        assert isinstance(job.schedule, IntervalRule)
        assert job.allow_concurrent is False

    def test_is_immutable(self):
        job = JobDefinition(name="a", executor_ref="true", schedule=OnceRule())
        with pytest.raises(AttributeError):
            job.name = "b"  # type: ignore[misc]

    def test_direct_construction_validates(self):
        with pytest.raises(InvalidScheduleError):
            JobDefinition(name="a", executor_ref="x", schedule=OnceRule(), max_runtime=0)
        with pytest.raises(InvalidScheduleError):
            JobDefinition(name="", executor_ref="x", schedule=OnceRule())
        with pytest.raises(InvalidScheduleError):
            JobDefinition(name="a", executor_ref="x", schedule="daily")  # type: ignore[arg-type]
