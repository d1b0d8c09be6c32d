"""
Tickwork — declarative recurring jobs on an asyncio scheduler.

Public API:
    from tickwork import SchedulerEngine, JobDefinition, ShellExecutor
"""

__version__ = "0.1.0"

# Core
from tickwork.core.bus import EventBus
from tickwork.core.config import TickworkConfig
from tickwork.core.errors import (
    DuplicateJobError,
    ExecutionError,
    InvalidScheduleError,
    JobNotFoundError,
    TickworkError,
)
from tickwork.core.events import Event, EventType

# Scheduler
from tickwork.scheduler.dispatcher import Dispatcher
from tickwork.scheduler.engine import ScheduleEntry, SchedulerEngine
from tickwork.scheduler.executors import (
    CallableExecutor,
    CancellationToken,
    ExecutionResult,
    Executor,
    ShellExecutor,
)
from tickwork.scheduler.job import JobDefinition, TimeWindow
from tickwork.scheduler.registry import JobRegistry
from tickwork.scheduler.rules import IntervalRule, OnceRule, is_due
from tickwork.scheduler.store import InMemoryRunStore, RunStore, SQLiteRunStore
from tickwork.scheduler.tracker import Outcome, RunRecord, RunTracker

__all__ = [
    # Core
    "EventBus",
    "TickworkConfig",
    "TickworkError",
    "DuplicateJobError",
    "InvalidScheduleError",
    "JobNotFoundError",
    "ExecutionError",
    "Event",
    "EventType",
    # Scheduler
    "SchedulerEngine",
    "ScheduleEntry",
    "Dispatcher",
    "JobRegistry",
    "JobDefinition",
    "TimeWindow",
    "OnceRule",
    "IntervalRule",
    "is_due",
    "RunTracker",
    "RunRecord",
    "Outcome",
    "RunStore",
    "InMemoryRunStore",
    "SQLiteRunStore",
    "Executor",
    "CallableExecutor",
    "ShellExecutor",
    "ExecutionResult",
    "CancellationToken",
]
