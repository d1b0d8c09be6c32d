"""
Tickwork Event System — types and constants.

The scheduler reports everything it does as an event: ticks, dispatches,
completions, skipped occurrences and per-job errors. Subscribers (the
event logger, a status display) react without the scheduler knowing
about them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
import time
import uuid


class EventType:
    """
    Event type constants.

    Hierarchical naming: "category:action"
    Supports wildcard matching: "job:*" matches "job:started"
    """

    # Scheduler lifecycle
    SCHEDULER_START = "scheduler:start"
    SCHEDULER_STOP = "scheduler:stop"
    SCHEDULER_TICK = "scheduler:tick"

    # Registry
    JOB_ADDED = "job:added"
    JOB_REMOVED = "job:removed"

    # Occurrences
    JOB_STARTED = "job:started"
    JOB_SKIPPED = "job:skipped"
    JOB_COMPLETED = "job:completed"
    JOB_FAILED = "job:failed"
    JOB_TIMED_OUT = "job:timed_out"
    JOB_ERROR = "job:error"

    # Wildcard
    ALL = "*"


@dataclass(slots=True)
class Event:
    """
    A single event in Tickwork.

    Events are typed (hierarchical string), timestamped, and carry an
    event-specific payload in ``data``. ``source`` names the emitter,
    e.g. "engine" or "job:Daily Report".
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: float = field(default_factory=time.time)
