"""
Tickwork exception hierarchy.

Every error in the system inherits from TickworkError.
Each subsystem has its own error class for targeted catching.

Usage:
    try:
        registry.add(job)
    except DuplicateJobError:
        # name already taken, remove it first
    except InvalidScheduleError as e:
        # bad window / weekday / day-of-month
    except TickworkError as e:
        # anything else from Tickwork
"""


class TickworkError(Exception):
    """Base exception for all Tickwork errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ━━━ Infrastructure ━━━


class ConfigError(TickworkError):
    """Configuration is invalid, missing, or malformed."""

    pass


class StorageError(TickworkError):
    """Run-record store failure — database errors, corruption, etc."""

    pass


# ━━━ Scheduling ━━━


class SchedulerError(TickworkError):
    """Base for job registration and scheduling errors."""

    def __init__(self, message: str, job_name: str = "", details: dict | None = None):
        self.job_name = job_name
        super().__init__(message, details)


class DuplicateJobError(SchedulerError):
    """A job with this name is already registered."""

    pass


class JobNotFoundError(SchedulerError):
    """No job with this name is registered."""

    pass


class InvalidScheduleError(SchedulerError):
    """Malformed schedule: bad window, weekday, day-of-month, or duration."""

    pass


# ━━━ Execution ━━━


class ExecutionError(TickworkError):
    """
    Raised by an executor to report a failed run.

    Recorded as a FAILURE outcome on the job's run record; never
    propagated past the dispatcher.
    """

    def __init__(
        self,
        message: str,
        executor: str = "",
        details: dict | None = None,
    ):
        self.executor = executor
        super().__init__(message, details)
