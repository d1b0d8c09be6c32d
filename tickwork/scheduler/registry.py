"""
JobRegistry — in-memory mapping of job name to JobDefinition.

Registration order is preserved so status displays are stable. Removing
a job also drops its run record, so a job re-added under the same name
starts from NEVER_RUN.
"""

from __future__ import annotations

import logging

from tickwork.core.errors import DuplicateJobError, InvalidScheduleError, JobNotFoundError
from tickwork.scheduler.job import JobDefinition
from tickwork.scheduler.tracker import RunTracker

logger = logging.getLogger(__name__)


class JobRegistry:
    """
    Usage:
        registry = JobRegistry(tracker)
        registry.add(JobDefinition.from_dict({...}))

        for job in registry.list():   # insertion order
            ...

        await registry.remove("Daily Report")
    """

    def __init__(self, tracker: RunTracker) -> None:
        self._tracker = tracker
        self._jobs: dict[str, JobDefinition] = {}

    def add(self, job: JobDefinition) -> None:
        """
        Register *job*.

        Raises:
            DuplicateJobError: a job with this name exists (remove it first)
            InvalidScheduleError: *job* is not a JobDefinition
        """
        if not isinstance(job, JobDefinition):
            raise InvalidScheduleError(f"Not a job definition: {job!r}")
        if job.name in self._jobs:
            raise DuplicateJobError(f"Job {job.name!r} already exists", job_name=job.name)
        # copy-on-write so list()/get() never see a half-updated dict
        self._jobs = {**self._jobs, job.name: job}
        logger.debug(f"Registered job {job.name!r}: {job.describe()}")

    async def remove(self, name: str) -> bool:
        """Unregister *name* and forget its run record. Returns True if it existed."""
        if name not in self._jobs:
            return False
        self._jobs = {k: v for k, v in self._jobs.items() if k != name}
        await self._tracker.forget(name)
        logger.debug(f"Removed job {name!r}")
        return True

    def get(self, name: str) -> JobDefinition | None:
        return self._jobs.get(name)

    def require(self, name: str) -> JobDefinition:
        """
        Get a registered job by name.

        Raises:
            JobNotFoundError: no job with this name is registered
        """
        job = self._jobs.get(name)
        if job is None:
            raise JobNotFoundError(f"Job {name!r} is not registered", job_name=name)
        return job

    def list(self) -> list[JobDefinition]:
        return list(self._jobs.values())

    @property
    def names(self) -> list[str]:
        return list(self._jobs)

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)
