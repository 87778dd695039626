"""
Backend interface shared by every execution strategy.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, ClassVar

from jobfarm.config import Settings, get_settings
from jobfarm.constants import BackendType
from jobfarm.observability.metrics import get_metrics
from jobfarm.types.job import DispatchResult, Job, JobOutcome, ResultSet
from jobfarm.worker.handlers import JobFunction, resolve_function

logger = logging.getLogger(__name__)


def as_callable(function: JobFunction | str) -> JobFunction:
    """Resolve a function reference for in-process execution."""
    if isinstance(function, str):
        return resolve_function(function)
    return function


class Backend(ABC):
    """
    Strategy for executing a batch of jobs.

    Implementations write each result slot at most once, stop at the first
    failed job, and leave results collected before the failure in place.
    """

    name: ClassVar[BackendType]

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._metrics = get_metrics()

    @abstractmethod
    async def run(
        self,
        function: JobFunction | str,
        jobs: Sequence[Job],
        store: bool = True,
        results: ResultSet | None = None,
    ) -> DispatchResult:
        """
        Execute every job and collect the results.

        Args:
            function: Callable or function name.
            jobs: Argument tuples; job ``i`` has id ``i + 1``.
            store: Keep return values. When False jobs still run and
                errors are still detected but values are not transmitted.
            results: Preallocated result set to fill, so a caller that
                cancels the run keeps partial progress.

        Returns:
            Overall success flag and the job-ordered results.
        """
        ...

    def _accept(
        self,
        job_id: int,
        outcome: JobOutcome,
        results: ResultSet,
        store: bool,
    ) -> bool:
        """
        Record one collected outcome.

        Returns:
            False if the job failed and the run must abort.
        """
        if not outcome.success:
            self._metrics.record_job_completed(self.name, "failed")
            logger.error(
                "Job failed, aborting",
                extra={"job_id": job_id, "error": outcome.error, "backend": self.name},
            )
            return False

        self._metrics.record_job_completed(self.name, "succeeded")
        if store:
            results.set(job_id - 1, outcome.value)
        logger.debug(
            f"Collected job {job_id} ({results.filled}/{len(results)})",
            extra={"backend": self.name},
        )
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    @staticmethod
    def _prepare(jobs: Sequence[Job], results: ResultSet | None) -> ResultSet:
        if results is None:
            return ResultSet(len(jobs))
        if len(results) != len(jobs):
            raise ValueError(f"Result set has {len(results)} slots for {len(jobs)} jobs")
        return results


def describe(value: Any) -> str:
    """Short printable form of a job function for log lines."""
    if isinstance(value, str):
        return value
    return getattr(value, "__qualname__", repr(value))
