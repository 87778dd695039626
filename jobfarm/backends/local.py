"""
In-process backends: a plain loop and a thread pool.
"""

import asyncio
import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor

from jobfarm.backends.base import Backend, as_callable
from jobfarm.config import Settings
from jobfarm.constants import BackendType
from jobfarm.types.job import DispatchResult, Job, ResultSet
from jobfarm.worker.handlers import JobFunction, execute_job

logger = logging.getLogger(__name__)


class SequentialBackend(Backend):
    """Runs jobs one after another in the calling process."""

    name = BackendType.SEQUENTIAL

    async def run(
        self,
        function: JobFunction | str,
        jobs: Sequence[Job],
        store: bool = True,
        results: ResultSet | None = None,
    ) -> DispatchResult:
        target = as_callable(function)
        results = self._prepare(jobs, results)

        for job_id, args in enumerate(jobs, start=1):
            outcome = execute_job(target, job_id, args, store)
            if not self._accept(job_id, outcome, results, store):
                return DispatchResult(success=False, results=results)
            # Let a caller's timeout land between jobs
            await asyncio.sleep(0)

        return DispatchResult(success=True, results=results)


class ThreadBackend(Backend):
    """
    Data-parallel map over a thread pool.

    Useful when the job function releases the GIL (I/O, numpy, native
    extensions). On the first failure, jobs that have not started yet are
    cancelled.
    """

    name = BackendType.THREADS

    def __init__(self, max_workers: int | None = None, settings: Settings | None = None):
        super().__init__(settings)
        self.max_workers = max_workers or self.settings.pool_max_workers

    async def run(
        self,
        function: JobFunction | str,
        jobs: Sequence[Job],
        store: bool = True,
        results: ResultSet | None = None,
    ) -> DispatchResult:
        target = as_callable(function)
        results = self._prepare(jobs, results)

        loop = asyncio.get_running_loop()
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="jobfarm")
        futures = [
            loop.run_in_executor(pool, execute_job, target, job_id, args, store)
            for job_id, args in enumerate(jobs, start=1)
        ]

        try:
            for next_done in asyncio.as_completed(futures):
                outcome = await next_done
                if not self._accept(outcome.job_id, outcome, results, store):
                    return DispatchResult(success=False, results=results)
        finally:
            for future in futures:
                future.cancel()
            pool.shutdown(wait=False, cancel_futures=True)

        return DispatchResult(success=True, results=results)
