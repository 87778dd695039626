"""
Local process pool backend.

Jobs run as independent worker processes (``jobfarm-worker run``) that
talk to the dispatcher only through the filesystem protocol. At most
``max_workers`` jobs are launched-but-not-collected at any time.

A worker that crashes never writes its done marker; the dispatcher reports
this once in the log and keeps waiting. Pass an overall ``timeout`` to the
engine to bound such a run.
"""

import asyncio
import logging
import os
import sys
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from jobfarm.backends.base import Backend
from jobfarm.config import Settings
from jobfarm.constants import BackendType, SUFFIX_DONE
from jobfarm.protocol.files import JobFileProtocol
from jobfarm.types.job import DispatchResult, Job, ResultSet
from jobfarm.worker.handlers import JobFunction, function_name

logger = logging.getLogger(__name__)

# Starts the worker for one job; returns the process handle if it owns one.
Launcher = Callable[[str, JobFileProtocol, int], Awaitable[asyncio.subprocess.Process | None]]

TERMINATE_GRACE_SECONDS = 5.0


async def spawn_worker(
    function: str,
    protocol: JobFileProtocol,
    job_id: int,
) -> asyncio.subprocess.Process:
    """Launch a detached local worker process for one job."""
    return await asyncio.create_subprocess_exec(
        sys.executable,
        "-m",
        "jobfarm.worker.main",
        "run",
        function,
        str(protocol.directory),
        str(job_id),
        "--width",
        str(protocol.width),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        start_new_session=True,
    )


class LocalPoolBackend(Backend):
    """
    Admission-controlled pool of local worker processes.

    Loop:
    1. Launch jobs until ``max_workers`` are in flight or all are launched
    2. Collect every job whose done marker appeared, freeing its slot
    3. Sleep ``poll_interval`` and repeat until all jobs are collected
    """

    name = BackendType.POOL

    def __init__(
        self,
        max_workers: int | None = None,
        poll_interval: float | None = None,
        scratch_root: str | Path | None = None,
        launcher: Launcher | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the pool.

        Args:
            max_workers: Concurrency bound. Defaults to the core count.
            poll_interval: Seconds between protocol directory scans.
            scratch_root: Parent of the protocol directory.
            launcher: Starts one worker. Defaults to :func:`spawn_worker`.
            settings: Settings to use.
        """
        super().__init__(settings)

        self.max_workers = max_workers or self.settings.pool_max_workers or os.cpu_count() or 1
        self.poll_interval = (
            poll_interval if poll_interval is not None
            else self.settings.poll_interval_seconds
        )
        self.scratch_root = scratch_root
        self.launcher = launcher or spawn_worker
        self.peak_running = 0

        self._processes: dict[int, asyncio.subprocess.Process] = {}
        self._collected: set[int] = set()
        self._reported_crashes: set[int] = set()

    async def run(
        self,
        function: JobFunction | str,
        jobs: Sequence[Job],
        store: bool = True,
        results: ResultSet | None = None,
    ) -> DispatchResult:
        name = function_name(function)
        results = self._prepare(jobs, results)
        n_jobs = len(jobs)
        if n_jobs == 0:
            return DispatchResult(success=True, results=results)

        protocol = JobFileProtocol.create(self.scratch_root, settings=self.settings)
        launched = running = completed = 0

        logger.info(
            f"Running {n_jobs} jobs on {self.max_workers} local workers",
            extra={"directory": str(protocol.directory)},
        )

        try:
            while True:
                while running < self.max_workers and launched < n_jobs:
                    launched += 1
                    running += 1
                    protocol.write_input(launched, jobs[launched - 1], store)
                    process = await self.launcher(name, protocol, launched)
                    if process is not None:
                        self._processes[launched] = process
                    self.peak_running = max(self.peak_running, running)

                self._metrics.set_in_flight(self.name, running)

                for job_id in protocol.ids(SUFFIX_DONE):
                    outcome = await protocol.collect(job_id)
                    self._collected.add(job_id)
                    running -= 1
                    completed += 1
                    if not self._accept(job_id, outcome, results, store):
                        return DispatchResult(success=False, results=results)

                if completed == n_jobs:
                    return DispatchResult(success=True, results=results)

                self._report_crashed(protocol)
                await asyncio.sleep(self.poll_interval)
        finally:
            await self._reap_workers()
            self._metrics.set_in_flight(self.name, 0)
            await protocol.cleanup()

    def _report_crashed(self, protocol: JobFileProtocol) -> None:
        """Log workers that exited without writing their done marker."""
        for job_id, process in self._processes.items():
            if process.returncode is None or job_id in self._collected:
                continue
            if job_id in self._reported_crashes or protocol.path(job_id, SUFFIX_DONE).exists():
                continue
            self._reported_crashes.add(job_id)
            logger.error(
                "Worker exited without completing its job; the run will not finish",
                extra={"job_id": job_id, "returncode": process.returncode},
            )

    async def _reap_workers(self) -> None:
        """
        Wait for every owned worker to exit.

        Workers whose job was not collected (abort or cancellation) are
        terminated first.
        """
        unfinished = [
            process
            for job_id, process in self._processes.items()
            if job_id not in self._collected and process.returncode is None
        ]
        for process in unfinished:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        if unfinished:
            logger.info(f"Terminating {len(unfinished)} unfinished workers")

        for process in self._processes.values():
            try:
                await asyncio.wait_for(process.wait(), TERMINATE_GRACE_SECONDS)
            except TimeoutError:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        self._processes.clear()
        self._collected.clear()
        self._reported_crashes.clear()
