"""
Cluster scheduler backend.

Every job is written to a protocol directory on a share visible to the
compute nodes and submitted as a scheduler task running
``jobfarm-worker run``. The dispatcher then polls the share for done
markers. Nodes can die or hang without the scheduler noticing, so a stall
watchdog periodically looks for tasks that report running but burn no CPU,
cancels them and resubmits their jobs.
"""

import asyncio
import logging
import shlex
from collections.abc import Sequence
from pathlib import Path

from jobfarm.backends.base import Backend
from jobfarm.cluster.hpc import HpcSchedulerClient, Scheduler
from jobfarm.config import Settings
from jobfarm.constants import (
    SPAN_SCHEDULER_SUBMIT,
    SUFFIX_DONE,
    SUFFIX_INPUT,
    SUFFIX_STARTED,
    BackendType,
    TaskState,
)
from jobfarm.errors import ConfigurationError, InfrastructureError
from jobfarm.observability.tracing import create_span
from jobfarm.protocol.files import JobFileProtocol
from jobfarm.types.job import DispatchResult, Job, ResultSet
from jobfarm.types.scheduler import Checkpoint
from jobfarm.watchdog.main import StallWatchdog
from jobfarm.worker.handlers import JobFunction, function_name

logger = logging.getLogger(__name__)


class ClusterSchedulerBackend(Backend):
    """
    Submit jobs to a batch scheduler and collect them through the share.

    Task handles map job ids to scheduler task ids. Only the handle of a
    resubmitted job changes; completed-job accounting is never reset.
    """

    name = BackendType.SCHEDULER

    def __init__(
        self,
        share_dir: str | Path | None,
        scheduler: Scheduler | None = None,
        scheduler_name: str | None = None,
        worker_command: str | None = None,
        max_tasks: int | None = None,
        poll_interval: float | None = None,
        watchdog: StallWatchdog | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the backend.

        Args:
            share_dir: Directory visible to the dispatcher and every node.
            scheduler: Scheduler client. Built from ``scheduler_name`` if not
                given.
            scheduler_name: Head node of the HPC cluster.
            worker_command: Command that runs the worker on a node.
            max_tasks: Maximum tasks per scheduler job.
            poll_interval: Seconds between share scans.
            watchdog: Stall watchdog. Built from settings if not given.
            settings: Settings to use.

        Raises:
            ConfigurationError: If the share or the scheduler is missing.
        """
        super().__init__(settings)

        if not share_dir:
            raise ConfigurationError("The scheduler backend requires share_dir")
        if scheduler is None:
            if not scheduler_name:
                raise ConfigurationError("The scheduler backend requires a scheduler name")
            scheduler = HpcSchedulerClient(
                scheduler_name,
                timeout=self.settings.scheduler_command_timeout_seconds,
            )

        self.share_dir = Path(share_dir)
        self.scheduler = scheduler
        self.worker_command = shlex.split(worker_command or self.settings.worker_command)
        self.max_tasks = max_tasks or self.settings.scheduler_max_tasks
        self.core_headroom = self.settings.scheduler_core_headroom
        self.max_cores = self.settings.scheduler_max_cores
        self.poll_interval = (
            poll_interval if poll_interval is not None
            else self.settings.poll_interval_seconds
        )
        self.watchdog = watchdog or StallWatchdog(scheduler, settings=self.settings)

        self.task_handles: dict[int, str] = {}
        self.task_states: dict[int, TaskState] = {}
        self.cancelled: list[str] = []
        self.resubmissions = 0

    async def submit(
        self,
        protocol: JobFileProtocol,
        function: str,
        ids: Sequence[int],
    ) -> dict[int, str]:
        """
        Submit jobs with the given ids.

        More than ``max_tasks`` ids are split into near-equal contiguous
        batches, each submitted as its own scheduler job. A batch whose ids
        form one contiguous range is added as a single parametric task;
        otherwise one task per id is added.

        Returns:
            Job id to scheduler task id for every submitted id.
        """
        ids = list(ids)
        n_ids = len(ids)
        if n_ids == 0:
            return {}

        n_batches = -(-n_ids // self.max_tasks)
        if n_batches > 1:
            bounds = [k * n_ids // n_batches for k in range(n_batches + 1)]
            handles: dict[int, str] = {}
            for lo, hi in zip(bounds, bounds[1:]):
                handles.update(await self.submit(protocol, function, ids[lo:hi]))
            return handles

        with create_span(SPAN_SCHEDULER_SUBMIT, tasks=n_ids):
            available = await self.scheduler.total_cores() - self.core_headroom
            num_cores = max(1, min(self.max_cores, available, n_ids))
            job_id = await self.scheduler.create_job(num_cores)

            start, end = min(ids), max(ids)
            parametric = n_ids > 1 and ids == list(range(start, end + 1))
            prefix = f"{job_id}.1" if parametric else job_id
            handles = {i: f"{prefix}.{k}" for k, i in enumerate(ids, start=1)}

            workdir = str(protocol.directory)
            command = [*self.worker_command, function, workdir]
            width = ["--width", str(protocol.width)]

            if parametric:
                await self.scheduler.add_task(
                    job_id, workdir, [*command, "*", *width], parametric=(start, end)
                )
            else:
                for i in ids:
                    await self.scheduler.add_task(job_id, workdir, [*command, str(i), *width])

            await self.scheduler.submit_job(job_id)

        for i in ids:
            self.task_states[i] = TaskState.QUEUED
        logger.info(
            f"Submitted {n_ids} tasks as scheduler job {job_id}",
            extra={"parametric": parametric, "num_cores": num_cores},
        )
        return handles

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

        protocol = JobFileProtocol.create(self.share_dir, settings=self.settings)
        collected: set[int] = set()
        self.task_states = {}

        try:
            for job_id, args in enumerate(jobs, start=1):
                protocol.write_input(job_id, args, store)

            self.task_handles = await self.submit(protocol, name, range(1, n_jobs + 1))
            self._checkpoint(protocol, name, n_jobs, collected)

            while True:
                for job_id in protocol.ids(SUFFIX_STARTED):
                    if self.task_states.get(job_id) == TaskState.QUEUED:
                        self.task_states[job_id] = TaskState.RUNNING

                for job_id in protocol.ids(SUFFIX_DONE):
                    if job_id in collected:
                        # A cancelled task finished after all
                        await protocol.release(job_id)
                        continue
                    outcome = await protocol.collect(job_id)
                    collected.add(job_id)
                    self.task_states[job_id] = TaskState.DONE
                    if not self._accept(job_id, outcome, results, store):
                        return DispatchResult(success=False, results=results)

                self._metrics.set_in_flight(self.name, n_jobs - len(collected))
                if len(collected) == n_jobs:
                    return DispatchResult(success=True, results=results)

                if self.watchdog.is_due():
                    self._checkpoint(protocol, name, n_jobs, collected)
                    await self.recover_stalled(protocol, name, collected)

                await asyncio.sleep(self.poll_interval)
        finally:
            self._metrics.set_in_flight(self.name, 0)
            await protocol.cleanup()

    async def recover_stalled(
        self,
        protocol: JobFileProtocol,
        function: str,
        collected: set[int],
    ) -> list[int]:
        """
        Run one watchdog pass and resubmit stalled jobs.

        Candidates are the jobs whose input is still on the share and which
        have not been collected. Each stalled task is cancelled, then its
        job is resubmitted and its handle replaced.

        Returns:
            The resubmitted job ids.
        """
        candidates = {
            job_id: self.task_handles[job_id]
            for job_id in protocol.ids(SUFFIX_INPUT)
            if job_id not in collected and job_id in self.task_handles
        }
        stalled = await self.watchdog.find_stalled(candidates)
        if not stalled:
            return []

        for job_id in stalled:
            self.task_states[job_id] = TaskState.STALLED
            task_id = self.task_handles[job_id]
            try:
                await self.scheduler.cancel_task(task_id)
            except InfrastructureError as e:
                logger.warning(f"Could not cancel task {task_id}: {e}", extra={"job_id": job_id})
            self.cancelled.append(task_id)

        self.task_handles.update(await self.submit(protocol, function, stalled))
        self.resubmissions += len(stalled)
        self._metrics.record_resubmitted(len(stalled))

        logger.info(f"Resubmitted {len(stalled)} stalled jobs", extra={"job_ids": stalled})
        return stalled

    def _checkpoint(
        self,
        protocol: JobFileProtocol,
        function: str,
        n_jobs: int,
        collected: set[int],
    ) -> None:
        protocol.write_checkpoint(
            Checkpoint(
                function_name=function,
                n_jobs=n_jobs,
                task_handles=dict(self.task_handles),
                collected=sorted(collected),
                resubmissions=self.resubmissions,
            )
        )
