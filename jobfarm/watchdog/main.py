"""
Stall watchdog for cluster scheduler tasks.

A scheduler's notion of "running" can be stale: a task on a dead node or a
hung worker process keeps reporting running forever. The watchdog compares
consumed CPU time with elapsed wall time; a task that has been running past
a grace period while using almost no CPU is considered stalled and handed
back to the backend for cancel-and-resubmit.
"""

import logging
import time
from collections.abc import Mapping

from jobfarm.cluster.hpc import Scheduler
from jobfarm.config import Settings, get_settings
from jobfarm.constants import SPAN_STALL_WATCHDOG
from jobfarm.errors import InfrastructureError
from jobfarm.observability.metrics import get_metrics
from jobfarm.observability.tracing import create_span
from jobfarm.types.scheduler import TaskInfo

logger = logging.getLogger(__name__)


def is_stalled(info: TaskInfo, grace_seconds: float, cpu_ratio_threshold: float) -> bool:
    """
    Classify one task.

    Stalled iff the scheduler reports it running, it has been running for
    longer than ``grace_seconds``, and its CPU time per wall second is below
    ``cpu_ratio_threshold``.
    """
    return (
        info.is_running
        and info.elapsed_seconds > grace_seconds
        and info.cpu_ratio < cpu_ratio_threshold
    )


class StallWatchdog:
    """
    Periodic stall detector.

    The scheduler backend calls :meth:`is_due` on every poll and
    :meth:`find_stalled` once per interval.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        interval_seconds: float | None = None,
        grace_seconds: float | None = None,
        cpu_ratio_threshold: float | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the watchdog.

        Args:
            scheduler: Scheduler used to view task state.
            interval_seconds: Seconds between passes.
            grace_seconds: Minimum elapsed time before a task can stall.
            cpu_ratio_threshold: CPU/wall ratio below which a task stalls.
            settings: Settings supplying the defaults.
        """
        settings = settings or get_settings()

        self.scheduler = scheduler
        self.interval = (
            interval_seconds if interval_seconds is not None
            else settings.watchdog_interval_seconds
        )
        self.grace_seconds = (
            grace_seconds if grace_seconds is not None
            else settings.stall_grace_seconds
        )
        self.cpu_ratio_threshold = (
            cpu_ratio_threshold if cpu_ratio_threshold is not None
            else settings.stall_cpu_ratio
        )
        self.passes = 0
        self._last_check = time.monotonic()
        self._metrics = get_metrics()

    def is_due(self) -> bool:
        """Check whether a pass is due."""
        return time.monotonic() - self._last_check >= self.interval

    async def find_stalled(self, handles: Mapping[int, str]) -> list[int]:
        """
        Run one pass over the candidate tasks.

        A task whose state cannot be queried is skipped for this pass.

        Args:
            handles: Candidate job ids mapped to their current task ids.

        Returns:
            Sorted job ids whose tasks are stalled.
        """
        stalled: list[int] = []

        with create_span(SPAN_STALL_WATCHDOG, candidates=len(handles)):
            for job_id, task_id in sorted(handles.items()):
                try:
                    info = await self.scheduler.view_task(task_id)
                except InfrastructureError as e:
                    logger.warning(
                        f"Could not view task {task_id}: {e}",
                        extra={"job_id": job_id},
                    )
                    continue

                if is_stalled(info, self.grace_seconds, self.cpu_ratio_threshold):
                    logger.warning(
                        "Task stalled",
                        extra={
                            "job_id": job_id,
                            "task_id": task_id,
                            "elapsed_seconds": info.elapsed_seconds,
                            "cpu_ratio": round(info.cpu_ratio, 4),
                        },
                    )
                    stalled.append(job_id)

        self.passes += 1
        self._last_check = time.monotonic()

        logger.info(f"Discovered {len(stalled)} stalled jobs")
        if stalled:
            self._metrics.record_stalled(len(stalled))
        return stalled
