"""
Client for a Windows HPC Server style cluster scheduler.

Wraps the scheduler's command-line tools (``cluscfg``, ``job``, ``task``).
Every call runs one command; a non-zero exit status is an infrastructure
error carrying the tool's raw output.
"""

import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from jobfarm.constants import (
    HPC_KEY_CREATED_JOB,
    HPC_KEY_ELAPSED,
    HPC_KEY_STATE,
    HPC_KEY_TOTAL_CORES,
    HPC_KEY_USER_TIME,
)
from jobfarm.errors import InfrastructureError
from jobfarm.cluster.parsing import parse_duration, parse_field, parse_number
from jobfarm.types.scheduler import TaskInfo

logger = logging.getLogger(__name__)


@runtime_checkable
class Scheduler(Protocol):
    """Operations the scheduler backend needs from a cluster scheduler."""

    async def total_cores(self) -> int:
        ...

    async def create_job(self, num_cores: int) -> str:
        ...

    async def add_task(
        self,
        job_id: str,
        workdir: str,
        command: Sequence[str],
        parametric: tuple[int, int] | None = None,
    ) -> None:
        ...

    async def submit_job(self, job_id: str) -> None:
        ...

    async def view_task(self, task_id: str) -> TaskInfo:
        ...

    async def cancel_task(self, task_id: str) -> None:
        ...


class HpcSchedulerClient:
    """
    :class:`Scheduler` over the HPC command-line tools.

    Args:
        scheduler: Head node name, passed as ``/scheduler:<name>``.
        timeout: Seconds before a single command is killed.
    """

    def __init__(self, scheduler: str, timeout: float = 120.0):
        self.scheduler = scheduler
        self.timeout = timeout

    @property
    def scheduler_arg(self) -> str:
        return f"/scheduler:{self.scheduler}"

    async def _run(self, *cmd: str) -> str:
        command_line = " ".join(cmd)
        logger.debug(f"Running: {command_line}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise InfrastructureError(f"Cannot run '{command_line}'", output=str(e)) from e

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), self.timeout)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise InfrastructureError(
                f"'{command_line}' timed out after {self.timeout}s"
            ) from e

        output = stdout.decode(errors="replace").rstrip("\n")
        if proc.returncode:
            raise InfrastructureError(
                f"'{command_line}' failed with exit status {proc.returncode}",
                output=output,
                returncode=proc.returncode,
            )
        return output

    async def total_cores(self) -> int:
        """Total compute cores in the cluster."""
        msg = await self._run("cluscfg", "view", self.scheduler_arg)
        return int(parse_number(parse_field(msg, HPC_KEY_TOTAL_CORES)))

    async def create_job(self, num_cores: int) -> str:
        """Create an empty job container; returns its id."""
        msg = await self._run("job", "new", f"/numcores:{num_cores}-*", self.scheduler_arg)
        job_id = parse_field(msg, HPC_KEY_CREATED_JOB)
        logger.info(f"Created scheduler job {job_id}", extra={"num_cores": num_cores})
        return job_id

    async def add_task(
        self,
        job_id: str,
        workdir: str,
        command: Sequence[str],
        parametric: tuple[int, int] | None = None,
    ) -> None:
        """
        Add a task to a job.

        With ``parametric=(start, end)`` one parametric task is added that
        expands into one subtask per index, the ``*`` in ``command`` being
        replaced by the index.
        """
        args = ["job", "add", job_id, self.scheduler_arg, f"/workdir:{workdir}"]
        if parametric is not None:
            start, end = parametric
            args.append(f"/parametric:{start}-{end}")
        args.extend(command)
        await self._run(*args)

    async def submit_job(self, job_id: str) -> None:
        """Submit a job with all of its tasks."""
        await self._run("job", "submit", f"/id:{job_id}", self.scheduler_arg)
        logger.info(f"Submitted scheduler job {job_id}")

    async def view_task(self, task_id: str) -> TaskInfo:
        """State, elapsed wall time and consumed CPU time of a task."""
        msg = await self._run("task", "view", task_id, self.scheduler_arg)
        return TaskInfo(
            task_id=task_id,
            state=parse_field(msg, HPC_KEY_STATE),
            elapsed_seconds=parse_duration(parse_field(msg, HPC_KEY_ELAPSED)),
            user_time_seconds=parse_duration(parse_field(msg, HPC_KEY_USER_TIME)),
        )

    async def cancel_task(self, task_id: str) -> None:
        """Cancel a task."""
        await self._run("task", "cancel", task_id, self.scheduler_arg)
        logger.info(f"Cancelled task {task_id}")
