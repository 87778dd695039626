"""
Cluster scheduler type definitions.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import BaseModel, Field


@dataclass
class TaskInfo:
    """
    Scheduler-reported view of one task.
    Used by the stall watchdog to judge liveness.
    """

    task_id: str
    state: str
    elapsed_seconds: float
    user_time_seconds: float

    @property
    def cpu_ratio(self) -> float:
        """Consumed CPU time per second of wall time."""
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.user_time_seconds / self.elapsed_seconds

    @property
    def is_running(self) -> bool:
        return self.state.strip().lower() == "running"


class Checkpoint(BaseModel):
    """
    Progress snapshot written on every watchdog pass.

    Lets an operator inspect or resume a batch if the dispatching process
    dies.
    """

    function_name: str
    n_jobs: int
    task_handles: dict[int, str]
    collected: list[int]
    resubmissions: int = 0
    written_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
