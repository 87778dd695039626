"""
Type definitions for jobfarm.
Contains job, option and scheduler types, grouped by concern.
"""

from jobfarm.types.job import (
    DispatchResult,
    Job,
    JobInput,
    JobOutcome,
    ResultSet,
    as_job,
)
from jobfarm.types.options import (
    DispatchOptions,
    PoolOptions,
    QueueOptions,
    SchedulerOptions,
)
from jobfarm.types.scheduler import Checkpoint, TaskInfo

__all__ = [
    # Job types
    "Job",
    "JobInput",
    "JobOutcome",
    "ResultSet",
    "DispatchResult",
    "as_job",
    # Option types
    "DispatchOptions",
    "PoolOptions",
    "QueueOptions",
    "SchedulerOptions",
    # Scheduler types
    "TaskInfo",
    "Checkpoint",
]
