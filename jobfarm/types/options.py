"""
Per-invocation dispatch options.

Unset fields fall back to the values in :class:`jobfarm.config.Settings`.
"""

from pydantic import BaseModel, Field

from jobfarm.constants import BackendType


class PoolOptions(BaseModel):
    """Options for the local process pool."""

    max_workers: int | None = Field(default=None, ge=1)


class QueueOptions(BaseModel):
    """Options for the Redis-backed queue daemon."""

    group: int = Field(default=1, ge=1)
    redis_url: str | None = None
    queue_name: str | None = None


class SchedulerOptions(BaseModel):
    """
    Options for the HPC cluster scheduler.

    ``scheduler`` (head node) and ``share_dir`` (directory visible to every
    compute node) are required; ``worker_command`` points to a prebuilt worker
    executable on the nodes.
    """

    scheduler: str | None = None
    share_dir: str | None = None
    worker_command: str | None = None
    max_tasks: int | None = Field(default=None, ge=1)


class DispatchOptions(BaseModel):
    """Backend selection and options for one engine invocation."""

    backend: BackendType = BackendType.SEQUENTIAL
    store: bool = True
    timeout: float | None = Field(default=None, gt=0)
    poll_interval: float | None = Field(default=None, ge=0)
    pool: PoolOptions = Field(default_factory=PoolOptions)
    queue: QueueOptions = Field(default_factory=QueueOptions)
    scheduler: SchedulerOptions = Field(default_factory=SchedulerOptions)
