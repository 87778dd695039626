"""
Execution backends.
One implementation per backend type; the engine selects among them.
"""

from jobfarm.backends.base import Backend
from jobfarm.backends.local import SequentialBackend, ThreadBackend
from jobfarm.backends.pool import LocalPoolBackend, spawn_worker
from jobfarm.backends.queue import ClusterQueueBackend
from jobfarm.backends.scheduler import ClusterSchedulerBackend

__all__ = [
    "Backend",
    "SequentialBackend",
    "ThreadBackend",
    "LocalPoolBackend",
    "ClusterQueueBackend",
    "ClusterSchedulerBackend",
    "spawn_worker",
]
