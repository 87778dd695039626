"""
Clients for external execution infrastructure: the HPC cluster scheduler
and the Redis-backed queue daemon.
"""

from jobfarm.cluster.hpc import HpcSchedulerClient, Scheduler
from jobfarm.cluster.parsing import parse_duration, parse_field, parse_number
from jobfarm.cluster.queue import QueueClient, QueueMessage, RedisQueueClient

__all__ = [
    "Scheduler",
    "HpcSchedulerClient",
    "QueueClient",
    "QueueMessage",
    "RedisQueueClient",
    "parse_field",
    "parse_number",
    "parse_duration",
]
