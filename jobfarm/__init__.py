"""
jobfarm

Embarrassingly parallel function evaluation: runs one function over a batch
of independent argument tuples on a sequential, threaded, local-process,
Redis-queue or HPC-scheduler backend and returns the results in job order.
"""

from jobfarm.engine import DispatchEngine, dispatch
from jobfarm.types import DispatchOptions, DispatchResult, ResultSet

__version__ = "1.0.0"

__all__ = [
    "DispatchEngine",
    "DispatchOptions",
    "DispatchResult",
    "ResultSet",
    "dispatch",
]
