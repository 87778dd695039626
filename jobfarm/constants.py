"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class BackendType(StrEnum):
    """Execution backends a batch can be dispatched to."""

    SEQUENTIAL = "sequential"
    THREADS = "threads"
    POOL = "pool"
    QUEUE = "queue"
    SCHEDULER = "scheduler"


class TaskState(StrEnum):
    """
    Lifecycle of one scheduler task as tracked by the dispatcher.

    State transitions:
    - QUEUED -> RUNNING (node picked the task up)
    - RUNNING -> DONE (done marker collected)
    - QUEUED or RUNNING -> STALLED (watchdog: no CPU progress past the grace period)
    - STALLED -> QUEUED (old task cancelled, job resubmitted)
    """

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    STALLED = "stalled"


# Protocol file suffixes
SUFFIX_INPUT = "-in"
SUFFIX_STARTED = "-started"
SUFFIX_DONE = "-done"
SUFFIX_OUTPUT = "-out"
PROTOCOL_SUFFIXES = (SUFFIX_DONE, SUFFIX_INPUT, SUFFIX_OUTPUT, SUFFIX_STARTED)

SCRATCH_DIR_PREFIX = "jobfarm"
CHECKPOINT_FILE = "checkpoint.json"

# Scheduler response keys
HPC_KEY_TOTAL_CORES = "total number of cores"
HPC_KEY_CREATED_JOB = "created job, id"
HPC_KEY_STATE = "State"
HPC_KEY_USER_TIME = "Total User Time"
HPC_KEY_ELAPSED = "Elapsed Time"

# Metrics names
METRIC_JOBS_DISPATCHED = "jobfarm_jobs_dispatched_total"
METRIC_JOBS_COMPLETED = "jobfarm_jobs_completed_total"
METRIC_JOBS_IN_FLIGHT = "jobfarm_jobs_in_flight"
METRIC_DISPATCH_DURATION = "jobfarm_dispatch_duration_seconds"
METRIC_TASKS_STALLED = "jobfarm_tasks_stalled_total"
METRIC_TASKS_RESUBMITTED = "jobfarm_tasks_resubmitted_total"
METRIC_CLEANUP_FAILURES = "jobfarm_cleanup_failures_total"

# Trace span names
SPAN_DISPATCH = "dispatch"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_SCHEDULER_SUBMIT = "scheduler_submit"
SPAN_STALL_WATCHDOG = "stall_watchdog"
