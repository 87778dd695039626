"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobfarm.constants import (
    METRIC_CLEANUP_FAILURES,
    METRIC_DISPATCH_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_DISPATCHED,
    METRIC_JOBS_IN_FLIGHT,
    METRIC_TASKS_RESUBMITTED,
    METRIC_TASKS_STALLED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the dispatcher.

    Collects metrics for:
    - Jobs dispatched and completed per backend
    - Jobs in flight per backend
    - Dispatch duration and outcome
    - Stalled and resubmitted scheduler tasks
    - Scratch directory cleanup failures
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_dispatched = Counter(
            METRIC_JOBS_DISPATCHED,
            "Total number of jobs handed to a backend",
            ["backend"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs collected",
            ["backend", "status"],
            registry=self._registry,
        )

        self.jobs_in_flight = Gauge(
            METRIC_JOBS_IN_FLIGHT,
            "Jobs launched but not yet collected",
            ["backend"],
            registry=self._registry,
        )

        self.dispatch_duration = Histogram(
            METRIC_DISPATCH_DURATION,
            "Wall time of one engine run in seconds",
            ["backend", "outcome"],
            buckets=(0.1, 1.0, 10.0, 60.0, 300.0, 900.0, 3600.0, 14400.0),
            registry=self._registry,
        )

        self.tasks_stalled = Counter(
            METRIC_TASKS_STALLED,
            "Scheduler tasks flagged as stalled by the watchdog",
            registry=self._registry,
        )

        self.tasks_resubmitted = Counter(
            METRIC_TASKS_RESUBMITTED,
            "Scheduler tasks resubmitted after a stall",
            registry=self._registry,
        )

        self.cleanup_failures = Counter(
            METRIC_CLEANUP_FAILURES,
            "Scratch directories that could not be removed",
            registry=self._registry,
        )

    def record_jobs_dispatched(self, backend: str, count: int = 1) -> None:
        """Record jobs handed to a backend."""
        self.jobs_dispatched.labels(backend=backend).inc(count)

    def record_job_completed(self, backend: str, status: str) -> None:
        """Record a collected job."""
        self.jobs_completed.labels(backend=backend, status=status).inc()

    def set_in_flight(self, backend: str, count: int) -> None:
        """Update the number of in-flight jobs for a backend."""
        self.jobs_in_flight.labels(backend=backend).set(count)

    def record_dispatch(self, backend: str, outcome: str, duration_seconds: float) -> None:
        """Record a finished engine run."""
        self.dispatch_duration.labels(backend=backend, outcome=outcome).observe(
            duration_seconds
        )

    def record_stalled(self, count: int) -> None:
        """Record tasks flagged by the watchdog."""
        self.tasks_stalled.inc(count)

    def record_resubmitted(self, count: int) -> None:
        """Record resubmitted tasks."""
        self.tasks_resubmitted.inc(count)

    def record_cleanup_failure(self) -> None:
        """Record a scratch directory left behind."""
        self.cleanup_failures.inc()

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
