"""
Dispatch engine.

Public entry point: normalizes the jobs, selects the backend and enforces
the overall timeout.
"""

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from typing import Any, assert_never

from pydantic import ValidationError

from jobfarm.backends import (
    Backend,
    ClusterQueueBackend,
    ClusterSchedulerBackend,
    LocalPoolBackend,
    SequentialBackend,
    ThreadBackend,
)
from jobfarm.backends.base import as_callable, describe
from jobfarm.config import Settings, get_settings
from jobfarm.constants import SPAN_DISPATCH, BackendType
from jobfarm.errors import ConfigurationError, DispatchTimeoutError, JobExecutionError
from jobfarm.observability.metrics import get_metrics
from jobfarm.observability.tracing import create_span
from jobfarm.types.job import DispatchResult, Job, ResultSet, as_job
from jobfarm.types.options import DispatchOptions
from jobfarm.worker.handlers import JobFunction, execute_job

logger = logging.getLogger(__name__)

_POOL_KEYS = {"max_workers"}
_QUEUE_KEYS = {"group", "redis_url", "queue_name"}
_SCHEDULER_KEYS = {"scheduler", "share_dir", "worker_command", "max_tasks"}


class DispatchEngine:
    """
    Runs one function over a batch of jobs on the configured backend.

    Example:
        engine = DispatchEngine(DispatchOptions(backend="threads"))
        success, results = engine.run(math.sqrt, [1, 4, 9])
    """

    def __init__(
        self,
        options: DispatchOptions | Mapping[str, Any] | None = None,
        settings: Settings | None = None,
        backend: Backend | None = None,
    ):
        """
        Initialize the engine.

        Args:
            options: Backend selection and per-run options, as a model or
                a mapping of its fields.
            settings: Settings to use. Defaults to the environment.
            backend: Prebuilt backend, overriding ``options.backend``.

        Raises:
            ConfigurationError: If the options do not validate.
        """
        try:
            self.options = DispatchOptions.model_validate(options or {})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid dispatch options: {e}") from e
        self.settings = settings or get_settings()
        self.backend = backend
        self._metrics = get_metrics()

    def create_backend(self) -> Backend:
        """
        Build the backend named by the options.

        Raises:
            ConfigurationError: If the scheduler backend lacks its required
                parameters.
        """
        opts = self.options
        match opts.backend:
            case BackendType.SEQUENTIAL:
                return SequentialBackend(settings=self.settings)
            case BackendType.THREADS:
                return ThreadBackend(max_workers=opts.pool.max_workers, settings=self.settings)
            case BackendType.POOL:
                return LocalPoolBackend(
                    max_workers=opts.pool.max_workers,
                    poll_interval=opts.poll_interval,
                    settings=self.settings,
                )
            case BackendType.QUEUE:
                return ClusterQueueBackend(
                    group=opts.queue.group,
                    poll_interval=opts.poll_interval,
                    redis_url=opts.queue.redis_url,
                    queue_name=opts.queue.queue_name,
                    settings=self.settings,
                )
            case BackendType.SCHEDULER:
                if not opts.scheduler.scheduler or not opts.scheduler.share_dir:
                    raise ConfigurationError(
                        "The scheduler backend requires both 'scheduler' and 'share_dir'"
                    )
                return ClusterSchedulerBackend(
                    share_dir=opts.scheduler.share_dir,
                    scheduler_name=opts.scheduler.scheduler,
                    worker_command=opts.scheduler.worker_command,
                    max_tasks=opts.scheduler.max_tasks,
                    poll_interval=opts.poll_interval,
                    settings=self.settings,
                )
        assert_never(opts.backend)

    async def run_async(self, function: JobFunction | str, jobs: Iterable[Any]) -> DispatchResult:
        """
        Execute ``function`` over every job.

        Args:
            function: Callable or function name.
            jobs: One entry per job. Tuples and lists are argument lists;
                anything else is a single argument.

        Returns:
            Success flag and the job-ordered results.

        Raises:
            ConfigurationError: Before any job runs, on invalid options.
            DispatchTimeoutError: If the overall timeout elapses.
        """
        normalized: list[Job] = [as_job(job) for job in jobs]
        results = ResultSet(len(normalized))
        if not normalized:
            return DispatchResult(success=True, results=results)

        backend = self.backend or self.create_backend()
        timeout = self.options.timeout
        start = time.perf_counter()
        outcome = "error"

        logger.info(
            f"Dispatching {len(normalized)} jobs of {describe(function)}",
            extra={"backend": backend.name, "store": self.options.store},
        )
        self._metrics.record_jobs_dispatched(backend.name, len(normalized))

        with create_span(SPAN_DISPATCH, backend=backend.name, jobs=len(normalized)):
            try:
                result = await asyncio.wait_for(
                    backend.run(function, normalized, self.options.store, results),
                    timeout,
                )
                outcome = "succeeded" if result.success else "failed"
            except TimeoutError as e:
                outcome = "timeout"
                logger.error(
                    f"Dispatch timed out after {timeout}s",
                    extra={"collected": results.filled, "jobs": len(normalized)},
                )
                raise DispatchTimeoutError(timeout, results) from e
            finally:
                self._metrics.record_dispatch(
                    backend.name, outcome, time.perf_counter() - start
                )

        logger.info(
            "Dispatch finished",
            extra={"success": result.success, "collected": results.filled},
        )
        return result

    def run(self, function: JobFunction | str, jobs: Iterable[Any]) -> DispatchResult:
        """Blocking form of :meth:`run_async`."""
        return asyncio.run(self.run_async(function, jobs))


def dispatch(
    function: JobFunction | str,
    jobs: Iterable[Any],
    *,
    backend: str = "sequential",
    store: bool = True,
    timeout: float | None = None,
    poll_interval: float | None = None,
    settings: Settings | None = None,
    **backend_options: Any,
) -> DispatchResult:
    """
    Run ``function`` over ``jobs`` and return ``(success, results)``.

    Backend options (``max_workers``, ``group``, ``redis_url``,
    ``queue_name``, ``scheduler``, ``share_dir``, ``worker_command``,
    ``max_tasks``) are routed to the matching option group.

    Raises:
        ConfigurationError: On an unknown backend or option.
    """
    unknown = set(backend_options) - _POOL_KEYS - _QUEUE_KEYS - _SCHEDULER_KEYS
    if unknown:
        raise ConfigurationError(f"Unknown dispatch options: {', '.join(sorted(unknown))}")

    def pick(keys: set[str]) -> dict[str, Any]:
        return {k: v for k, v in backend_options.items() if k in keys}

    options = {
        "backend": backend,
        "store": store,
        "timeout": timeout,
        "poll_interval": poll_interval,
        "pool": pick(_POOL_KEYS),
        "queue": pick(_QUEUE_KEYS),
        "scheduler": pick(_SCHEDULER_KEYS),
    }
    return DispatchEngine(options, settings=settings).run(function, jobs)


def run_group(function: JobFunction | str, jobs: list[Job], store: bool = True) -> list[Any] | None:
    """
    Run a group of jobs sequentially inside one queued job.

    Returns:
        The group's results in order, or None when ``store`` is False.

    Raises:
        JobExecutionError: On the first failing job of the group.
    """
    target = as_callable(function)
    values: list[Any] = []

    for job_id, args in enumerate(jobs, start=1):
        outcome = execute_job(target, job_id, as_job(args), store)
        if not outcome.success:
            raise JobExecutionError(job_id, outcome.error or "unknown error", outcome.traceback)
        values.append(outcome.value)

    return values if store else None
