"""
Unit tests for the dispatch engine.
"""

import logging
import time

import pytest

from jobfarm import DispatchEngine, DispatchOptions, dispatch
from jobfarm.backends import ClusterSchedulerBackend, LocalPoolBackend, SequentialBackend
from jobfarm.engine import run_group
from jobfarm.errors import ConfigurationError, DispatchTimeoutError, JobExecutionError
from jobfarm.worker.handlers import handle_square


def fail_first(x):
    """Raise for 0, otherwise stay busy for a moment."""
    if x == 0:
        raise ValueError("first job fails")
    time.sleep(0.2)
    return x


class TestDispatch:
    """Tests for the module-level entry point."""

    def test_square_sequential(self, test_settings):
        """Test ten squares in job order."""
        success, results = dispatch(handle_square, range(1, 11), settings=test_settings)

        assert success is True
        assert results.to_list() == [1, 4, 9, 16, 25, 36, 49, 64, 81, 100]

    def test_square_threads(self, test_settings):
        success, results = dispatch(
            "square", range(20), backend="threads", max_workers=4, settings=test_settings
        )

        assert success is True
        assert results.to_list() == [i * i for i in range(20)]

    def test_threads_abort_leaves_no_orphan_callbacks(self, test_settings, caplog):
        """Test jobs still running when the run aborts finish quietly after the loop closes."""
        with caplog.at_level(logging.ERROR, logger="concurrent.futures"):
            success, _ = dispatch(
                fail_first, [0, 1, 1], backend="threads", max_workers=3, settings=test_settings
            )
            time.sleep(0.4)

        assert success is False
        assert [r for r in caplog.records if r.name == "concurrent.futures"] == []

    def test_multiple_arguments(self, test_settings):
        """Test tuples and lists are spread into positional arguments."""
        success, results = dispatch(pow, [(2, 3), [3, 2]], settings=test_settings)

        assert success is True
        assert results.to_list() == [8, 9]

    def test_empty_jobs(self, test_settings, scratch_root):
        """Test an empty batch succeeds without touching the backend."""
        success, results = dispatch("square", [], backend="pool", settings=test_settings)

        assert success is True
        assert len(results) == 0
        assert not scratch_root.exists()

    def test_failure_keeps_earlier_results(self, test_settings):
        """Test the run stops at the first failing job."""
        success, results = dispatch("square", [1, 2, "x", 4], settings=test_settings)

        assert success is False
        assert results[:2] == [1, 4]
        assert not results.is_set(2)
        assert not results.is_set(3)

    def test_store_false(self, test_settings):
        success, results = dispatch("square", [1, 2, 3], store=False, settings=test_settings)

        assert success is True
        assert results.filled == 0

    def test_unknown_backend(self, test_settings):
        with pytest.raises(ConfigurationError):
            dispatch("square", [1], backend="gpu", settings=test_settings)

    def test_unknown_option(self, test_settings):
        with pytest.raises(ConfigurationError):
            dispatch("square", [1], cores=8, settings=test_settings)

    def test_scheduler_requires_share(self, test_settings):
        """Test missing scheduler parameters are rejected before execution."""
        with pytest.raises(ConfigurationError):
            dispatch("square", [1], backend="scheduler", scheduler="head01", settings=test_settings)

    def test_timeout_keeps_partial_results(self, test_settings):
        """Test the overall timeout raises with the jobs collected so far."""
        with pytest.raises(DispatchTimeoutError) as exc_info:
            dispatch("sleep", [(0.1, i) for i in range(20)], timeout=0.35, settings=test_settings)

        partial = exc_info.value.results
        assert 1 <= partial.filled < 20
        assert partial[0] == 0


class TestDispatchEngine:
    """Tests for backend selection."""

    def test_create_backend(self, test_settings, scratch_root):
        options = DispatchOptions(
            backend="scheduler",
            scheduler={"scheduler": "head01", "share_dir": str(scratch_root), "max_tasks": 64},
        )

        backend = DispatchEngine(options, settings=test_settings).create_backend()

        assert isinstance(backend, ClusterSchedulerBackend)
        assert backend.max_tasks == 64
        assert backend.scheduler.scheduler == "head01"

    def test_pool_options(self, test_settings):
        options = DispatchOptions(backend="pool", pool={"max_workers": 3}, poll_interval=0.5)

        backend = DispatchEngine(options, settings=test_settings).create_backend()

        assert isinstance(backend, LocalPoolBackend)
        assert backend.max_workers == 3
        assert backend.poll_interval == 0.5

    def test_unknown_backend_in_mapping(self, test_settings):
        """Test options given as a mapping are validated on construction."""
        with pytest.raises(ConfigurationError):
            DispatchEngine({"backend": "gpu"}, settings=test_settings)

    def test_mapping_options(self, test_settings):
        engine = DispatchEngine(
            {"backend": "threads", "pool": {"max_workers": 2}}, settings=test_settings
        )

        assert engine.options.backend == "threads"
        assert engine.create_backend().max_workers == 2

    def test_default_is_sequential(self, test_settings):
        assert isinstance(DispatchEngine(settings=test_settings).create_backend(), SequentialBackend)

    @pytest.mark.asyncio
    async def test_injected_backend(self, test_settings, inline_launcher):
        """Test a prebuilt backend is used as given."""
        backend = LocalPoolBackend(max_workers=2, launcher=inline_launcher, settings=test_settings)
        engine = DispatchEngine(settings=test_settings, backend=backend)

        success, results = await engine.run_async("square", [1, 2, 3])

        assert success is True
        assert results.to_list() == [1, 4, 9]
        assert inline_launcher.launched == [1, 2, 3]


class TestRunGroup:
    """Tests for nested sequential dispatch."""

    def test_returns_values(self):
        assert run_group("square", [(1,), (2,), (3,)]) == [1, 4, 9]

    def test_without_store(self):
        assert run_group("square", [(1,)], store=False) is None

    def test_failure_raises(self):
        with pytest.raises(JobExecutionError) as exc_info:
            run_group("square", [(1,), ("x",)])

        assert exc_info.value.job_id == 2
        assert "TypeError" in exc_info.value.error
