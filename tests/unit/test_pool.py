"""
Unit tests for the local process pool backend.

Workers run in-process through an inline launcher; real subprocesses are
covered by the integration tests.
"""

import pytest

from jobfarm.backends import LocalPoolBackend


class TestLocalPoolBackend:
    """Tests for admission control and collection."""

    @pytest.mark.asyncio
    async def test_all_jobs_collected_in_order(self, test_settings, inline_launcher):
        """Test results land in job order."""
        backend = LocalPoolBackend(max_workers=3, launcher=inline_launcher, settings=test_settings)

        success, results = await backend.run("square", [(i,) for i in range(1, 11)])

        assert success is True
        assert results.to_list() == [i * i for i in range(1, 11)]
        assert inline_launcher.launched == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, test_settings, inline_launcher):
        """Test no more than max_workers jobs are ever in flight."""
        backend = LocalPoolBackend(max_workers=4, launcher=inline_launcher, settings=test_settings)

        success, _ = await backend.run("square", [(i,) for i in range(25)])

        assert success is True
        assert max(inline_launcher.in_flight) <= 4
        assert backend.peak_running == 4

    @pytest.mark.asyncio
    async def test_failure_stops_launching(self, test_settings, inline_launcher):
        """Test a failing third job aborts the run with two workers."""
        backend = LocalPoolBackend(max_workers=2, launcher=inline_launcher, settings=test_settings)

        success, results = await backend.run("square", [(1,), (2,), ("x",), (4,), (5,)])

        assert success is False
        assert results[0] == 1
        assert results[1] == 4
        assert not results.is_set(2)
        assert not results.is_set(4)
        assert 5 not in inline_launcher.launched

    @pytest.mark.asyncio
    async def test_scratch_directory_removed(self, test_settings, inline_launcher, scratch_root):
        """Test the protocol directory is gone after the run."""
        backend = LocalPoolBackend(max_workers=2, launcher=inline_launcher, settings=test_settings)

        await backend.run("square", [(1,), (2,), ("x",)])

        assert list(scratch_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_store_false(self, test_settings, inline_launcher):
        """Test jobs run but no values are returned."""
        backend = LocalPoolBackend(max_workers=2, launcher=inline_launcher, settings=test_settings)

        success, results = await backend.run("square", [(1,), (2,)], store=False)

        assert success is True
        assert results.filled == 0
        assert inline_launcher.launched == [1, 2]

    @pytest.mark.asyncio
    async def test_unpicklable_result_fails_run(self, test_settings, inline_launcher):
        """Test a result the worker cannot write fails the run instead of hanging."""
        backend = LocalPoolBackend(max_workers=1, launcher=inline_launcher, settings=test_settings)

        success, results = await backend.run("threading:Lock", [()])

        assert success is False
        assert not results.is_set(0)

    def test_max_workers_defaults(self, test_settings):
        backend = LocalPoolBackend(settings=test_settings)

        assert backend.max_workers >= 1
