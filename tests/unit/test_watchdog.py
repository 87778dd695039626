"""
Unit tests for the stall watchdog.
"""

import pytest

from jobfarm.errors import InfrastructureError
from jobfarm.types.scheduler import TaskInfo
from jobfarm.watchdog import StallWatchdog, is_stalled


class ViewOnlyScheduler:
    """Scheduler stub answering task views from a table."""

    def __init__(self, infos: dict[str, TaskInfo], broken: set[str] = frozenset()):
        self.infos = infos
        self.broken = broken

    async def view_task(self, task_id: str) -> TaskInfo:
        if task_id in self.broken:
            raise InfrastructureError(f"task view {task_id} failed", output="RPC error")
        return self.infos[task_id]


class TestIsStalled:
    """Tests for stall classification."""

    def test_long_running_idle_task(self):
        """Test a task running 300 s with 1 s of CPU is stalled."""
        info = TaskInfo("9.1.3", "Running", elapsed_seconds=300.0, user_time_seconds=1.0)

        assert is_stalled(info, grace_seconds=120, cpu_ratio_threshold=0.01)

    def test_within_grace_period(self):
        info = TaskInfo("9.1.3", "Running", elapsed_seconds=60.0, user_time_seconds=0.0)

        assert not is_stalled(info, grace_seconds=120, cpu_ratio_threshold=0.01)

    def test_elapsed_equal_to_grace(self):
        """Test the grace period itself is still within grace."""
        info = TaskInfo("9.1.3", "Running", elapsed_seconds=120.0, user_time_seconds=0.0)

        assert not is_stalled(info, grace_seconds=120, cpu_ratio_threshold=0.01)

    def test_cpu_ratio_equal_to_threshold(self):
        """Test a CPU ratio exactly at the threshold is not stalled."""
        info = TaskInfo("9.1.3", "Running", elapsed_seconds=300.0, user_time_seconds=3.0)

        assert info.cpu_ratio == 0.01
        assert not is_stalled(info, grace_seconds=120, cpu_ratio_threshold=0.01)

    def test_busy_task(self):
        info = TaskInfo("9.1.3", "Running", elapsed_seconds=300.0, user_time_seconds=290.0)

        assert not is_stalled(info, grace_seconds=120, cpu_ratio_threshold=0.01)

    def test_task_not_running(self):
        """Test only running tasks can stall."""
        info = TaskInfo("9.1.3", "Queued", elapsed_seconds=300.0, user_time_seconds=0.0)

        assert not is_stalled(info, grace_seconds=120, cpu_ratio_threshold=0.01)

    def test_zero_elapsed(self):
        info = TaskInfo("9.1.3", "Running", elapsed_seconds=0.0, user_time_seconds=0.0)

        assert info.cpu_ratio == 0.0
        assert not is_stalled(info, grace_seconds=120, cpu_ratio_threshold=0.01)


class TestStallWatchdog:
    """Tests for a watchdog pass."""

    @pytest.mark.asyncio
    async def test_find_stalled_sorted(self, test_settings):
        """Test stalled job ids are returned in ascending order."""
        scheduler = ViewOnlyScheduler(
            {
                "5.1.1": TaskInfo("5.1.1", "Running", 300.0, 1.0),
                "5.1.2": TaskInfo("5.1.2", "Running", 300.0, 250.0),
                "6.1": TaskInfo("6.1", "Running", 400.0, 0.5),
            }
        )
        watchdog = StallWatchdog(scheduler, settings=test_settings)

        stalled = await watchdog.find_stalled({4: "6.1", 1: "5.1.1", 2: "5.1.2"})

        assert stalled == [1, 4]
        assert watchdog.passes == 1

    @pytest.mark.asyncio
    async def test_view_failure_skips_task(self, test_settings):
        """Test a task whose view fails is skipped for this pass."""
        scheduler = ViewOnlyScheduler(
            {"5.1.2": TaskInfo("5.1.2", "Running", 300.0, 1.0)},
            broken={"5.1.1"},
        )
        watchdog = StallWatchdog(scheduler, settings=test_settings)

        assert await watchdog.find_stalled({1: "5.1.1", 2: "5.1.2"}) == [2]

    def test_is_due_after_interval(self, test_settings):
        scheduler = ViewOnlyScheduler({})

        assert StallWatchdog(scheduler, interval_seconds=0, settings=test_settings).is_due()
        assert not StallWatchdog(scheduler, interval_seconds=3600, settings=test_settings).is_due()

    def test_defaults_from_settings(self):
        """Test default thresholds come from configuration."""
        watchdog = StallWatchdog(ViewOnlyScheduler({}))

        assert watchdog.interval == 120
        assert watchdog.grace_seconds == 120
        assert watchdog.cpu_ratio_threshold == 0.01
