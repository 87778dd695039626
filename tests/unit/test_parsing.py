"""
Unit tests for scheduler response parsing and the HPC client.
"""

from unittest.mock import AsyncMock

import pytest

from jobfarm.cluster.hpc import HpcSchedulerClient
from jobfarm.cluster.parsing import parse_duration, parse_field, parse_number
from jobfarm.errors import InfrastructureError, SchedulerParseError

CLUSCFG_VIEW = """\
Cluster name              : HEAD01
Total number of cores     : 1,024
Number of offline cores   : 16
"""

TASK_VIEW = """\
Task Id                   : 1234.1.7
State                     : Running
Total User Time           : 0:00:00:01.250
Elapsed Time              : 0:00:05:00
"""


class TestParseField:
    """Tests for key lookup in scheduler responses."""

    def test_key_match_is_case_insensitive(self):
        """Test keys match regardless of case and padding."""
        assert parse_field(CLUSCFG_VIEW, "total number of cores") == "1,024"
        assert parse_field(TASK_VIEW, "state") == "Running"

    def test_value_keeps_later_colons(self):
        """Test only the first colon separates key from value."""
        assert parse_field(TASK_VIEW, "Elapsed Time") == "0:00:05:00"

    def test_created_job_message(self):
        """Test the job id is read from a job creation message."""
        assert parse_field("Created job, ID: 4821", "created job, id") == "4821"

    def test_missing_key_keeps_raw_response(self):
        """Test a missing key raises with the response attached."""
        with pytest.raises(SchedulerParseError) as exc_info:
            parse_field(TASK_VIEW, "Exit Code")

        assert exc_info.value.key == "Exit Code"
        assert exc_info.value.output == TASK_VIEW


class TestParseNumbers:
    """Tests for numeric and duration fields."""

    def test_number_with_separators(self):
        assert parse_number("1,024") == 1024

    def test_empty_number_is_zero(self):
        assert parse_number("   ") == 0

    @pytest.mark.parametrize(
        "value,seconds",
        [
            ("0:00:05:00", 300.0),
            ("1:02:03:04", 93784.0),
            ("0:00:00:01:500", 1.5),
            ("0:00:00:01.250", 1.25),
            ("00:02:00", 120.0),
            ("", 0.0),
        ],
    )
    def test_duration(self, value, seconds):
        """Test scheduler durations convert to seconds."""
        assert parse_duration(value) == pytest.approx(seconds)

    def test_bad_duration(self):
        with pytest.raises(SchedulerParseError):
            parse_duration("soon")


class TestHpcSchedulerClient:
    """Tests for the HPC command-line wrapper."""

    @pytest.mark.asyncio
    async def test_total_cores(self):
        """Test cluster size is read from cluscfg."""
        client = HpcSchedulerClient("head01")
        client._run = AsyncMock(return_value=CLUSCFG_VIEW)

        assert await client.total_cores() == 1024
        client._run.assert_awaited_once_with("cluscfg", "view", "/scheduler:head01")

    @pytest.mark.asyncio
    async def test_add_parametric_task(self):
        """Test a parametric task carries its index range."""
        client = HpcSchedulerClient("head01")
        client._run = AsyncMock(return_value="")

        await client.add_task("12", "/share/run", ["worker", "run", "*"], parametric=(1, 40))

        client._run.assert_awaited_once_with(
            "job", "add", "12", "/scheduler:head01", "/workdir:/share/run",
            "/parametric:1-40", "worker", "run", "*",
        )

    @pytest.mark.asyncio
    async def test_view_task(self):
        """Test task state and times are parsed."""
        client = HpcSchedulerClient("head01")
        client._run = AsyncMock(return_value=TASK_VIEW)

        info = await client.view_task("1234.1.7")

        assert info.is_running
        assert info.elapsed_seconds == 300.0
        assert info.user_time_seconds == pytest.approx(1.25)

    @pytest.mark.asyncio
    async def test_command_output_is_returned(self):
        client = HpcSchedulerClient("head01")

        assert await client._run("sh", "-c", "echo 'State : Queued'") == "State : Queued"

    @pytest.mark.asyncio
    async def test_failing_command_keeps_output(self):
        """Test a non-zero exit is an infrastructure error with the raw output."""
        client = HpcSchedulerClient("head01")

        with pytest.raises(InfrastructureError) as exc_info:
            await client._run("sh", "-c", "echo 'access denied'; exit 3")

        assert exc_info.value.returncode == 3
        assert exc_info.value.output == "access denied"

    @pytest.mark.asyncio
    async def test_missing_tool(self):
        client = HpcSchedulerClient("head01")

        with pytest.raises(InfrastructureError):
            await client._run("jobfarm-no-such-tool")
