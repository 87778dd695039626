"""
Exception hierarchy for dispatch failures.
"""

from typing import Any


class JobfarmError(Exception):
    """Base class for all jobfarm errors."""


class ConfigurationError(JobfarmError):
    """Invalid dispatch configuration, raised before any job executes."""


class JobExecutionError(JobfarmError):
    """A job's function raised while executing."""

    def __init__(self, job_id: int, error: str, traceback: str | None = None):
        super().__init__(f"Job {job_id} failed: {error}")
        self.job_id = job_id
        self.error = error
        self.traceback = traceback


class InfrastructureError(JobfarmError):
    """
    An external collaborator (scheduler CLI, queue daemon) failed.

    The raw diagnostic produced by the tool is kept in ``output``.
    """

    def __init__(self, message: str, output: str = "", returncode: int | None = None):
        super().__init__(message if not output else f"{message}\n{output}")
        self.output = output
        self.returncode = returncode


class SchedulerParseError(InfrastructureError):
    """A requested key was not present in a scheduler response."""

    def __init__(self, key: str, blob: str):
        super().__init__(f"key '{key}' not found in scheduler response", output=blob)
        self.key = key


class ProtocolError(JobfarmError):
    """The job file protocol was violated by a worker."""


class DispatchTimeoutError(JobfarmError):
    """The overall dispatch timeout elapsed; ``results`` holds partial progress."""

    def __init__(self, timeout: float, results: Any):
        super().__init__(f"Dispatch did not finish within {timeout}s")
        self.timeout = timeout
        self.results = results
