"""
Job-related type definitions for internal use.
"""

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any, overload

from pydantic import BaseModel, ConfigDict

# One job: the positional arguments of one function call.
Job = tuple[Any, ...]


def as_job(value: Any) -> Job:
    """Normalize a caller-supplied job into an argument tuple."""
    if isinstance(value, tuple):
        return value
    if isinstance(value, list):
        return tuple(value)
    return (value,)


class JobInput(BaseModel):
    """
    Serialized job handed to an out-of-process worker.
    Content of a job's ``input`` file.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    job_id: int
    args: tuple[Any, ...]
    store: bool = True


class JobOutcome(BaseModel):
    """
    Result of executing one job.

    A failed outcome (``success=False``) is the explicit per-job error
    signal; ``value`` is only populated when the caller retains results.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    job_id: int
    success: bool
    value: Any = None
    error: str | None = None
    traceback: str | None = None
    duration_ms: float | None = None


class ResultSet(Sequence):
    """
    Fixed-size, job-ordered result collection.

    Slots are filled in completion order and each slot can be written at
    most once. Unset slots read as ``None``; use :meth:`is_set` to tell an
    unset slot from a job that returned ``None``.
    """

    def __init__(self, size: int):
        self._values: list[Any] = [None] * size
        self._filled: list[bool] = [False] * size

    @overload
    def __getitem__(self, index: int) -> Any: ...

    @overload
    def __getitem__(self, index: slice) -> list[Any]: ...

    def __getitem__(self, index):
        return self._values[index]

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._values)

    def __repr__(self) -> str:
        return f"ResultSet(size={len(self)}, filled={self.filled})"

    def set(self, index: int, value: Any) -> None:
        """Write the result for the job at 0-based ``index``."""
        if self._filled[index]:
            raise ValueError(f"Result slot {index} already written")
        self._values[index] = value
        self._filled[index] = True

    def is_set(self, index: int) -> bool:
        """Check whether the slot at ``index`` has been written."""
        return self._filled[index]

    @property
    def filled(self) -> int:
        """Number of written slots."""
        return sum(self._filled)

    def filled_indices(self) -> list[int]:
        """0-based indices of the written slots."""
        return [i for i, flag in enumerate(self._filled) if flag]

    def to_list(self) -> list[Any]:
        """Copy the results into a plain list."""
        return list(self._values)


@dataclass
class DispatchResult:
    """
    Overall outcome of one engine run.

    Unpacks like a tuple: ``success, results = engine.run(...)``.
    """

    success: bool
    results: ResultSet

    def __iter__(self) -> Iterator[Any]:
        yield self.success
        yield self.results
