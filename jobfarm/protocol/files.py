"""
Filesystem job protocol.

Each job is a set of sentinel files in one shared directory, keyed by the
job id zero-padded to a fixed width::

    0000000007-in       pickled JobInput, written by the dispatcher
    0000000007-started  empty, written by the worker when it begins
    0000000007-out      pickled JobOutcome, written by the worker
    0000000007-done     empty, written by the worker as its last step

Workers only create files; the dispatcher is the only party that deletes
them, and only after observing ``done``. ``in`` and ``out`` are written to a
temporary name, flushed and renamed into place so a reader never sees a
partial file, and ``out`` is always in place before ``done`` appears.
"""

import asyncio
import logging
import os
import pickle
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from jobfarm.config import Settings, get_settings
from jobfarm.constants import (
    CHECKPOINT_FILE,
    PROTOCOL_SUFFIXES,
    SCRATCH_DIR_PREFIX,
    SUFFIX_DONE,
    SUFFIX_INPUT,
    SUFFIX_OUTPUT,
    SUFFIX_STARTED,
)
from jobfarm.errors import ProtocolError
from jobfarm.observability.metrics import get_metrics
from jobfarm.types.job import JobInput, JobOutcome
from jobfarm.types.scheduler import Checkpoint

logger = logging.getLogger(__name__)


class JobFileProtocol:
    """
    Owner of one protocol directory.

    Passed by reference to every backend and to workers (which rebuild it
    from the directory path they are given on the command line).
    """

    def __init__(
        self,
        directory: str | os.PathLike[str],
        settings: Settings | None = None,
        width: int | None = None,
    ):
        """
        Initialize the protocol over an existing directory.

        Args:
            directory: The shared protocol directory.
            settings: Settings providing retry counts and backoff.
            width: Zero-padded width of job ids in file names.
        """
        settings = settings or get_settings()

        self.directory = Path(directory)
        self.width = width or settings.job_id_width
        self.release_retries = settings.release_retries
        self.release_backoff = settings.release_backoff_seconds
        self.cleanup_retries = settings.cleanup_retries
        self.cleanup_backoff = settings.cleanup_backoff_seconds

    @classmethod
    def create(
        cls,
        root: str | os.PathLike[str] | None = None,
        settings: Settings | None = None,
    ) -> "JobFileProtocol":
        """
        Create a fresh, uniquely named scratch directory under ``root``.

        Args:
            root: Parent directory. Defaults to ``Settings.scratch_root``.
            settings: Settings to use.

        Returns:
            A protocol bound to the new directory.
        """
        settings = settings or get_settings()
        base = Path(root if root is not None else settings.scratch_root)
        base.mkdir(parents=True, exist_ok=True)

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        token = uuid.uuid4().hex[:8]
        directory = base / f"{SCRATCH_DIR_PREFIX}-{stamp}-{token}"
        directory.mkdir()

        logger.debug(f"Created protocol directory {directory}")
        return cls(directory, settings=settings)

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def key(self, job_id: int) -> str:
        """Fixed-width file prefix for a job id."""
        return f"{job_id:0{self.width}d}"

    def path(self, job_id: int, suffix: str) -> Path:
        """Path of one protocol file."""
        return self.directory / f"{self.key(job_id)}{suffix}"

    def files(self, job_id: int) -> list[Path]:
        """All four protocol files of a job."""
        return [self.path(job_id, suffix) for suffix in PROTOCOL_SUFFIXES]

    def ids(self, suffix: str) -> list[int]:
        """
        List job ids that have a file with the given suffix.

        Temporary files and non-protocol files are ignored.

        Args:
            suffix: One of the protocol suffixes.

        Returns:
            Sorted job ids.
        """
        found = []
        with os.scandir(self.directory) as entries:
            for entry in entries:
                name = entry.name
                if name.startswith(".") or not name.endswith(suffix):
                    continue
                prefix = name[: -len(suffix)]
                if len(prefix) == self.width and prefix.isdigit():
                    found.append(int(prefix))
        return sorted(found)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _write_atomic(self, path: Path, data: bytes) -> None:
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        with open(tmp, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)

    def write_input(self, job_id: int, args: tuple[Any, ...], store: bool = True) -> None:
        """Serialize a job for an out-of-process worker."""
        job_input = JobInput(job_id=job_id, args=args, store=store)
        self._write_atomic(self.path(job_id, SUFFIX_INPUT), pickle.dumps(job_input))

    def mark_started(self, job_id: int) -> None:
        """Record that a worker picked the job up."""
        self.path(job_id, SUFFIX_STARTED).touch()

    def write_output(self, job_id: int, outcome: JobOutcome) -> None:
        """Write the job's outcome. Must precede :meth:`mark_done`."""
        self._write_atomic(self.path(job_id, SUFFIX_OUTPUT), pickle.dumps(outcome))

    def mark_done(self, job_id: int) -> None:
        """Signal completion. The worker's final protocol step."""
        self._write_atomic(self.path(job_id, SUFFIX_DONE), b"")

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_input(self, job_id: int) -> JobInput:
        """Load the serialized job."""
        path = self.path(job_id, SUFFIX_INPUT)
        try:
            with open(path, "rb") as fh:
                return pickle.load(fh)
        except FileNotFoundError as e:
            raise ProtocolError(f"No input file for job {job_id} in {self.directory}") from e

    def read_output(self, job_id: int) -> JobOutcome:
        """Load the job's outcome."""
        path = self.path(job_id, SUFFIX_OUTPUT)
        try:
            with open(path, "rb") as fh:
                return pickle.load(fh)
        except FileNotFoundError as e:
            raise ProtocolError(
                f"Job {job_id} is marked done but has no output file"
            ) from e

    async def collect(self, job_id: int) -> JobOutcome:
        """
        Read a finished job's outcome and delete its files.

        Args:
            job_id: A job whose ``done`` marker has been observed.

        Returns:
            The job outcome.
        """
        outcome = self.read_output(job_id)
        await self.release(job_id)
        return outcome

    async def release(self, job_id: int) -> None:
        """
        Delete every file of a job.

        A slow or networked filesystem may still hold a handle the worker
        is closing, so deletion is retried with a pause between attempts.
        """
        for path in self.files(job_id):
            attempts = 0
            while True:
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    logger.debug(f"Could not delete {path.name}: {e}")
                if not path.exists():
                    break
                attempts += 1
                if attempts > self.release_retries:
                    logger.error(
                        f"Giving up deleting {path.name}",
                        extra={"job_id": job_id, "attempts": attempts},
                    )
                    break
                logger.warning(f"Waiting to delete {path.name}", extra={"job_id": job_id})
                await asyncio.sleep(self.release_backoff)

    # ------------------------------------------------------------------
    # Checkpoint and cleanup
    # ------------------------------------------------------------------

    def write_checkpoint(self, checkpoint: Checkpoint) -> Path:
        """Persist a progress snapshot into the protocol directory."""
        path = self.directory / CHECKPOINT_FILE
        self._write_atomic(path, checkpoint.model_dump_json(indent=2).encode("utf-8"))
        return path

    def read_checkpoint(self) -> Checkpoint | None:
        """Load the last progress snapshot, if any."""
        path = self.directory / CHECKPOINT_FILE
        if not path.exists():
            return None
        return Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))

    async def cleanup(self) -> bool:
        """
        Remove the protocol directory.

        Retried with a growing pause because a worker may still be
        flushing a handle. A directory left behind is logged, never raised:
        results already collected are unaffected.

        Returns:
            True if the directory is gone.
        """
        for attempt in range(1, self.cleanup_retries + 1):
            try:
                shutil.rmtree(self.directory)
                logger.debug(f"Removed protocol directory {self.directory}")
                return True
            except FileNotFoundError:
                return True
            except OSError as e:
                logger.warning(
                    f"Failed to remove {self.directory}: {e}",
                    extra={"attempt": attempt},
                )
                await asyncio.sleep(self.cleanup_backoff * attempt)

        logger.error(f"Leaving protocol directory behind: {self.directory}")
        get_metrics().record_cleanup_failure()
        return False
