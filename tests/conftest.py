"""
Pytest configuration and shared fixtures.
"""

import pickle
from collections.abc import Sequence
from pathlib import Path

import pytest

from jobfarm.cluster.queue import QueueMessage
from jobfarm.config import Settings
from jobfarm.constants import SUFFIX_INPUT
from jobfarm.protocol.files import JobFileProtocol
from jobfarm.types.job import Job, JobOutcome
from jobfarm.types.scheduler import TaskInfo
from jobfarm.worker.daemon import QueueWorker
from jobfarm.worker.main import run_job


@pytest.fixture
def scratch_root(tmp_path: Path) -> Path:
    """Parent directory for protocol directories."""
    return tmp_path / "scratch"


@pytest.fixture
def test_settings(scratch_root: Path) -> Settings:
    """Create test settings with no waiting anywhere."""
    return Settings(
        scratch_root=str(scratch_root),
        release_retries=2,
        release_backoff_seconds=0.0,
        cleanup_retries=2,
        cleanup_backoff_seconds=0.0,
        poll_interval_seconds=0.01,
        queue_poll_interval_seconds=0.01,
        watchdog_interval_seconds=0.0,
        log_level="DEBUG",
        log_format="console",
    )


@pytest.fixture
def protocol(scratch_root: Path, test_settings: Settings) -> JobFileProtocol:
    """A fresh protocol directory."""
    return JobFileProtocol.create(scratch_root, settings=test_settings)


class InlineLauncher:
    """
    Pool launcher that runs each worker to completion in-process.

    Records the launch order and how many jobs had an input file on the
    share at each launch, i.e. were launched but not yet collected.
    """

    def __init__(self):
        self.launched: list[int] = []
        self.in_flight: list[int] = []

    async def __call__(self, function: str, protocol: JobFileProtocol, job_id: int) -> None:
        self.launched.append(job_id)
        self.in_flight.append(len(protocol.ids(SUFFIX_INPUT)))
        run_job(function, protocol.directory, job_id, width=protocol.width)
        return None


class FakeScheduler:
    """
    In-memory cluster scheduler.

    Submitted tasks run immediately through the worker entry point unless
    ``execute`` is off. Jobs in ``hang_once`` are skipped the first time
    they are submitted; their task then reports running with almost no CPU
    (stalled) unless ``stalled_jobs`` restricts which hung jobs do.
    """

    def __init__(self, cores: int = 16, execute: bool = True):
        self.cores = cores
        self.execute = execute
        self.tasks: dict[str, list[tuple[str, list[str], tuple[int, int] | None]]] = {}
        self.created: list[tuple[str, int]] = []
        self.submitted: list[str] = []
        self.cancelled: list[str] = []
        self.views: list[str] = []
        self.hang_once: set[int] = set()
        self.stalled_jobs: set[int] | None = None
        self.hung: dict[str, int] = {}
        self.function: str | None = None
        self.workdir: str | None = None
        self.width: int | None = None

    async def total_cores(self) -> int:
        return self.cores

    async def create_job(self, num_cores: int) -> str:
        job_id = str(len(self.created) + 1)
        self.created.append((job_id, num_cores))
        self.tasks[job_id] = []
        return job_id

    async def add_task(
        self,
        job_id: str,
        workdir: str,
        command: Sequence[str],
        parametric: tuple[int, int] | None = None,
    ) -> None:
        self.tasks[job_id].append((workdir, list(command), parametric))

    async def submit_job(self, job_id: str) -> None:
        self.submitted.append(job_id)
        if not self.execute:
            return

        for k, (workdir, command, parametric) in enumerate(self.tasks[job_id], start=1):
            # [..., FUNCTION, DIRECTORY, JOB_ID, --width, WIDTH]
            self.function, self.workdir, self.width = command[-5], workdir, int(command[-1])
            if parametric is not None:
                start, end = parametric
                expanded = [(f"{job_id}.1.{i - start + 1}", i) for i in range(start, end + 1)]
            else:
                expanded = [(f"{job_id}.{k}", int(command[-3]))]

            for task_id, i in expanded:
                if i in self.hang_once:
                    self.hang_once.discard(i)
                    self.hung[task_id] = i
                    continue
                run_job(self.function, workdir, i, width=self.width)

    async def view_task(self, task_id: str) -> TaskInfo:
        self.views.append(task_id)
        job_id = self.hung.get(task_id)
        if job_id is not None and (self.stalled_jobs is None or job_id in self.stalled_jobs):
            return TaskInfo(task_id, "Running", elapsed_seconds=300.0, user_time_seconds=1.0)
        return TaskInfo(task_id, "Running", elapsed_seconds=10.0, user_time_seconds=10.0)

    async def cancel_task(self, task_id: str) -> None:
        self.cancelled.append(task_id)


class FakeQueueClient:
    """
    In-memory queue daemon.

    Polling drains pending messages through a real QueueWorker, so
    responses are produced by the daemon-side execution path. ``batch``
    limits how many messages one poll processes. Posted outcomes are
    pickled like they are on the way into Redis.
    """

    def __init__(self, batch: int | None = None):
        self.batch = batch
        self.pending: list[QueueMessage] = []
        self.sent: list[QueueMessage] = []
        self.responses: dict[str, JobOutcome] = {}
        self.discarded: list[str] = []
        self.connected = False
        self.closed = False
        self.worker = QueueWorker(self, worker_id="test-worker")

    async def connect(self) -> None:
        self.connected = True

    async def add_jobs(self, function_name: str, jobs: Sequence[Job], store: bool = True) -> list[str]:
        offset = len(self.sent)
        messages = [
            QueueMessage(
                jid=f"jid-{offset + k}",
                job_id=k,
                function_name=function_name,
                args=args,
                store=store,
            )
            for k, args in enumerate(jobs, start=1)
        ]
        self.pending.extend(messages)
        self.sent.extend(messages)
        return [m.jid for m in messages]

    async def ready(self, jids: Sequence[str]) -> list[str]:
        budget = len(self.pending) if self.batch is None else self.batch
        while self.pending and budget > 0:
            await self.worker.process(self.pending.pop(0))
            budget -= 1
        return [jid for jid in jids if jid in self.responses]

    async def receive(self, jid: str) -> JobOutcome:
        return self.responses.pop(jid)

    async def discard(self, jids: Sequence[str]) -> None:
        dropped = set(jids)
        self.pending = [m for m in self.pending if m.jid not in dropped]
        for jid in jids:
            self.responses.pop(jid, None)
        self.discarded.extend(jids)

    async def pop(self, timeout: float = 1.0) -> QueueMessage | None:
        return self.pending.pop(0) if self.pending else None

    async def post(self, jid: str, outcome: JobOutcome) -> None:
        self.responses[jid] = pickle.loads(pickle.dumps(outcome))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def inline_launcher() -> InlineLauncher:
    return InlineLauncher()


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def fake_queue() -> FakeQueueClient:
    return FakeQueueClient()
