"""
Queue daemon backend.

Jobs are pushed to an always-on queue daemon and responses are polled over
the client connection; no filesystem protocol is involved. With
``group > 1`` consecutive jobs are packed into one queued job that runs
them sequentially on the daemon side, which amortizes per-job overhead for
cheap functions.
"""

import asyncio
import logging
from collections.abc import Sequence

from jobfarm.backends.base import Backend
from jobfarm.cluster.queue import QueueClient, RedisQueueClient
from jobfarm.config import Settings
from jobfarm.constants import BackendType
from jobfarm.errors import InfrastructureError
from jobfarm.types.job import DispatchResult, Job, ResultSet
from jobfarm.worker.handlers import JobFunction, function_name

logger = logging.getLogger(__name__)

# Daemon-side entry point that runs a group of jobs sequentially.
RUN_GROUP = "jobfarm.engine:run_group"


class ClusterQueueBackend(Backend):
    """
    Dispatch to the queue daemon and collect responses as they arrive.

    An explicit error response aborts the run immediately and withdraws
    the jobs still waiting in the queue.
    """

    name = BackendType.QUEUE

    def __init__(
        self,
        client: QueueClient | None = None,
        group: int = 1,
        poll_interval: float | None = None,
        redis_url: str | None = None,
        queue_name: str | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the backend.

        Args:
            client: Queue client. Defaults to a Redis client.
            group: Jobs packed into one queued job.
            poll_interval: Seconds to wait when no response is ready.
            redis_url: Redis URL for the default client.
            queue_name: Queue name for the default client.
            settings: Settings to use.
        """
        super().__init__(settings)

        if group < 1:
            raise ValueError("group must be >= 1")

        self.client = client or RedisQueueClient(
            redis_url or self.settings.redis_url,
            queue_name or self.settings.queue_name,
        )
        self.group = group
        self.poll_interval = (
            poll_interval if poll_interval is not None
            else self.settings.queue_poll_interval_seconds
        )

    def _pack(self, name: str, jobs: Sequence[Job], store: bool) -> tuple[str, list[Job], list[range]]:
        """Build the queued jobs and the job indices each one covers."""
        n_jobs = len(jobs)
        if self.group == 1:
            return name, list(jobs), [range(i, i + 1) for i in range(n_jobs)]

        spans = [range(k, min(n_jobs, k + self.group)) for k in range(0, n_jobs, self.group)]
        packed: list[Job] = [(name, [jobs[i] for i in span], store) for span in spans]
        return RUN_GROUP, packed, spans

    async def run(
        self,
        function: JobFunction | str,
        jobs: Sequence[Job],
        store: bool = True,
        results: ResultSet | None = None,
    ) -> DispatchResult:
        name = function_name(function)
        results = self._prepare(jobs, results)
        if not jobs:
            return DispatchResult(success=True, results=results)

        sent_name, sent_jobs, spans = self._pack(name, jobs, store)

        pending: list[str] = []
        await self.client.connect()
        try:
            jids = await self.client.add_jobs(sent_name, sent_jobs, store)
            logger.info(f"Sent {len(jids)} jobs", extra={"group": self.group})

            position = {jid: k for k, jid in enumerate(jids)}
            pending.extend(jids)

            while pending:
                ready = await self.client.ready(pending)
                if not ready:
                    await asyncio.sleep(self.poll_interval)
                    continue

                for jid in ready:
                    outcome = await self.client.receive(jid)
                    pending.remove(jid)
                    span = spans[position[jid]]

                    if not outcome.success:
                        self._metrics.record_job_completed(self.name, "failed")
                        logger.error(
                            "Job failed, aborting",
                            extra={"first_job_id": span.start + 1, "error": outcome.error},
                        )
                        return DispatchResult(success=False, results=results)

                    if self.group == 1:
                        self._accept(span.start + 1, outcome, results, store)
                        continue

                    values = outcome.value if store else [None] * len(span)
                    for index, value in zip(span, values):
                        self._metrics.record_job_completed(self.name, "succeeded")
                        if store:
                            results.set(index, value)

            return DispatchResult(success=True, results=results)
        finally:
            if pending:
                try:
                    await self.client.discard(pending)
                except InfrastructureError as e:
                    logger.warning(
                        f"Could not withdraw {len(pending)} queued jobs: {e}",
                        extra={"pending": len(pending)},
                    )
            await self.client.close()
