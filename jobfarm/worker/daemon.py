"""
Queue daemon worker.

Pops jobs from the Redis pending list, executes them and posts their
outcomes. Many of these can serve one queue; together with Redis they form
the always-on queue the queue backend dispatches to.
"""

import asyncio
import logging
import os
import signal

from jobfarm.cluster.queue import QueueMessage, RedisQueueClient
from jobfarm.errors import ConfigurationError
from jobfarm.observability.logging import bind_context, clear_context
from jobfarm.types.job import JobOutcome
from jobfarm.worker.handlers import (
    SERIALIZATION_ERRORS,
    execute_job,
    resolve_function,
    serialization_failure,
)

logger = logging.getLogger(__name__)


class QueueWorker:
    """
    Worker that polls the queue for and executes jobs.

    Features:
    - Blocking pop with a timeout so stop requests are noticed
    - Job functions run in a thread to keep the event loop responsive
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        client: RedisQueueClient,
        worker_id: str | None = None,
        poll_timeout: float = 1.0,
    ):
        """
        Initialize the worker.

        Args:
            client: Connected queue client.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            poll_timeout: Seconds to block per pop before re-checking stop.
        """
        self.client = client
        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.poll_timeout = poll_timeout
        self.jobs_processed = 0
        self._running = False

    async def start(self) -> None:
        """Start the worker loop."""
        logger.info("Queue worker starting", extra={"worker_id": self.worker_id})
        self._running = True

        while self._running:
            try:
                message = await self.client.pop(timeout=self.poll_timeout)
                if message is None:
                    continue
                await self.process(message)
            except Exception as e:
                logger.exception(
                    f"Error in queue worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await asyncio.sleep(self.poll_timeout)

        logger.info("Queue worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker after the current job."""
        logger.info("Queue worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def process(self, message: QueueMessage) -> JobOutcome:
        """Execute one message and post its outcome."""
        bind_context(jid=message.jid, worker_id=self.worker_id)
        try:
            function = resolve_function(message.function_name)
        except ConfigurationError as e:
            outcome = JobOutcome(job_id=message.job_id, success=False, error=str(e))
        else:
            outcome = await asyncio.to_thread(
                execute_job, function, message.job_id, message.args, message.store
            )
        finally:
            clear_context()

        try:
            await self.client.post(message.jid, outcome)
        except SERIALIZATION_ERRORS as e:
            outcome = serialization_failure(outcome, e)
            await self.client.post(message.jid, outcome)
        self.jobs_processed += 1

        logger.info(
            "Job processed",
            extra={"jid": message.jid, "success": outcome.success},
        )
        return outcome


async def run_async(redis_url: str, queue_name: str, worker_id: str | None = None) -> None:
    """Run a queue worker until a shutdown signal arrives."""
    client = RedisQueueClient(redis_url, queue_name)
    await client.connect()

    worker = QueueWorker(client, worker_id=worker_id)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await client.close()
