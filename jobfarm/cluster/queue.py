"""
Client for the always-on queue daemon.

The daemon is a Redis instance plus any number of ``jobfarm-worker serve``
processes. The dispatcher pushes pickled messages onto a pending list;
daemon workers pop them, execute them and store a pickled
:class:`JobOutcome` under a per-job result key that the dispatcher polls.
"""

import logging
import pickle
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from jobfarm.errors import InfrastructureError
from jobfarm.types.job import Job, JobOutcome

logger = logging.getLogger(__name__)

RESULT_TTL_SECONDS = 24 * 3600


@dataclass
class QueueMessage:
    """One job as carried through the queue."""

    jid: str
    job_id: int
    function_name: str
    args: tuple[Any, ...]
    store: bool = True


@runtime_checkable
class QueueClient(Protocol):
    """
    Rendezvous channel between the dispatcher and the queue daemon.

    Job handles (``jid``) are opaque strings assigned by the client.
    """

    async def connect(self) -> None:
        """Open the connection to the daemon."""
        ...

    async def add_jobs(self, function_name: str, jobs: Sequence[Job], store: bool = True) -> list[str]:
        """Enqueue jobs; return one handle per job, in job order."""
        ...

    async def ready(self, jids: Sequence[str]) -> list[str]:
        """Return the handles among ``jids`` whose response is available."""
        ...

    async def receive(self, jid: str) -> JobOutcome:
        """Take the response for a finished job."""
        ...

    async def discard(self, jids: Sequence[str]) -> None:
        """Withdraw jobs whose responses will never be received."""
        ...

    async def close(self) -> None:
        """Close the connection."""
        ...


class RedisQueueClient:
    """
    Redis implementation of :class:`QueueClient`.

    Also provides the daemon side (:meth:`pop`, :meth:`post`) used by
    :class:`jobfarm.worker.daemon.QueueWorker`.
    """

    def __init__(self, redis_url: str, queue_name: str = "jobfarm"):
        self._redis_url = redis_url
        self._queue_name = queue_name
        self._redis: Any = None
        self._payloads: dict[str, bytes] = {}

    @property
    def pending_key(self) -> str:
        return f"{self._queue_name}:pending"

    def result_key(self, jid: str) -> str:
        return f"{self._queue_name}:result:{jid}"

    async def connect(self) -> None:
        """Connect to Redis and verify the server answers."""
        self._redis = aioredis.from_url(self._redis_url)
        try:
            await self._redis.ping()
        except RedisError as e:
            raise InfrastructureError(
                f"Queue daemon unreachable at {self._redis_url}", output=str(e)
            ) from e
        logger.info(f"Connected to queue '{self._queue_name}' at {self._redis_url}")

    async def add_jobs(self, function_name: str, jobs: Sequence[Job], store: bool = True) -> list[str]:
        jids = [uuid.uuid4().hex for _ in jobs]
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                for job_id, (jid, args) in enumerate(zip(jids, jobs), start=1):
                    message = QueueMessage(
                        jid=jid,
                        job_id=job_id,
                        function_name=function_name,
                        args=args,
                        store=store,
                    )
                    payload = pickle.dumps(message)
                    self._payloads[jid] = payload
                    pipe.rpush(self.pending_key, payload)
                await pipe.execute()
        except RedisError as e:
            raise InfrastructureError("Failed to enqueue jobs", output=str(e)) from e
        return jids

    async def ready(self, jids: Sequence[str]) -> list[str]:
        if not jids:
            return []
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                for jid in jids:
                    pipe.exists(self.result_key(jid))
                flags = await pipe.execute()
        except RedisError as e:
            raise InfrastructureError("Failed to poll queue", output=str(e)) from e
        return [jid for jid, flag in zip(jids, flags) if flag]

    async def receive(self, jid: str) -> JobOutcome:
        key = self.result_key(jid)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.get(key)
                pipe.delete(key)
                payload, _ = await pipe.execute()
        except RedisError as e:
            raise InfrastructureError(f"Failed to receive job {jid}", output=str(e)) from e
        if payload is None:
            raise InfrastructureError(f"No response stored for job {jid}")
        self._payloads.pop(jid, None)
        return pickle.loads(payload)

    async def discard(self, jids: Sequence[str]) -> None:
        """
        Remove still-queued messages and any stored responses for ``jids``.

        A job a daemon worker already popped still runs; its response
        expires with the result TTL.
        """
        if not jids:
            return
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                for jid in jids:
                    payload = self._payloads.pop(jid, None)
                    if payload is not None:
                        pipe.lrem(self.pending_key, 1, payload)
                    pipe.delete(self.result_key(jid))
                await pipe.execute()
        except RedisError as e:
            raise InfrastructureError("Failed to discard queued jobs", output=str(e)) from e
        logger.info(f"Discarded {len(jids)} queued jobs")

    async def pop(self, timeout: float = 1.0) -> QueueMessage | None:
        """Block up to ``timeout`` seconds for the next pending message."""
        item = await self._redis.blpop([self.pending_key], timeout=timeout)
        if item is None:
            return None
        _, payload = item
        return pickle.loads(payload)

    async def post(self, jid: str, outcome: JobOutcome) -> None:
        """Store the response for a finished job."""
        await self._redis.set(self.result_key(jid), pickle.dumps(outcome), ex=RESULT_TTL_SECONDS)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
