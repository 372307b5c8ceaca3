"""
Broker implementations.

RedisBroker: one RQ queue per job kind, delayed retries through the RQ
scheduler, dead letters kept in a Redis hash. Workers are RQ processes.

InMemoryBroker: asyncio, in-process. Honours per-kind concurrency and
delays; used for local runs (QUEUE_BACKEND=memory) and tests.
"""

import asyncio
import heapq
import itertools
from datetime import timedelta
from typing import Optional

import structlog
from redis import Redis
from rq import Callback, Queue

from smart_upload.config import settings
from smart_upload.worker.definitions import (
    JOB_POLICIES,
    JobEnvelope,
    JobKind,
    JobPolicy,
    kinds_by_priority,
    queue_name,
)
from smart_upload.worker.jobs import on_envelope_failure
from smart_upload.worker.queue import Broker, DeadLetterEntry, JobQueue

logger = structlog.get_logger(__name__)

RUN_ENVELOPE = "smart_upload.worker.jobs.run_envelope"


def rq_job_timeout(policy: JobPolicy) -> int:
    """RQ's hard limit, kept above the handler timeout so the JobQueue sees a timeout first."""
    return policy.timeout_seconds + settings.RQ_TIMEOUT_MARGIN_SECONDS


class RedisBroker(Broker):
    """Redis + RQ transport."""

    def __init__(self, redis_url: Optional[str] = None, connection: Optional[Redis] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._conn: Optional[Redis] = connection
        self._queues: dict[JobKind, Queue] = {}
        self.dead_letter_key = f"{settings.QUEUE_PREFIX}:dead-letters"

    async def open(self) -> None:
        if self._conn is None:
            self._conn = Redis.from_url(self.redis_url)
        self._queues = {
            kind: Queue(
                queue_name(kind),
                connection=self._conn,
                default_timeout=rq_job_timeout(JOB_POLICIES[kind]),
            )
            for kind in JobKind
        }

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        self._queues = {}

    @property
    def connection(self) -> Redis:
        if self._conn is None:
            raise RuntimeError("RedisBroker is not open")
        return self._conn

    def queue_for(self, kind: JobKind) -> Queue:
        return self._queues[kind]

    async def push(self, envelope: JobEnvelope, delay_seconds: float, policy: JobPolicy) -> None:
        q = self.queue_for(envelope.kind)
        options = {
            "job_id": f"{envelope.job_id}-{envelope.attempt}",
            "job_timeout": rq_job_timeout(policy),
            "on_failure": Callback(on_envelope_failure, timeout=settings.RQ_TIMEOUT_MARGIN_SECONDS),
            "result_ttl": 86400,  # Keep results for 24 hours
            "failure_ttl": 604800,  # Keep failures for 7 days
            "description": f"{envelope.kind.value} attempt {envelope.attempt}",
        }
        body = envelope.model_dump_json()
        if delay_seconds > 0:
            q.enqueue_in(timedelta(seconds=delay_seconds), RUN_ENVELOPE, body, **options)
        else:
            q.enqueue(RUN_ENVELOPE, body, **options)

    async def add_dead_letter(self, entry: DeadLetterEntry) -> None:
        self.connection.hset(self.dead_letter_key, entry.entry_id, entry.model_dump_json())

    async def list_dead_letters(self, limit: int) -> list[DeadLetterEntry]:
        raw = self.connection.hvals(self.dead_letter_key)
        entries = [DeadLetterEntry.model_validate_json(value) for value in raw]
        entries.sort(key=lambda e: e.failed_at, reverse=True)
        return entries[:limit]

    async def pop_dead_letter(self, entry_id: str) -> Optional[DeadLetterEntry]:
        pipe = self.connection.pipeline()
        pipe.hget(self.dead_letter_key, entry_id)
        pipe.hdel(self.dead_letter_key, entry_id)
        raw, _ = pipe.execute()
        if raw is None:
            return None
        return DeadLetterEntry.model_validate_json(raw)

    async def stats(self) -> dict[str, dict[str, int]]:
        stats: dict[str, dict[str, int]] = {}
        for kind, q in self._queues.items():
            stats[kind.value] = {
                "queued": len(q),
                "started": q.started_job_registry.count,
                "scheduled": q.scheduled_job_registry.count,
                "finished": q.finished_job_registry.count,
                "failed": q.failed_job_registry.count,
            }
        stats["dead_letters"] = {"count": int(self.connection.hlen(self.dead_letter_key))}
        return stats


class InMemoryBroker(Broker):
    """
    In-process broker.

    `time_scale` multiplies every delay (0 runs retries immediately);
    `max_parallel` caps how many jobs run at once across all kinds.
    """

    def __init__(self, time_scale: float = 1.0, max_parallel: Optional[int] = None):
        self.time_scale = time_scale
        self.max_parallel = max_parallel
        self._pending: dict[JobKind, list[tuple[float, int, JobEnvelope]]] = {k: [] for k in JobKind}
        self._dead: dict[str, DeadLetterEntry] = {}
        self._seq = itertools.count()
        self._queue: Optional[JobQueue] = None
        self._policies: dict[JobKind, JobPolicy] = dict(JOB_POLICIES)
        self.processed = 0

    def bind(self, queue: JobQueue) -> None:
        self._queue = queue
        self._policies = queue.policies

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    async def push(self, envelope: JobEnvelope, delay_seconds: float, policy: JobPolicy) -> None:
        ready_at = self._now() + delay_seconds * self.time_scale
        heapq.heappush(self._pending[envelope.kind], (ready_at, next(self._seq), envelope))

    def pending_count(self) -> int:
        return sum(len(h) for h in self._pending.values())

    def _take_ready(self) -> list[JobEnvelope]:
        now = self._now()
        taken: list[JobEnvelope] = []
        for kind in kinds_by_priority():
            heap = self._pending[kind]
            slots = self._policies[kind].concurrency
            while heap and heap[0][0] <= now and slots > 0:
                if self.max_parallel is not None and len(taken) >= self.max_parallel:
                    return taken
                taken.append(heapq.heappop(heap)[2])
                slots -= 1
        return taken

    def _next_ready_at(self) -> Optional[float]:
        heads = [h[0][0] for h in self._pending.values() if h]
        return min(heads) if heads else None

    async def run_until_idle(self) -> int:
        """Process jobs (and the jobs they enqueue) until nothing is pending."""
        if self._queue is None:
            raise RuntimeError("InMemoryBroker is not bound to a JobQueue")
        processed = 0
        while True:
            batch = self._take_ready()
            if not batch:
                next_at = self._next_ready_at()
                if next_at is None:
                    return processed
                await asyncio.sleep(max(0.0, next_at - self._now()))
                continue
            await asyncio.gather(*(self._queue.execute(envelope) for envelope in batch))
            processed += len(batch)
            self.processed += len(batch)

    async def serve(self, stop: asyncio.Event, poll_interval: float = 0.2) -> None:
        """Background consumer loop for QUEUE_BACKEND=memory."""
        logger.info("in_memory_worker_started")
        while not stop.is_set():
            await self.run_until_idle()
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
        logger.info("in_memory_worker_stopped")

    async def add_dead_letter(self, entry: DeadLetterEntry) -> None:
        self._dead[entry.entry_id] = entry

    async def list_dead_letters(self, limit: int) -> list[DeadLetterEntry]:
        entries = sorted(self._dead.values(), key=lambda e: e.failed_at, reverse=True)
        return entries[:limit]

    async def pop_dead_letter(self, entry_id: str) -> Optional[DeadLetterEntry]:
        return self._dead.pop(entry_id, None)

    async def stats(self) -> dict[str, dict[str, int]]:
        stats = {kind.value: {"queued": len(self._pending[kind])} for kind in JobKind}
        stats["dead_letters"] = {"count": len(self._dead)}
        return stats
