"""
Durable job queue with centralized retry, backoff and dead-lettering.

The queue does not interpret payloads. It looks up the policy for the job
kind, runs the registered handler, and on failure either schedules a retry
(exponential or fixed backoff) or moves the job to the dead-letter area and
notifies dead-letter hooks. Transport is delegated to a Broker.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from smart_upload.errors import NotFoundError, is_retryable
from smart_upload.models.database import utcnow
from smart_upload.observability import metrics
from smart_upload.observability.logging import bind_job_context, clear_job_context
from smart_upload.worker.definitions import (
    JOB_POLICIES,
    JobEnvelope,
    JobKind,
    JobPolicy,
    parse_payload,
    queue_name,
)

logger = structlog.get_logger(__name__)

JobHandler = Callable[[Any], Awaitable[None]]


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED = "skipped"


class JobHandle(BaseModel):
    job_id: str
    kind: JobKind
    queue: str
    attempt: int = 1
    delay_seconds: float = 0.0


class DeadLetterEntry(BaseModel):
    """A job that exhausted its attempts, kept for inspection and replay."""
    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str
    kind: JobKind
    queue: str
    payload: dict
    reason: str
    attempts: int
    failed_at: datetime = Field(default_factory=utcnow)


DeadLetterHook = Callable[[DeadLetterEntry], Awaitable[None]]


class Broker(ABC):
    """Moves envelopes between producers and workers and stores dead letters."""

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def bind(self, queue: "JobQueue") -> None:
        """Brokers that consume in-process need the queue to execute jobs."""
        return None

    @abstractmethod
    async def push(self, envelope: JobEnvelope, delay_seconds: float, policy: JobPolicy) -> None:
        ...

    @abstractmethod
    async def add_dead_letter(self, entry: DeadLetterEntry) -> None:
        ...

    @abstractmethod
    async def list_dead_letters(self, limit: int) -> list[DeadLetterEntry]:
        ...

    @abstractmethod
    async def pop_dead_letter(self, entry_id: str) -> Optional[DeadLetterEntry]:
        ...

    @abstractmethod
    async def stats(self) -> dict[str, dict[str, int]]:
        ...


class JobQueue:
    """
    Explicitly constructed queue client.
    Open it on process start and close it on shutdown.
    """

    def __init__(self, broker: Broker, policies: Optional[dict[JobKind, JobPolicy]] = None):
        self.broker = broker
        self.policies = dict(policies or JOB_POLICIES)
        self._handlers: dict[JobKind, JobHandler] = {}
        self._dead_letter_hooks: list[DeadLetterHook] = []
        self._open = False
        broker.bind(self)

    # ── Lifecycle ────────────────────────────────────────────

    async def open(self) -> None:
        if self._open:
            return
        await self.broker.open()
        self._open = True
        logger.info("job_queue_opened", broker=type(self.broker).__name__)

    async def close(self) -> None:
        if not self._open:
            return
        await self.broker.close()
        self._open = False
        logger.info("job_queue_closed")

    @property
    def is_open(self) -> bool:
        return self._open

    def _require_open(self) -> None:
        if not self._open:
            raise RuntimeError("JobQueue is not open")

    # ── Registration ─────────────────────────────────────────

    def register(self, kind: JobKind, handler: JobHandler) -> None:
        self._handlers[kind] = handler

    def on_dead_letter(self, hook: DeadLetterHook) -> None:
        self._dead_letter_hooks.append(hook)

    def ensure_all_registered(self) -> None:
        missing = set(JobKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler registered for: {sorted(k.value for k in missing)}")

    # ── Producing ────────────────────────────────────────────

    async def enqueue(self, payload: BaseModel, delay_seconds: float = 0.0) -> JobHandle:
        self._require_open()
        envelope = JobEnvelope(payload=payload)
        return await self._push(envelope, delay_seconds)

    async def _push(self, envelope: JobEnvelope, delay_seconds: float) -> JobHandle:
        kind = envelope.kind
        await self.broker.push(envelope, delay_seconds, self.policies[kind])
        metrics.jobs_enqueued_total.labels(kind=kind.value).inc()
        logger.info(
            "job_enqueued",
            job_id=envelope.job_id,
            kind=kind.value,
            attempt=envelope.attempt,
            delay_seconds=delay_seconds,
        )
        return JobHandle(
            job_id=envelope.job_id,
            kind=kind,
            queue=queue_name(kind),
            attempt=envelope.attempt,
            delay_seconds=delay_seconds,
        )

    # ── Consuming ────────────────────────────────────────────

    async def execute(self, envelope: JobEnvelope) -> JobOutcome:
        """
        Run one delivery of a job and apply the retry policy to its result.
        Handler exceptions never escape; broker failures do.
        """
        kind = envelope.kind
        policy = self.policies[kind]
        handler = self._handlers.get(kind)
        payload = envelope.payload

        bind_job_context(
            job_id=envelope.job_id,
            kind=kind.value,
            attempt=envelope.attempt,
            batch_id=getattr(payload, "batch_id", None),
            item_id=getattr(payload, "item_id", None),
        )
        started = time.perf_counter()
        metrics.worker_jobs_active.labels(kind=kind.value).inc()
        try:
            if handler is None:
                return await self._dead_letter(envelope, f"No handler registered for {kind.value}")

            logger.info("job_started")
            try:
                await asyncio.wait_for(handler(payload), timeout=policy.timeout_seconds)
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"
                if is_retryable(e) and envelope.attempt < policy.attempts:
                    delay = policy.backoff.delay_for(envelope.attempt)
                    logger.warning("job_failed_retrying", error=reason, retry_in_seconds=delay)
                    await self._push(envelope.next_attempt(), delay)
                    metrics.jobs_completed_total.labels(kind=kind.value, outcome="retry").inc()
                    return JobOutcome.RETRY_SCHEDULED
                logger.error("job_failed", error=reason, retryable=is_retryable(e))
                return await self._dead_letter(envelope, reason)

            metrics.jobs_completed_total.labels(kind=kind.value, outcome="success").inc()
            logger.info("job_completed", duration_ms=int((time.perf_counter() - started) * 1000))
            return JobOutcome.SUCCEEDED
        finally:
            metrics.worker_jobs_active.labels(kind=kind.value).dec()
            metrics.job_duration_seconds.labels(kind=kind.value).observe(time.perf_counter() - started)
            clear_job_context()

    async def abandon(self, envelope: JobEnvelope, reason: str) -> JobOutcome:
        """
        Settle a delivery that died outside execute() (the worker process was
        killed or the runtime never opened). Same policy as a handler failure.
        """
        self._require_open()
        policy = self.policies[envelope.kind]
        bind_job_context(job_id=envelope.job_id, kind=envelope.kind.value, attempt=envelope.attempt)
        try:
            if envelope.attempt < policy.attempts:
                delay = policy.backoff.delay_for(envelope.attempt)
                logger.warning("job_abandoned_retrying", error=reason, retry_in_seconds=delay)
                await self._push(envelope.next_attempt(), delay)
                metrics.jobs_completed_total.labels(kind=envelope.kind.value, outcome="retry").inc()
                return JobOutcome.RETRY_SCHEDULED
            return await self._dead_letter(envelope, reason)
        finally:
            clear_job_context()

    async def _dead_letter(self, envelope: JobEnvelope, reason: str) -> JobOutcome:
        kind = envelope.kind
        entry = DeadLetterEntry(
            job_id=envelope.job_id,
            kind=kind,
            queue=queue_name(kind),
            payload=envelope.payload.model_dump(mode="json"),
            reason=reason,
            attempts=envelope.attempt,
        )
        await self.broker.add_dead_letter(entry)
        metrics.dead_letters_total.labels(kind=kind.value).inc()
        metrics.jobs_completed_total.labels(kind=kind.value, outcome="dead_letter").inc()
        logger.error(
            "job_dead_lettered",
            entry_id=entry.entry_id,
            reason=reason,
            attempts=entry.attempts,
        )

        for hook in self._dead_letter_hooks:
            try:
                await hook(entry)
            except Exception as e:
                logger.exception("dead_letter_hook_failed", entry_id=entry.entry_id, error=str(e))
        return JobOutcome.DEAD_LETTERED

    # ── Dead letters ─────────────────────────────────────────

    async def dead_letters(self, limit: int = 100) -> list[DeadLetterEntry]:
        self._require_open()
        return await self.broker.list_dead_letters(limit)

    async def replay(self, entry_id: str) -> JobHandle:
        """Re-enqueue a dead-lettered job into its original queue with a fresh attempt budget."""
        self._require_open()
        entry = await self.broker.pop_dead_letter(entry_id)
        if entry is None:
            raise NotFoundError("DeadLetterEntry", entry_id)
        envelope = JobEnvelope(payload=parse_payload(entry.payload), replayed_from=entry.job_id)
        try:
            handle = await self._push(envelope, 0.0)
        except Exception:
            await self.broker.add_dead_letter(entry)
            raise
        logger.info("dead_letter_replayed", entry_id=entry_id, job_id=handle.job_id, kind=entry.kind.value)
        return handle

    async def stats(self) -> dict[str, dict[str, int]]:
        self._require_open()
        return await self.broker.stats()
