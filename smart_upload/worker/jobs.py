"""
RQ job functions.
RQ workers call run_envelope with a serialized JobEnvelope; retries and dead
letters are decided by the JobQueue, so from RQ's point of view the job
succeeds. on_envelope_failure covers deliveries RQ itself had to fail.
"""

import asyncio

import structlog
from rq import get_current_job

from smart_upload.worker.definitions import JobEnvelope

logger = structlog.get_logger(__name__)

OUTCOME_META_KEY = "outcome"


def run_envelope(envelope_json: str) -> str:
    """
    Main job function: execute one delivery of a pipeline job.
    This runs inside the RQ worker process.
    """
    envelope = JobEnvelope.model_validate_json(envelope_json)
    outcome = asyncio.run(_run_envelope_async(envelope))
    return outcome.value


async def _run_envelope_async(envelope: JobEnvelope):
    from smart_upload.runtime import Runtime

    runtime = Runtime.from_settings()
    await runtime.open()
    try:
        outcome = await runtime.queue.execute(envelope)
        _record_outcome(outcome.value)
        return outcome
    finally:
        await runtime.close()


def _record_outcome(value: str) -> None:
    job = get_current_job()
    if job is not None:
        job.meta[OUTCOME_META_KEY] = value
        job.save_meta()


def on_envelope_failure(job, connection, exc_type, exc_value, tb) -> None:
    """
    RQ failure callback (hard timeout, crash while opening the runtime).
    A delivery the JobQueue already settled is left alone; anything else is
    retried or dead-lettered so the item does not stay in flight forever.
    """
    if job.meta.get(OUTCOME_META_KEY):
        logger.warning("rq_failure_after_outcome", rq_job_id=job.id, outcome=job.meta[OUTCOME_META_KEY])
        return
    envelope = JobEnvelope.model_validate_json(job.args[0])
    name = exc_type.__name__ if exc_type is not None else "WorkerFailure"
    reason = f"{name}: {exc_value}"
    logger.error("rq_job_failed", rq_job_id=job.id, kind=envelope.kind.value, error=reason)
    asyncio.run(_abandon_async(envelope, reason))


async def _abandon_async(envelope: JobEnvelope, reason: str):
    from smart_upload.runtime import Runtime

    runtime = Runtime.from_settings()
    await runtime.open()
    try:
        return await runtime.queue.abandon(envelope, reason)
    finally:
        await runtime.close()
