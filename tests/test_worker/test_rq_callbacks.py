"""
Tests for the RQ side of the worker: hard timeouts and the failure callback.
"""

import pytest

from smart_upload.worker import jobs
from smart_upload.worker.brokers import rq_job_timeout
from smart_upload.worker.definitions import JOB_POLICIES, ClassifyJob, JobEnvelope
from smart_upload.worker.queue import JobOutcome


class FakeRqJob:
    def __init__(self, envelope, meta=None):
        self.id = f"{envelope.job_id}-{envelope.attempt}"
        self.args = (envelope.model_dump_json(),)
        self.meta = meta or {}


class JobTimeoutException(Exception):
    pass


@pytest.fixture
def abandoned(monkeypatch):
    calls = []

    async def fake_abandon(envelope, reason):
        calls.append((envelope, reason))
        return JobOutcome.RETRY_SCHEDULED

    monkeypatch.setattr(jobs, "_abandon_async", fake_abandon)
    return calls


class TestRqJobTimeout:
    def test_hard_limit_above_handler_timeout(self):
        for policy in JOB_POLICIES.values():
            assert rq_job_timeout(policy) > policy.timeout_seconds


class TestOnEnvelopeFailure:
    """Test settling deliveries that RQ failed."""

    def test_unsettled_delivery_abandoned(self, abandoned):
        envelope = JobEnvelope(payload=ClassifyJob(batch_id="b1", item_id="i1"), attempt=2)
        exc = JobTimeoutException("Task exceeded maximum timeout value (660 seconds)")

        jobs.on_envelope_failure(FakeRqJob(envelope), None, JobTimeoutException, exc, None)

        assert len(abandoned) == 1
        sent, reason = abandoned[0]
        assert (sent.job_id, sent.attempt, sent.payload.item_id) == (envelope.job_id, 2, "i1")
        assert reason.startswith("JobTimeoutException: Task exceeded")

    def test_settled_delivery_left_alone(self, abandoned):
        envelope = JobEnvelope(payload=ClassifyJob(batch_id="b1", item_id="i1"))
        job = FakeRqJob(envelope, meta={jobs.OUTCOME_META_KEY: JobOutcome.RETRY_SCHEDULED.value})

        jobs.on_envelope_failure(job, None, JobTimeoutException, JobTimeoutException("late"), None)

        assert abandoned == []
