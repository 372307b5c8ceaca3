"""
Tests for job kinds, payloads and queue policies.
"""

import pytest
from pydantic import ValidationError

from smart_upload.worker.definitions import (
    JOB_POLICIES,
    Backoff,
    ClassifyJob,
    IngestJob,
    JobEnvelope,
    JobKind,
    kinds_by_priority,
    parse_payload,
    queue_name,
)


class TestBackoff:
    """Test retry delay schedules."""

    def test_exponential_doubles(self):
        backoff = Backoff("exponential", 2.0)
        assert [backoff.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_exponential_capped(self):
        assert Backoff("exponential", 2.0, max_delay_seconds=30.0).delay_for(10) == 30.0

    def test_fixed(self):
        backoff = Backoff("fixed", 1.5)
        assert backoff.delay_for(1) == backoff.delay_for(5) == 1.5


class TestPayloads:
    def test_parse_by_kind(self):
        payload = parse_payload({"kind": "classify", "batch_id": "b1", "item_id": "i1"})
        assert isinstance(payload, ClassifyJob)
        assert payload.job_kind == JobKind.CLASSIFY

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            parse_payload({"kind": "classify", "batch_id": "b1", "item_id": "i1", "extra": 1})

    def test_missing_fields_rejected(self):
        with pytest.raises(ValidationError):
            parse_payload({"kind": "ingest", "batch_id": "b1"})

    def test_payloads_are_frozen(self):
        payload = IngestJob(batch_id="b1", approved_by="alice")
        with pytest.raises(ValidationError):
            payload.batch_id = "b2"


class TestJobEnvelope:
    def test_json_keeps_payload_type(self):
        envelope = JobEnvelope(payload=IngestJob(batch_id="b1", approved_by="alice"))
        restored = JobEnvelope.model_validate_json(envelope.model_dump_json())
        assert isinstance(restored.payload, IngestJob)
        assert restored.kind == JobKind.INGEST
        assert restored.job_id == envelope.job_id

    def test_next_attempt(self):
        envelope = JobEnvelope(payload=ClassifyJob(batch_id="b1", item_id="i1"))
        retry = envelope.next_attempt()
        assert retry.attempt == 2
        assert retry.job_id == envelope.job_id
        assert envelope.attempt == 1


class TestPolicies:
    """Test the per-kind policy table."""

    def test_every_kind_has_a_policy(self):
        assert set(JOB_POLICIES) == set(JobKind)

    def test_ingest_runs_one_at_a_time(self):
        assert JOB_POLICIES[JobKind.INGEST].concurrency == 1

    def test_cleanup_is_not_retried(self):
        assert JOB_POLICIES[JobKind.CLEANUP].attempts == 1

    def test_priority_order(self):
        order = kinds_by_priority()
        assert order[0] == JobKind.EXTRACT_TEXT
        assert order[-1] == JobKind.CLEANUP

    def test_queue_name(self):
        assert queue_name(JobKind.SPLIT_PDF) == "smart-upload:split_pdf"
