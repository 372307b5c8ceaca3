"""
Job kinds, their payloads and their queue policies.

Every pipeline stage is a job kind with its own strongly typed payload.
Payload shapes are versionless: changing one means adding a new kind, so
dead-lettered jobs are never misread after a deploy.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from smart_upload.config import settings
from smart_upload.models.database import utcnow


class JobKind(str, Enum):
    EXTRACT_TEXT = "extract_text"
    CLASSIFY = "classify"
    SPLIT_PDF = "split_pdf"
    SECOND_PASS = "second_pass"
    INGEST = "ingest"
    CLEANUP = "cleanup"


# ── Payloads ─────────────────────────────────────────────────

class _Payload(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    @property
    def job_kind(self) -> JobKind:
        return JobKind(self.kind)


class ExtractTextJob(_Payload):
    kind: Literal["extract_text"] = "extract_text"
    batch_id: str
    item_id: str
    storage_key: str


class ClassifyJob(_Payload):
    kind: Literal["classify"] = "classify"
    batch_id: str
    item_id: str


class SplitPdfJob(_Payload):
    kind: Literal["split_pdf"] = "split_pdf"
    batch_id: str
    item_id: str
    storage_key: str


class SecondPassJob(_Payload):
    kind: Literal["second_pass"] = "second_pass"
    batch_id: str
    item_id: str


class IngestJob(_Payload):
    kind: Literal["ingest"] = "ingest"
    batch_id: str
    approved_by: str


class CleanupJob(_Payload):
    kind: Literal["cleanup"] = "cleanup"
    batch_id: str
    reason: str = "manual"


JobPayload = Annotated[
    Union[ExtractTextJob, ClassifyJob, SplitPdfJob, SecondPassJob, IngestJob, CleanupJob],
    Field(discriminator="kind"),
]

PAYLOAD_TYPES: dict[JobKind, type[_Payload]] = {
    JobKind.EXTRACT_TEXT: ExtractTextJob,
    JobKind.CLASSIFY: ClassifyJob,
    JobKind.SPLIT_PDF: SplitPdfJob,
    JobKind.SECOND_PASS: SecondPassJob,
    JobKind.INGEST: IngestJob,
    JobKind.CLEANUP: CleanupJob,
}

_payload_adapter = TypeAdapter(JobPayload)


def parse_payload(data: dict) -> _Payload:
    return _payload_adapter.validate_python(data)


class JobEnvelope(BaseModel):
    """What actually travels through the broker."""
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    payload: JobPayload
    attempt: int = 1
    enqueued_at: datetime = Field(default_factory=utcnow)
    replayed_from: Optional[str] = None

    @property
    def kind(self) -> JobKind:
        return JobKind(self.payload.kind)

    def next_attempt(self) -> "JobEnvelope":
        return self.model_copy(update={"attempt": self.attempt + 1, "enqueued_at": utcnow()})


# ── Policies ─────────────────────────────────────────────────

@dataclass(frozen=True)
class Backoff:
    type: Literal["fixed", "exponential"]
    delay_seconds: float
    max_delay_seconds: float = 300.0

    def delay_for(self, failed_attempts: int) -> float:
        """Delay before the retry that follows `failed_attempts` failures."""
        if self.type == "fixed":
            return self.delay_seconds
        return min(self.max_delay_seconds, self.delay_seconds * (2 ** max(0, failed_attempts - 1)))


@dataclass(frozen=True)
class JobPolicy:
    priority: int
    attempts: int
    backoff: Backoff
    concurrency: int
    timeout_seconds: int = 600


JOB_POLICIES: dict[JobKind, JobPolicy] = {
    JobKind.EXTRACT_TEXT: JobPolicy(
        priority=10, attempts=3, backoff=Backoff("exponential", 2.0), concurrency=3,
    ),
    JobKind.CLASSIFY: JobPolicy(
        priority=8, attempts=3, backoff=Backoff("exponential", 5.0), concurrency=2,
    ),
    JobKind.SPLIT_PDF: JobPolicy(
        priority=7, attempts=3, backoff=Backoff("exponential", 3.0), concurrency=2,
    ),
    JobKind.SECOND_PASS: JobPolicy(
        priority=8, attempts=3, backoff=Backoff("exponential", 5.0), concurrency=2,
    ),
    # Concurrency 1: a batch is never committed twice at the same time
    JobKind.INGEST: JobPolicy(
        priority=5, attempts=3, backoff=Backoff("exponential", 2.0), concurrency=1,
    ),
    JobKind.CLEANUP: JobPolicy(
        priority=1, attempts=1, backoff=Backoff("fixed", 1.0), concurrency=2, timeout_seconds=120,
    ),
}


def _check_exhaustive() -> None:
    for table_name, table in (("JOB_POLICIES", JOB_POLICIES), ("PAYLOAD_TYPES", PAYLOAD_TYPES)):
        missing = set(JobKind) - set(table)
        if missing:
            raise RuntimeError(f"{table_name} is missing job kinds: {sorted(k.value for k in missing)}")


_check_exhaustive()


def policy_for(kind: JobKind) -> JobPolicy:
    return JOB_POLICIES[kind]


def queue_name(kind: JobKind) -> str:
    return f"{settings.QUEUE_PREFIX}:{kind.value}"


def kinds_by_priority() -> list[JobKind]:
    return sorted(JobKind, key=lambda k: -JOB_POLICIES[k].priority)
