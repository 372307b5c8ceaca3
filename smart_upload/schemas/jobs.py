"""
Pydantic schemas for the /api/v1/jobs endpoints.
"""

from pydantic import BaseModel

from smart_upload.worker.definitions import JobKind
from smart_upload.worker.queue import DeadLetterEntry


class JobHandleResponse(BaseModel):
    job_id: str
    kind: JobKind
    queue: str
    attempt: int


class QueueStats(BaseModel):
    """Per-queue counters as reported by the broker."""
    broker: str
    queues: dict[str, dict[str, int]]


class DeadLetterListResponse(BaseModel):
    entries: list[DeadLetterEntry]
    total: int
