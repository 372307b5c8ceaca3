"""
Lifecycle transition tables for batches and items.
Every status change in the pipeline goes through these checks.
"""

from typing import Union

from smart_upload.errors import InvalidStateError
from smart_upload.models.enums import (
    BatchStatus,
    ItemStatus,
    TERMINAL_BATCH_STATUSES,
    TERMINAL_ITEM_STATUSES,
)
from smart_upload.models.tables import UploadBatch, UploadItem

B = BatchStatus
I = ItemStatus

BATCH_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    B.CREATED: frozenset({B.UPLOADING, B.PROCESSING, B.FAILED, B.CANCELLED}),
    B.UPLOADING: frozenset({B.PROCESSING, B.FAILED, B.CANCELLED}),
    B.PROCESSING: frozenset({B.NEEDS_REVIEW, B.FAILED, B.CANCELLED}),
    B.NEEDS_REVIEW: frozenset({B.INGESTING, B.FAILED, B.CANCELLED}),
    # Back to NEEDS_REVIEW only when the ingest job could not be enqueued
    B.INGESTING: frozenset({B.COMPLETE, B.FAILED, B.NEEDS_REVIEW}),
    B.COMPLETE: frozenset(),
    B.FAILED: frozenset(),
    B.CANCELLED: frozenset(),
}

ITEM_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    I.CREATED: frozenset({I.VALIDATED, I.FAILED, I.CANCELLED}),
    I.VALIDATED: frozenset({I.TEXT_EXTRACTED, I.FAILED, I.CANCELLED}),
    I.TEXT_EXTRACTED: frozenset({I.CLASSIFIED, I.FAILED, I.CANCELLED}),
    I.CLASSIFIED: frozenset({I.SPLIT, I.APPROVED, I.FAILED, I.CANCELLED}),
    I.SPLIT: frozenset({I.APPROVED, I.FAILED, I.CANCELLED}),
    I.APPROVED: frozenset({I.COMPLETE, I.FAILED, I.CANCELLED}),
    I.COMPLETE: frozenset(),
    I.FAILED: frozenset(),
    I.CANCELLED: frozenset(),
}

# Items that have produced (or can produce) a reviewable proposal
REVIEWABLE_ITEM_STATUSES = frozenset({I.CLASSIFIED, I.SPLIT, I.APPROVED})

# Batch states that settle to FAILED once no live item remains
ACTIVE_BATCH_STATUSES = frozenset({B.PROCESSING, B.NEEDS_REVIEW})

# Batch states in which proposals may be corrected, approved or rejected
REVIEW_BATCH_STATUSES = frozenset({B.NEEDS_REVIEW})

# Batch states that accept new files
UPLOAD_BATCH_STATUSES = frozenset({B.CREATED, B.UPLOADING, B.PROCESSING})

# Cancellation is refused once ingestion has started
CANCELLABLE_BATCH_STATUSES = frozenset({B.CREATED, B.UPLOADING, B.PROCESSING, B.NEEDS_REVIEW})


def batch_status(batch: UploadBatch) -> BatchStatus:
    return BatchStatus(batch.status)


def item_status(item: UploadItem) -> ItemStatus:
    return ItemStatus(item.status)


def is_terminal(entity: Union[UploadBatch, UploadItem]) -> bool:
    if isinstance(entity, UploadBatch):
        return batch_status(entity) in TERMINAL_BATCH_STATUSES
    return item_status(entity) in TERMINAL_ITEM_STATUSES


def can_transition_batch(current: BatchStatus, target: BatchStatus) -> bool:
    return target in BATCH_TRANSITIONS[current]


def can_transition_item(current: ItemStatus, target: ItemStatus) -> bool:
    return target in ITEM_TRANSITIONS[current]


def transition_batch(batch: UploadBatch, target: BatchStatus) -> None:
    current = batch_status(batch)
    if current == target:
        return
    if not can_transition_batch(current, target):
        raise InvalidStateError(
            f"Batch {batch.batch_id} cannot move from {current.value} to {target.value}"
        )
    batch.status = target.value


def transition_item(item: UploadItem, target: ItemStatus) -> None:
    current = item_status(item)
    if current == target:
        return
    if not can_transition_item(current, target):
        raise InvalidStateError(
            f"Item {item.item_id} cannot move from {current.value} to {target.value}"
        )
    item.status = target.value
