"""
Smart Upload service: the batch / item / proposal state machine.

Owns every lifecycle transition. Batch counters and batch status are always
recomputed from child rows inside the same transaction that changed a child,
never incremented, so concurrent stage handlers cannot lose updates.

Jobs are enqueued only after the transaction that made them necessary has
committed.
"""

import uuid
from typing import Optional, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from smart_upload.config import settings
from smart_upload.errors import (
    ExtractionError,
    InvalidBatchState,
    InvalidStateError,
    NotFoundError,
    TransientBackendError,
    ValidationError,
)
from smart_upload.models.database import Database, utcnow
from smart_upload.models.enums import (
    BatchStatus,
    ItemStatus,
    ItemStep,
    TERMINAL_ITEM_STATUSES,
)
from smart_upload.models.tables import (
    Instrument,
    MusicFile,
    MusicPiece,
    UploadBatch,
    UploadItem,
    UploadProposal,
)
from smart_upload.observability import metrics
from smart_upload.pipeline import state
from smart_upload.pipeline.instrument_matcher import CatalogInstrument
from smart_upload.pipeline.text_extraction import validate_pdf_signature
from smart_upload.schemas.metadata import (
    CATALOG_FIELDS,
    Corrections,
    ExtractedMetadata,
    PartMapping,
)
from smart_upload.storage.object_store import ObjectStorage
from smart_upload.storage.paths import (
    compute_content_hash,
    compute_work_fingerprint,
    extension_for,
    key_for_hash,
)
from smart_upload.worker.definitions import CleanupJob, ExtractTextJob, IngestJob
from smart_upload.worker.queue import JobHandle, JobQueue

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system"


def parse_uuid(value, entity: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFoundError(entity, str(value))


def validate_upload(file_name: str, mime_type: str, data: bytes) -> None:
    """Reject files the pipeline cannot process. Raises ValidationError."""
    if not file_name:
        raise ValidationError("File name is required")
    if mime_type not in settings.allowed_mime_types:
        raise ValidationError(f"Unsupported file type: {mime_type}")
    if not data:
        raise ValidationError("Empty file uploaded")
    if len(data) > settings.max_upload_bytes:
        raise ValidationError(
            f"File too large: {len(data)} bytes. Max: {settings.max_upload_bytes} bytes"
        )
    if mime_type == "application/pdf":
        try:
            validate_pdf_signature(data)
        except ExtractionError as e:
            raise ValidationError(e.message, code=f"ERR_{e.reason}") from e


async def load_instrument_catalog(session: AsyncSession) -> list[CatalogInstrument]:
    result = await session.execute(
        select(Instrument).order_by(Instrument.family, Instrument.sort_order, Instrument.name)
    )
    return [
        CatalogInstrument(
            instrument_id=str(row.instrument_id),
            name=row.name,
            family=row.family,
            sort_order=row.sort_order,
        )
        for row in result.scalars().all()
    ]


class SmartUploadService:
    """Lifecycle operations on batches, items and proposals."""

    def __init__(self, db: Database, storage: ObjectStorage, queue: JobQueue):
        self.db = db
        self.storage = storage
        self.queue = queue

    # ── Loading ──────────────────────────────────────────────

    async def lock_batch(self, session: AsyncSession, batch_id) -> UploadBatch:
        """Load a batch for update; serializes concurrent state changes on Postgres."""
        result = await session.execute(
            select(UploadBatch)
            .where(UploadBatch.batch_id == parse_uuid(batch_id, "UploadBatch"))
            .with_for_update()
        )
        batch = result.scalar_one_or_none()
        if batch is None:
            raise NotFoundError("UploadBatch", str(batch_id))
        return batch

    async def _get_item(self, session: AsyncSession, item_id) -> UploadItem:
        item = await session.get(UploadItem, parse_uuid(item_id, "UploadItem"))
        if item is None:
            raise NotFoundError("UploadItem", str(item_id))
        return item

    async def _get_proposal(self, session: AsyncSession, proposal_id) -> UploadProposal:
        proposal = await session.get(UploadProposal, parse_uuid(proposal_id, "UploadProposal"))
        if proposal is None:
            raise NotFoundError("UploadProposal", str(proposal_id))
        return proposal

    async def get_batch(self, batch_id) -> UploadBatch:
        async with self.db.session() as session:
            batch = await session.get(UploadBatch, parse_uuid(batch_id, "UploadBatch"))
            if batch is None:
                raise NotFoundError("UploadBatch", str(batch_id))
            return batch

    async def get_item(self, item_id) -> UploadItem:
        async with self.db.session() as session:
            return await self._get_item(session, item_id)

    async def get_proposal(self, proposal_id) -> UploadProposal:
        async with self.db.session() as session:
            return await self._get_proposal(session, proposal_id)

    async def list_user_batches(self, user_id: str, limit: int = 50, offset: int = 0) -> list[UploadBatch]:
        query = (
            select(UploadBatch)
            .where(UploadBatch.user_id == user_id)
            .order_by(UploadBatch.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self.db.session() as session:
            return list((await session.execute(query)).scalars().all())

    async def get_batch_detail(self, batch_id) -> tuple[UploadBatch, list[UploadItem], list[UploadProposal]]:
        """Batch with its items and proposals, read in one session."""
        async with self.db.session() as session:
            batch = await session.get(UploadBatch, parse_uuid(batch_id, "UploadBatch"))
            if batch is None:
                raise NotFoundError("UploadBatch", str(batch_id))
            items = (await session.execute(
                select(UploadItem)
                .where(UploadItem.batch_id == batch.batch_id)
                .order_by(UploadItem.created_at, UploadItem.file_name)
            )).scalars().all()
            proposals = (await session.execute(
                select(UploadProposal)
                .where(UploadProposal.batch_id == batch.batch_id)
                .order_by(UploadProposal.created_at)
            )).scalars().all()
            return batch, list(items), list(proposals)

    async def list_items(self, batch_id) -> list[UploadItem]:
        async with self.db.session() as session:
            result = await session.execute(
                select(UploadItem)
                .where(UploadItem.batch_id == parse_uuid(batch_id, "UploadBatch"))
                .order_by(UploadItem.created_at, UploadItem.file_name)
            )
            return list(result.scalars().all())

    async def list_proposals(self, batch_id) -> list[UploadProposal]:
        async with self.db.session() as session:
            result = await session.execute(
                select(UploadProposal)
                .where(UploadProposal.batch_id == parse_uuid(batch_id, "UploadBatch"))
                .order_by(UploadProposal.created_at)
            )
            return list(result.scalars().all())

    async def proposal_for_item(self, session: AsyncSession, item_id: uuid.UUID) -> Optional[UploadProposal]:
        result = await session.execute(
            select(UploadProposal).where(UploadProposal.item_id == item_id)
        )
        return result.scalar_one_or_none()

    async def load_stage(self, item_id) -> Optional[tuple[UploadBatch, UploadItem]]:
        """
        Fresh batch and item for a stage handler, or None when either is
        already terminal (cooperative cancellation).
        """
        async with self.db.session() as session:
            item = await self._get_item(session, item_id)
            batch = await session.get(UploadBatch, item.batch_id)
            if batch is None:
                raise NotFoundError("UploadBatch", str(item.batch_id))
            if state.is_terminal(batch) or state.is_terminal(item):
                logger.info(
                    "stage_skipped_terminal",
                    item_id=str(item.item_id),
                    batch_status=batch.status,
                    item_status=item.status,
                )
                return None
            return batch, item

    async def instrument_catalog(self) -> list[CatalogInstrument]:
        async with self.db.session() as session:
            return await load_instrument_catalog(session)

    # ── Aggregation ──────────────────────────────────────────

    async def _status_counts(self, session: AsyncSession, batch_id: uuid.UUID) -> dict[ItemStatus, int]:
        result = await session.execute(
            select(UploadItem.status, func.count(UploadItem.item_id))
            .where(UploadItem.batch_id == batch_id)
            .group_by(UploadItem.status)
        )
        return {ItemStatus(status): count for status, count in result.all()}

    async def recompute_batch_counters(self, session: AsyncSession, batch: UploadBatch) -> dict[ItemStatus, int]:
        counts = await self._status_counts(session, batch.batch_id)
        batch.total_files = sum(counts.values())
        batch.processed_files = sum(counts.get(s, 0) for s in TERMINAL_ITEM_STATUSES)
        batch.success_files = counts.get(ItemStatus.COMPLETE, 0)
        batch.failed_files = counts.get(ItemStatus.FAILED, 0)
        return counts

    async def _error_summary(self, session: AsyncSession, batch_id: uuid.UUID) -> Optional[str]:
        result = await session.execute(
            select(UploadItem.file_name, UploadItem.error_message)
            .where(UploadItem.batch_id == batch_id, UploadItem.status == ItemStatus.FAILED.value)
            .order_by(UploadItem.file_name)
        )
        errors = [f"{name}: {message}" for name, message in result.all() if message]
        return "; ".join(errors) or None

    async def refresh_batch(self, session: AsyncSession, batch: UploadBatch) -> bool:
        """
        Recompute counters and advance the batch from its children.
        Returns True when the batch just moved to INGESTING and the ingest
        job must be enqueued after commit.
        """
        counts = await self.recompute_batch_counters(session, batch)
        current = state.batch_status(batch)
        if state.is_terminal(batch) or current == BatchStatus.INGESTING:
            return False

        total = sum(counts.values())
        live = total - counts.get(ItemStatus.FAILED, 0) - counts.get(ItemStatus.CANCELLED, 0)

        if total and live == 0 and current in state.ACTIVE_BATCH_STATUSES:
            state.transition_batch(batch, BatchStatus.FAILED)
            batch.error_summary = await self._error_summary(session, batch.batch_id)
            batch.completed_at = utcnow()
            metrics.batches_finished_total.labels(status=BatchStatus.FAILED.value).inc()
            logger.warning("batch_failed_all_items", batch_id=str(batch.batch_id))
            return False

        if current == BatchStatus.PROCESSING and live:
            with_proposal = (await session.execute(
                select(func.count(UploadProposal.proposal_id))
                .join(UploadItem, UploadItem.item_id == UploadProposal.item_id)
                .where(
                    UploadItem.batch_id == batch.batch_id,
                    UploadItem.status.in_([s.value for s in state.REVIEWABLE_ITEM_STATUSES]),
                )
            )).scalar_one()
            if with_proposal == live:
                state.transition_batch(batch, BatchStatus.NEEDS_REVIEW)
                logger.info("batch_needs_review", batch_id=str(batch.batch_id), items=live)

        if state.batch_status(batch) == BatchStatus.NEEDS_REVIEW and live and counts.get(ItemStatus.APPROVED, 0) == live:
            state.transition_batch(batch, BatchStatus.INGESTING)
            batch.error_summary = None
            logger.info("batch_ready_for_ingestion", batch_id=str(batch.batch_id))
            return True
        return False

    async def _enqueue_ingestion(self, batch_id: uuid.UUID, approved_by: str) -> Optional[JobHandle]:
        """Enqueue ingestion for a batch already marked INGESTING; revert on failure."""
        try:
            return await self.queue.enqueue(IngestJob(batch_id=str(batch_id), approved_by=approved_by))
        except Exception as e:
            logger.error("ingest_enqueue_failed", batch_id=str(batch_id), error=str(e))
            async with self.db.session() as session, session.begin():
                batch = await self.lock_batch(session, batch_id)
                if state.batch_status(batch) == BatchStatus.INGESTING:
                    state.transition_batch(batch, BatchStatus.NEEDS_REVIEW)
                    batch.error_summary = f"Ingestion could not be queued: {e}"
            return None

    # ── Batches ──────────────────────────────────────────────

    async def create_batch(self, user_id: str) -> UploadBatch:
        if not user_id:
            raise ValidationError("user_id is required")
        async with self.db.session() as session, session.begin():
            batch = UploadBatch(user_id=user_id, status=BatchStatus.CREATED.value)
            session.add(batch)
        logger.info("batch_created", batch_id=str(batch.batch_id), user_id=user_id)
        return batch

    async def cancel_batch(self, batch_id) -> UploadBatch:
        """
        Cancel a batch and every non-terminal item in it.
        Refused for terminal batches and once ingestion has started.
        """
        async with self.db.session() as session, session.begin():
            batch = await self.lock_batch(session, batch_id)
            current = state.batch_status(batch)
            if state.is_terminal(batch):
                raise InvalidBatchState(f"Batch {batch.batch_id} is already {current.value}")
            if current not in state.CANCELLABLE_BATCH_STATUSES:
                raise InvalidStateError(f"Batch {batch.batch_id} cannot be cancelled while {current.value}")

            now = utcnow()
            result = await session.execute(
                select(UploadItem).where(
                    UploadItem.batch_id == batch.batch_id,
                    UploadItem.status.not_in([s.value for s in TERMINAL_ITEM_STATUSES]),
                )
            )
            cancelled = 0
            for item in result.scalars().all():
                state.transition_item(item, ItemStatus.CANCELLED)
                item.completed_at = now
                cancelled += 1

            state.transition_batch(batch, BatchStatus.CANCELLED)
            batch.completed_at = now
            await session.flush()
            await self.recompute_batch_counters(session, batch)

        metrics.batches_finished_total.labels(status=BatchStatus.CANCELLED.value).inc()
        logger.info("batch_cancelled", batch_id=str(batch.batch_id), items_cancelled=cancelled)
        return batch

    async def request_cleanup(self, batch_id) -> dict:
        """
        Cancel the batch if it can still be cancelled, then queue a cleanup
        pass. Safe to call repeatedly.
        """
        batch = await self.get_batch(batch_id)
        if state.batch_status(batch) in state.CANCELLABLE_BATCH_STATUSES:
            batch = await self.cancel_batch(batch_id)
        handle = await self.queue.enqueue(CleanupJob(batch_id=str(batch.batch_id), reason="cleanup_requested"))
        return {"batch_id": str(batch.batch_id), "status": batch.status, "cleanup_job_id": handle.job_id}

    async def start_ingestion(self, batch_id, approved_by: str) -> UploadBatch:
        """Queue ingestion for a fully approved batch (also retries a failed enqueue)."""
        async with self.db.session() as session, session.begin():
            batch = await self.lock_batch(session, batch_id)
            if state.batch_status(batch) != BatchStatus.NEEDS_REVIEW:
                raise InvalidStateError(f"Batch {batch.batch_id} is {batch.status}, not NEEDS_REVIEW")
            ready = await self.refresh_batch(session, batch)
            if not ready:
                raise InvalidStateError(f"Batch {batch.batch_id} still has proposals awaiting approval")

        handle = await self._enqueue_ingestion(batch.batch_id, approved_by)
        if handle is None:
            raise TransientBackendError("Ingestion could not be queued")
        return await self.get_batch(batch.batch_id)

    async def mark_batch_failed(self, batch_id, reason: str) -> None:
        """Used when the ingest job itself is dead-lettered."""
        async with self.db.session() as session, session.begin():
            batch = await self.lock_batch(session, batch_id)
            if state.is_terminal(batch):
                return
            state.transition_batch(batch, BatchStatus.FAILED)
            batch.error_summary = reason
            batch.completed_at = utcnow()
            await self.recompute_batch_counters(session, batch)
        metrics.batches_finished_total.labels(status=BatchStatus.FAILED.value).inc()
        logger.error("batch_failed", batch_id=str(batch_id), reason=reason)

    # ── Items ────────────────────────────────────────────────

    async def add_item(self, batch_id, file_name: str, mime_type: str, data: bytes) -> UploadItem:
        """Validate, store and record one uploaded file."""
        validate_upload(file_name, mime_type, data)

        batch = await self.get_batch(batch_id)
        if state.is_terminal(batch) or state.batch_status(batch) not in state.UPLOAD_BATCH_STATUSES:
            raise InvalidBatchState(f"Batch {batch.batch_id} does not accept files while {batch.status}")

        content_hash = compute_content_hash(data)
        storage_key = key_for_hash(content_hash, extension_for(file_name, mime_type))
        self.storage.upload(storage_key, data, mime_type)

        async with self.db.session() as session, session.begin():
            batch = await self.lock_batch(session, batch_id)
            if state.is_terminal(batch) or state.batch_status(batch) not in state.UPLOAD_BATCH_STATUSES:
                raise InvalidBatchState(f"Batch {batch.batch_id} does not accept files while {batch.status}")

            existing = (await session.execute(
                select(func.count(UploadItem.item_id)).where(UploadItem.batch_id == batch.batch_id)
            )).scalar_one()
            if existing >= settings.MAX_FILES_PER_BATCH:
                raise ValidationError(f"Batch already holds {existing} files (max {settings.MAX_FILES_PER_BATCH})")

            item = UploadItem(
                batch_id=batch.batch_id,
                file_name=file_name,
                file_size_bytes=len(data),
                mime_type=mime_type,
                storage_key=storage_key,
                content_hash=content_hash,
                status=ItemStatus.CREATED.value,
            )
            session.add(item)
            if state.batch_status(batch) == BatchStatus.CREATED:
                state.transition_batch(batch, BatchStatus.UPLOADING)
            await session.flush()
            await self.recompute_batch_counters(session, batch)

        metrics.items_uploaded_total.labels(mime_type=mime_type).inc()
        logger.info(
            "item_added",
            batch_id=str(batch.batch_id),
            item_id=str(item.item_id),
            file_name=file_name,
            size_bytes=len(data),
            content_hash=content_hash,
        )
        return item

    async def submit_item(self, item_id) -> UploadItem:
        """Mark an item validated and queue text extraction for it."""
        async with self.db.session() as session, session.begin():
            item = await self._get_item(session, item_id)
            batch = await self.lock_batch(session, item.batch_id)
            if state.is_terminal(batch):
                raise InvalidBatchState(f"Batch {batch.batch_id} is already {batch.status}")
            state.transition_item(item, ItemStatus.VALIDATED)
            item.current_step = ItemStep.VALIDATED.value
            if state.batch_status(batch) in (BatchStatus.CREATED, BatchStatus.UPLOADING):
                state.transition_batch(batch, BatchStatus.PROCESSING)

        try:
            await self.queue.enqueue(ExtractTextJob(
                batch_id=str(item.batch_id), item_id=str(item.item_id), storage_key=item.storage_key,
            ))
        except Exception as e:
            await self.fail_item(item.item_id, f"Could not queue text extraction: {e}", stage="submit")
            raise TransientBackendError(f"Could not queue text extraction: {e}") from e
        return item

    async def upload_and_submit(self, batch_id, file_name: str, mime_type: str, data: bytes) -> UploadItem:
        item = await self.add_item(batch_id, file_name, mime_type, data)
        return await self.submit_item(item.item_id)

    async def fail_item(self, item_id, reason: str, stage: Optional[str] = None) -> bool:
        """
        Mark one item FAILED with its reason and re-derive the batch.
        No-op for items that are already terminal. Returns True if changed.
        """
        async with self.db.session() as session, session.begin():
            item = await self._get_item(session, item_id)
            batch = await self.lock_batch(session, item.batch_id)
            if state.is_terminal(item):
                return False
            state.transition_item(item, ItemStatus.FAILED)
            item.error_message = reason[:2000]
            item.completed_at = utcnow()
            await session.flush()
            ready = await self.refresh_batch(session, batch)
            approver = await self._last_approver(session, batch.batch_id) if ready else None

        metrics.items_failed_total.labels(stage=stage or "unknown").inc()
        logger.warning("item_failed", item_id=str(item_id), batch_id=str(batch.batch_id), stage=stage, reason=reason)
        if ready:
            await self._enqueue_ingestion(batch.batch_id, approver or SYSTEM_ACTOR)
        return True

    async def advance_item(
        self,
        item_id,
        target: Optional[ItemStatus] = None,
        step: Optional[ItemStep] = None,
        **fields,
    ) -> Optional[UploadItem]:
        """
        Record a stage result on an item, optionally moving it to `target`.
        Returns None without writing if the item or its batch is terminal.
        """
        async with self.db.session() as session, session.begin():
            item = await self._get_item(session, item_id)
            batch = await self.lock_batch(session, item.batch_id)
            if state.is_terminal(batch) or state.is_terminal(item):
                logger.info("advance_skipped_terminal", item_id=str(item.item_id), item_status=item.status)
                return None
            if target is not None:
                state.transition_item(item, target)
            if step is not None:
                item.current_step = step.value
            for name, value in fields.items():
                setattr(item, name, value)
        return item

    async def _last_approver(self, session: AsyncSession, batch_id: uuid.UUID) -> Optional[str]:
        result = await session.execute(
            select(UploadProposal.approved_by)
            .where(UploadProposal.batch_id == batch_id, UploadProposal.is_approved.is_(True))
            .order_by(UploadProposal.approved_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ── Proposals ────────────────────────────────────────────

    async def _match_existing_piece(
        self, session: AsyncSession, fingerprint: Optional[str], content_hash: str,
    ) -> Optional[uuid.UUID]:
        if fingerprint:
            piece_id = (await session.execute(
                select(MusicPiece.piece_id).where(MusicPiece.work_fingerprint == fingerprint).limit(1)
            )).scalar_one_or_none()
            if piece_id is not None:
                return piece_id
        return (await session.execute(
            select(MusicFile.piece_id).where(MusicFile.content_hash == content_hash).limit(1)
        )).scalar_one_or_none()

    async def create_proposal(
        self,
        item_id,
        metadata: ExtractedMetadata,
        parts: Sequence[PartMapping] = (),
    ) -> Optional[UploadProposal]:
        """
        Record the reviewable proposal for an item. One proposal per item:
        a repeat call returns the existing one. Returns None if the item or
        batch became terminal meanwhile.
        """
        async with self.db.session() as session, session.begin():
            item = await self._get_item(session, item_id)
            batch = await self.lock_batch(session, item.batch_id)
            if state.is_terminal(batch) or state.is_terminal(item):
                return None
            if state.item_status(item) not in state.REVIEWABLE_ITEM_STATUSES:
                raise InvalidStateError(f"Item {item.item_id} is {item.status}, not ready for review")

            existing = await self.proposal_for_item(session, item.item_id)
            if existing is not None:
                return existing

            fingerprint = compute_work_fingerprint(metadata.title, metadata.composer) if metadata.title else None
            matched_piece_id = await self._match_existing_piece(session, fingerprint, item.content_hash)

            proposal = UploadProposal(
                item_id=item.item_id,
                batch_id=batch.batch_id,
                parts=[p.model_dump(mode="json") for p in parts],
                corrections={},
                matched_piece_id=matched_piece_id,
                is_new_piece=matched_piece_id is None,
                work_fingerprint=fingerprint,
                **metadata.catalog_values(),
            )
            session.add(proposal)
            await session.flush()
            ready = await self.refresh_batch(session, batch)

        logger.info(
            "proposal_created",
            proposal_id=str(proposal.proposal_id),
            item_id=str(item.item_id),
            parts=len(parts),
            matched_piece_id=str(matched_piece_id) if matched_piece_id else None,
        )
        if ready:
            await self._enqueue_ingestion(batch.batch_id, SYSTEM_ACTOR)
        return proposal

    def _apply_corrections(self, proposal: UploadProposal, corrections: Optional[Corrections]) -> None:
        if corrections is None:
            return
        overlay = corrections.to_overlay()
        if not overlay:
            return
        proposal.corrections = {**(proposal.corrections or {}), **overlay}
        for field, value in overlay.items():
            if field in CATALOG_FIELDS:
                setattr(proposal, field, value)

    async def _lock_for_review(self, session: AsyncSession, proposal_id) -> tuple[UploadProposal, UploadBatch, UploadItem]:
        proposal = await self._get_proposal(session, proposal_id)
        batch = await self.lock_batch(session, proposal.batch_id)
        if state.batch_status(batch) not in state.REVIEW_BATCH_STATUSES:
            raise InvalidStateError(f"Batch {batch.batch_id} is {batch.status}, not in review")
        if proposal.is_approved:
            raise InvalidStateError(f"Proposal {proposal.proposal_id} is already approved")
        item = await self._get_item(session, proposal.item_id)
        if state.is_terminal(item):
            raise InvalidStateError(f"Item {item.item_id} is already {item.status}")
        return proposal, batch, item

    async def update_proposal(self, proposal_id, corrections: Corrections) -> UploadProposal:
        """Merge reviewer corrections without approving."""
        async with self.db.session() as session, session.begin():
            proposal, _, _ = await self._lock_for_review(session, proposal_id)
            self._apply_corrections(proposal, corrections)
        logger.info("proposal_corrected", proposal_id=str(proposal.proposal_id), fields=sorted(corrections.to_overlay()))
        return proposal

    async def approve_proposal(
        self,
        proposal_id,
        approved_by: str,
        corrections: Optional[Corrections] = None,
    ) -> UploadProposal:
        """
        In one transaction: merge corrections, mark approved, move the item
        to APPROVED and re-check the batch. When every remaining item is
        approved the batch moves to INGESTING and ingestion is queued.
        """
        if not approved_by:
            raise ValidationError("approved_by is required")
        async with self.db.session() as session, session.begin():
            proposal, batch, item = await self._lock_for_review(session, proposal_id)
            self._apply_corrections(proposal, corrections)
            proposal.is_approved = True
            proposal.approved_at = utcnow()
            proposal.approved_by = approved_by
            state.transition_item(item, ItemStatus.APPROVED)
            await session.flush()
            ready = await self.refresh_batch(session, batch)

        logger.info(
            "proposal_approved",
            proposal_id=str(proposal.proposal_id),
            batch_id=str(batch.batch_id),
            approved_by=approved_by,
            batch_status=batch.status,
        )
        if ready:
            await self._enqueue_ingestion(batch.batch_id, approved_by)
        return proposal

    async def reject_proposal(self, proposal_id, reason: str, rejected_by: str) -> UploadItem:
        """Reviewer drops an item from the batch; the rest may proceed."""
        async with self.db.session() as session, session.begin():
            proposal, batch, item = await self._lock_for_review(session, proposal_id)
            state.transition_item(item, ItemStatus.FAILED)
            item.error_message = f"Rejected by {rejected_by}: {reason}"[:2000]
            item.completed_at = utcnow()
            await session.flush()
            ready = await self.refresh_batch(session, batch)
            approver = await self._last_approver(session, batch.batch_id) if ready else None

        logger.info("proposal_rejected", proposal_id=str(proposal.proposal_id), rejected_by=rejected_by)
        if ready:
            await self._enqueue_ingestion(batch.batch_id, approver or rejected_by)
        return item
