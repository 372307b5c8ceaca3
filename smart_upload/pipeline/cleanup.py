"""
Temporary file cleanup for finished batches.

Candidates are the split parts and original uploads of items that never
reached COMPLETE. Anything committed to the library, or still referenced by
a live or completed item in another batch, is kept. If the committed keys
cannot be read the pass deletes nothing.
"""

from dataclasses import dataclass, field

import structlog
from sqlalchemy import select

from smart_upload.errors import NotFoundError, TransientBackendError
from smart_upload.models.database import Database
from smart_upload.models.enums import ItemStatus
from smart_upload.models.tables import MusicFile, UploadBatch, UploadItem
from smart_upload.observability import metrics
from smart_upload.pipeline import state
from smart_upload.pipeline.service import parse_uuid
from smart_upload.schemas.metadata import SplitFileRecord
from smart_upload.storage.object_store import ObjectStorage

logger = structlog.get_logger(__name__)


@dataclass
class CleanupReport:
    batch_id: str
    candidates: int = 0
    deleted: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: bool = False


def _split_keys(item: UploadItem) -> list[str]:
    return [SplitFileRecord.model_validate(r).storage_key for r in (item.split_files or [])]


async def cleanup_batch_temp_files(db: Database, storage: ObjectStorage, batch_id: str) -> CleanupReport:
    report = CleanupReport(batch_id=str(batch_id))

    async with db.session() as session:
        batch = await session.get(UploadBatch, parse_uuid(batch_id, "UploadBatch"))
        if batch is None:
            raise NotFoundError("UploadBatch", str(batch_id))
        if not state.is_terminal(batch):
            logger.info("cleanup_skipped_batch_active", batch_id=str(batch_id), status=batch.status)
            report.skipped = True
            return report
        items = (await session.execute(
            select(UploadItem).where(UploadItem.batch_id == batch.batch_id)
        )).scalars().all()

    candidates: set[str] = set()
    for item in items:
        candidates.update(_split_keys(item))
        if item.status != ItemStatus.COMPLETE.value:
            candidates.add(item.storage_key)
    report.candidates = len(candidates)
    if not candidates:
        return report

    try:
        async with db.session() as session:
            committed = set((await session.execute(
                select(MusicFile.storage_key).where(MusicFile.storage_key.in_(candidates))
            )).scalars().all())

            hashes = {item.content_hash for item in items}
            # Live or completed items elsewhere still reference their upload.
            referenced_elsewhere = (await session.execute(
                select(UploadItem).where(
                    UploadItem.batch_id != batch.batch_id,
                    UploadItem.content_hash.in_(hashes),
                    UploadItem.status.not_in([ItemStatus.FAILED.value, ItemStatus.CANCELLED.value]),
                )
            )).scalars().all()
    except Exception as e:
        logger.error("cleanup_aborted", batch_id=str(batch_id), error=str(e))
        metrics.cleanup_files_total.labels(outcome="aborted").inc()
        raise TransientBackendError(f"Cleanup aborted, committed keys unavailable: {e}") from e

    protected = set(committed)
    protected.update(item.storage_key for item in items if item.status == ItemStatus.COMPLETE.value)
    for other in referenced_elsewhere:
        protected.add(other.storage_key)
        protected.update(_split_keys(other))

    for key in sorted(candidates):
        if key in protected:
            report.kept.append(key)
            metrics.cleanup_files_total.labels(outcome="kept").inc()
            continue
        try:
            existed = storage.delete(key)
        except Exception as e:
            logger.warning("cleanup_delete_failed", key=key, error=str(e))
            report.failed.append(key)
            metrics.cleanup_files_total.labels(outcome="failed").inc()
            continue
        if existed:
            report.deleted.append(key)
            metrics.cleanup_files_total.labels(outcome="deleted").inc()
        else:
            report.missing.append(key)

    gone = set(report.deleted) | set(report.missing)
    if gone:
        async with db.session() as session, session.begin():
            result = await session.execute(
                select(UploadItem).where(UploadItem.batch_id == batch.batch_id)
            )
            for item in result.scalars().all():
                if item.split_files:
                    remaining = [r for r in item.split_files if r.get("storage_key") not in gone]
                    if len(remaining) != len(item.split_files):
                        item.split_files = remaining

    logger.info(
        "cleanup_complete",
        batch_id=str(batch_id),
        candidates=report.candidates,
        deleted=len(report.deleted),
        kept=len(report.kept),
        missing=len(report.missing),
        failed=len(report.failed),
    )
    return report
