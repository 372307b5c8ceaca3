"""
Tests for temporary file cleanup.
"""

import pytest

from smart_upload.errors import TransientBackendError
from smart_upload.models.enums import BatchStatus, ItemStatus
from smart_upload.pipeline.cleanup import cleanup_batch_temp_files
from smart_upload.schemas.metadata import ExtractedMetadata

PARADE = ExtractedMetadata(title="Liberty Parade", title_confidence=0.9, composer="J. Smith", composer_confidence=0.9)


async def _processed_packet(service, broker, backend, packet_pdf, user_id="alice"):
    backend.respond(packet_pdf, PARADE)
    batch = await service.create_batch(user_id)
    item = await service.upload_and_submit(batch.batch_id, "parade.pdf", "application/pdf", packet_pdf)
    await broker.run_until_idle()
    item = await service.get_item(item.item_id)
    assert len(item.split_files) == 2
    return batch.batch_id, item


class TestCleanupBatchTempFiles:
    """Test which keys are deleted and which are protected."""

    @pytest.mark.asyncio
    async def test_active_batch_skipped(self, service, broker, backend, storage, db, packet_pdf):
        batch_id, item = await _processed_packet(service, broker, backend, packet_pdf)
        report = await cleanup_batch_temp_files(db, storage, str(batch_id))
        assert report.skipped
        assert storage.exists(item.storage_key)

    @pytest.mark.asyncio
    async def test_cancelled_batch_cleaned(self, service, broker, backend, storage, db, packet_pdf):
        batch_id, item = await _processed_packet(service, broker, backend, packet_pdf)
        await service.cancel_batch(batch_id)

        report = await cleanup_batch_temp_files(db, storage, str(batch_id))
        split_keys = [r["storage_key"] for r in item.split_files]
        assert sorted(report.deleted) == sorted(split_keys + [item.storage_key])
        assert report.kept == []
        for key in split_keys + [item.storage_key]:
            assert not storage.exists(key)
        assert (await service.get_item(item.item_id)).split_files == []

    @pytest.mark.asyncio
    async def test_committed_files_kept(self, service, broker, backend, storage, db, packet_pdf):
        batch_id, item = await _processed_packet(service, broker, backend, packet_pdf)
        proposal = (await service.list_proposals(batch_id))[0]
        await service.approve_proposal(proposal.proposal_id, approved_by="alice")
        await broker.run_until_idle()
        assert (await service.get_batch(batch_id)).status == BatchStatus.COMPLETE.value

        report = await cleanup_batch_temp_files(db, storage, str(batch_id))
        split_keys = [r["storage_key"] for r in item.split_files]
        assert report.deleted == []
        assert sorted(report.kept) == sorted(split_keys)
        assert storage.exists(item.storage_key)
        for key in split_keys:
            assert storage.exists(key)

    @pytest.mark.asyncio
    async def test_live_upload_elsewhere_protected(self, service, broker, backend, storage, db, packet_pdf):
        batch_id, item = await _processed_packet(service, broker, backend, packet_pdf)
        await service.cancel_batch(batch_id)

        other = await service.create_batch("bob")
        await service.add_item(other.batch_id, "same.pdf", "application/pdf", packet_pdf)

        report = await cleanup_batch_temp_files(db, storage, str(batch_id))
        assert item.storage_key in report.kept
        assert storage.exists(item.storage_key)
        assert len(report.deleted) == 2

    @pytest.mark.asyncio
    async def test_library_copy_elsewhere_protected(self, service, broker, backend, storage, db, single_part_pdf):
        backend.respond(single_part_pdf, PARADE)
        first = await service.create_batch("alice")
        await service.upload_and_submit(first.batch_id, "hymn.pdf", "application/pdf", single_part_pdf)
        await broker.run_until_idle()
        proposal = (await service.list_proposals(first.batch_id))[0]
        await service.approve_proposal(proposal.proposal_id, approved_by="alice")
        await broker.run_until_idle()

        second = await service.create_batch("alice")
        duplicate = await service.add_item(second.batch_id, "hymn again.pdf", "application/pdf", single_part_pdf)
        await service.cancel_batch(second.batch_id)

        report = await cleanup_batch_temp_files(db, storage, str(second.batch_id))
        assert report.kept == [duplicate.storage_key]
        assert storage.exists(duplicate.storage_key)

    @pytest.mark.asyncio
    async def test_missing_objects_reported(self, service, storage, db, single_part_pdf):
        batch = await service.create_batch("alice")
        item = await service.add_item(batch.batch_id, "hymn.pdf", "application/pdf", single_part_pdf)
        await service.cancel_batch(batch.batch_id)
        storage.delete(item.storage_key)

        report = await cleanup_batch_temp_files(db, storage, str(batch.batch_id))
        assert report.missing == [item.storage_key]
        assert report.deleted == []

    @pytest.mark.asyncio
    async def test_completed_packet_elsewhere_protected(self, service, broker, backend, storage, db, packet_pdf):
        batch_id, item = await _processed_packet(service, broker, backend, packet_pdf)
        proposal = (await service.list_proposals(batch_id))[0]
        await service.approve_proposal(proposal.proposal_id, approved_by="alice")
        await broker.run_until_idle()
        assert (await service.get_item(item.item_id)).status == ItemStatus.COMPLETE.value

        second = await service.create_batch("alice")
        duplicate = await service.add_item(second.batch_id, "parade again.pdf", "application/pdf", packet_pdf)
        assert duplicate.storage_key == item.storage_key
        await service.cancel_batch(second.batch_id)

        report = await cleanup_batch_temp_files(db, storage, str(second.batch_id))
        assert report.deleted == []
        assert report.kept == [item.storage_key]
        assert storage.exists(item.storage_key)

    @pytest.mark.asyncio
    async def test_unreadable_committed_keys_abort(self, monkeypatch, service, broker, backend, storage, db, packet_pdf):
        batch_id, item = await _processed_packet(service, broker, backend, packet_pdf)
        await service.cancel_batch(batch_id)
        keys = [r["storage_key"] for r in item.split_files] + [item.storage_key]

        open_session = db.session
        opened = []

        def failing_after_first():
            opened.append(1)
            if len(opened) > 1:
                raise ConnectionError("database unavailable")
            return open_session()

        monkeypatch.setattr(db, "session", failing_after_first)
        with pytest.raises(TransientBackendError):
            await cleanup_batch_temp_files(db, storage, str(batch_id))

        monkeypatch.undo()
        for key in keys:
            assert storage.exists(key)
        assert len((await service.get_item(item.item_id)).split_files) == 2
