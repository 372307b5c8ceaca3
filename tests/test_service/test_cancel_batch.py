"""
Tests for batch cancellation.
"""

import pytest

from smart_upload.errors import InvalidBatchState, InvalidStateError
from smart_upload.models.enums import BatchStatus, ItemStatus
from smart_upload.schemas.metadata import ExtractedMetadata


class TestCancelBatch:
    """Test cancellation and cooperative stop of running stages."""

    @pytest.mark.asyncio
    async def test_empty_batch(self, service):
        batch = await service.create_batch("alice")
        cancelled = await service.cancel_batch(batch.batch_id)
        assert cancelled.status == BatchStatus.CANCELLED.value
        assert cancelled.completed_at is not None

    @pytest.mark.asyncio
    async def test_items_cancelled_and_counted(self, service, single_part_pdf, packet_pdf):
        batch = await service.create_batch("alice")
        await service.upload_and_submit(batch.batch_id, "hymn.pdf", "application/pdf", single_part_pdf)
        await service.add_item(batch.batch_id, "packet.pdf", "application/pdf", packet_pdf)

        cancelled = await service.cancel_batch(batch.batch_id)
        assert (cancelled.total_files, cancelled.processed_files) == (2, 2)
        for item in await service.list_items(batch.batch_id):
            assert item.status == ItemStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_queued_stages_do_nothing(self, service, broker, backend, single_part_pdf):
        batch = await service.create_batch("alice")
        item = await service.upload_and_submit(batch.batch_id, "hymn.pdf", "application/pdf", single_part_pdf)
        await service.cancel_batch(batch.batch_id)

        await broker.run_until_idle()
        item = await service.get_item(item.item_id)
        assert item.status == ItemStatus.CANCELLED.value
        assert item.ocr_text is None
        assert backend.calls == []
        assert await service.list_proposals(batch.batch_id) == []

    @pytest.mark.asyncio
    async def test_terminal_batch_refused(self, service):
        batch = await service.create_batch("alice")
        await service.cancel_batch(batch.batch_id)
        with pytest.raises(InvalidBatchState):
            await service.cancel_batch(batch.batch_id)

    @pytest.mark.asyncio
    async def test_ingesting_batch_refused(self, service, broker, backend, single_part_pdf):
        backend.respond(single_part_pdf, ExtractedMetadata(title="Evening Hymn", title_confidence=0.9))
        batch = await service.create_batch("alice")
        await service.upload_and_submit(batch.batch_id, "hymn.pdf", "application/pdf", single_part_pdf)
        await broker.run_until_idle()
        proposal = (await service.list_proposals(batch.batch_id))[0]
        await service.approve_proposal(proposal.proposal_id, approved_by="alice")

        with pytest.raises(InvalidStateError) as exc:
            await service.cancel_batch(batch.batch_id)
        assert not isinstance(exc.value, InvalidBatchState)
        assert (await service.get_batch(batch.batch_id)).status == BatchStatus.INGESTING.value


class TestRequestCleanup:
    @pytest.mark.asyncio
    async def test_cancels_then_removes_uploads(self, service, broker, storage, single_part_pdf):
        batch = await service.create_batch("alice")
        item = await service.add_item(batch.batch_id, "hymn.pdf", "application/pdf", single_part_pdf)

        result = await service.request_cleanup(batch.batch_id)
        assert result["status"] == BatchStatus.CANCELLED.value
        assert result["cleanup_job_id"]

        await broker.run_until_idle()
        assert not storage.exists(item.storage_key)

    @pytest.mark.asyncio
    async def test_repeatable(self, service, broker):
        batch = await service.create_batch("alice")
        await service.request_cleanup(batch.batch_id)
        again = await service.request_cleanup(batch.batch_id)
        assert again["status"] == BatchStatus.CANCELLED.value
        await broker.run_until_idle()
