"""
Tests for review: corrections, approval and rejection.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from smart_upload.errors import InvalidStateError, ValidationError
from smart_upload.models.enums import BatchStatus, ItemStatus
from smart_upload.schemas.metadata import Corrections, ExtractedMetadata

HYMN = ExtractedMetadata(
    title="Evening Hymn",
    title_confidence=0.9,
    composer="A. Composer",
    composer_confidence=0.8,
    part_labels=["Trumpet"],
)


async def _reviewable(service, broker, backend, data, file_name="hymn.pdf", user_id="alice"):
    """Batch holding one processed item; returns (batch_id, proposal)."""
    backend.respond(data, HYMN)
    batch = await service.create_batch(user_id)
    item = await service.upload_and_submit(batch.batch_id, file_name, "application/pdf", data)
    await broker.run_until_idle()
    proposals = await service.list_proposals(batch.batch_id)
    assert [p.item_id for p in proposals] == [item.item_id]
    return batch.batch_id, proposals[0]


class TestProposalCreation:
    """Test what the pipeline proposes."""

    @pytest.mark.asyncio
    async def test_fields_and_parts(self, service, broker, backend, catalog, single_part_pdf):
        batch_id, proposal = await _reviewable(service, broker, backend, single_part_pdf)

        assert proposal.title == "Evening Hymn"
        assert proposal.title_confidence == 0.9
        assert proposal.composer == "A. Composer"
        assert proposal.is_new_piece is True
        assert proposal.work_fingerprint
        assert proposal.parts[0]["label"] == "Trumpet"
        assert proposal.parts[0]["instrument_id"] == catalog["Trumpet"]
        assert proposal.parts[0]["resolved"] is True

        batch = await service.get_batch(batch_id)
        assert batch.status == BatchStatus.NEEDS_REVIEW.value
        item = await service.get_item(proposal.item_id)
        assert item.status == ItemStatus.CLASSIFIED.value

    @pytest.mark.asyncio
    async def test_create_proposal_is_idempotent(self, service, broker, backend, single_part_pdf):
        _, proposal = await _reviewable(service, broker, backend, single_part_pdf)
        again = await service.create_proposal(proposal.item_id, ExtractedMetadata(title="Other"))
        assert again.proposal_id == proposal.proposal_id
        assert again.title == "Evening Hymn"

    @pytest.mark.asyncio
    async def test_unresolved_labels_kept(self, service, broker, backend, single_part_pdf):
        _, proposal = await _reviewable(service, broker, backend, single_part_pdf)
        # No catalog seeded
        assert proposal.parts[0]["resolved"] is False
        assert proposal.parts[0]["instrument_id"] is None


class TestCorrections:
    @pytest.mark.asyncio
    async def test_only_sent_fields_merged(self, service, broker, backend, single_part_pdf):
        _, proposal = await _reviewable(service, broker, backend, single_part_pdf)
        updated = await service.update_proposal(
            proposal.proposal_id, Corrections(title="Evening Hymn (revised)", difficulty="Grade 3"),
        )
        assert updated.title == "Evening Hymn (revised)"
        assert updated.difficulty == "Grade 3"
        assert updated.composer == "A. Composer"
        assert updated.corrections == {"title": "Evening Hymn (revised)", "difficulty": "Grade 3"}
        assert updated.is_approved is False

    def test_unknown_field_rejected(self):
        with pytest.raises(PydanticValidationError):
            Corrections.model_validate({"tempo": "fast"})


class TestApproveProposal:
    """Test approval and the move to ingestion."""

    @pytest.mark.asyncio
    async def test_last_approval_starts_ingestion(self, service, broker, backend, single_part_pdf):
        batch_id, proposal = await _reviewable(service, broker, backend, single_part_pdf)

        approved = await service.approve_proposal(
            proposal.proposal_id, approved_by="alice", corrections=Corrections(genre="Hymn"),
        )
        assert approved.is_approved is True
        assert approved.approved_by == "alice"
        assert approved.approved_at is not None
        assert approved.genre == "Hymn"
        assert (await service.get_item(proposal.item_id)).status == ItemStatus.APPROVED.value
        assert (await service.get_batch(batch_id)).status == BatchStatus.INGESTING.value
        assert broker.pending_count() == 1

        await broker.run_until_idle()
        assert (await service.get_batch(batch_id)).status == BatchStatus.COMPLETE.value

    @pytest.mark.asyncio
    async def test_double_approval_refused(self, service, broker, backend, single_part_pdf):
        _, proposal = await _reviewable(service, broker, backend, single_part_pdf)
        await service.approve_proposal(proposal.proposal_id, approved_by="alice")
        with pytest.raises(InvalidStateError):
            await service.approve_proposal(proposal.proposal_id, approved_by="alice")

    @pytest.mark.asyncio
    async def test_approver_required(self, service, broker, backend, single_part_pdf):
        _, proposal = await _reviewable(service, broker, backend, single_part_pdf)
        with pytest.raises(ValidationError):
            await service.approve_proposal(proposal.proposal_id, approved_by="")

    @pytest.mark.asyncio
    async def test_review_waits_for_whole_batch(self, service, broker, backend, single_part_pdf, packet_pdf):
        backend.respond(single_part_pdf, HYMN)
        batch = await service.create_batch("alice")
        first = await service.upload_and_submit(batch.batch_id, "hymn.pdf", "application/pdf", single_part_pdf)
        second = await service.add_item(batch.batch_id, "packet.pdf", "application/pdf", packet_pdf)
        await broker.run_until_idle()

        proposal = (await service.list_proposals(batch.batch_id))[0]
        assert proposal.item_id == first.item_id
        assert (await service.get_batch(batch.batch_id)).status == BatchStatus.PROCESSING.value
        with pytest.raises(InvalidStateError) as exc:
            await service.approve_proposal(proposal.proposal_id, approved_by="alice")
        assert exc.value.status_code == 409
        with pytest.raises(InvalidStateError):
            await service.update_proposal(proposal.proposal_id, Corrections(genre="Hymn"))
        with pytest.raises(InvalidStateError):
            await service.reject_proposal(proposal.proposal_id, reason="duplicate", rejected_by="bob")
        assert (await service.get_item(first.item_id)).status == ItemStatus.CLASSIFIED.value

        await service.submit_item(second.item_id)
        await broker.run_until_idle()
        assert (await service.get_batch(batch.batch_id)).status == BatchStatus.NEEDS_REVIEW.value
        approved = await service.approve_proposal(proposal.proposal_id, approved_by="alice")
        assert approved.is_approved is True


class TestRejectProposal:
    @pytest.mark.asyncio
    async def test_reject_only_item_fails_batch(self, service, broker, backend, single_part_pdf):
        batch_id, proposal = await _reviewable(service, broker, backend, single_part_pdf)
        item = await service.reject_proposal(proposal.proposal_id, reason="duplicate", rejected_by="bob")

        assert item.status == ItemStatus.FAILED.value
        assert item.error_message == "Rejected by bob: duplicate"
        assert (await service.get_batch(batch_id)).status == BatchStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_reject_last_pending_starts_ingestion(self, service, broker, backend, single_part_pdf, packet_pdf):
        backend.respond(single_part_pdf, HYMN)
        batch = await service.create_batch("alice")
        await service.upload_and_submit(batch.batch_id, "hymn.pdf", "application/pdf", single_part_pdf)
        await service.upload_and_submit(batch.batch_id, "packet.pdf", "application/pdf", packet_pdf)
        await broker.run_until_idle()

        hymn, packet = sorted(await service.list_proposals(batch.batch_id), key=lambda p: p.title != "Evening Hymn")
        await service.approve_proposal(hymn.proposal_id, approved_by="alice")
        assert (await service.get_batch(batch.batch_id)).status == BatchStatus.NEEDS_REVIEW.value

        await service.reject_proposal(packet.proposal_id, reason="wrong file", rejected_by="bob")
        assert (await service.get_batch(batch.batch_id)).status == BatchStatus.INGESTING.value

        await broker.run_until_idle()
        batch = await service.get_batch(batch.batch_id)
        assert batch.status == BatchStatus.COMPLETE.value
        assert (batch.success_files, batch.failed_files) == (1, 1)
