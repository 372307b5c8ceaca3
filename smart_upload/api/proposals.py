"""
/api/v1/smart-upload proposal endpoints: review, correct, approve, reject.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends

from smart_upload.api.batches import owned_batch
from smart_upload.dependencies import get_service, get_user_id, verify_api_key
from smart_upload.pipeline.service import SmartUploadService
from smart_upload.schemas.api import ApproveRequest, ItemSummary, ProposalResponse, RejectRequest
from smart_upload.schemas.metadata import Corrections

router = APIRouter(
    prefix="/api/v1/smart-upload/proposals",
    tags=["proposals"],
    dependencies=[Depends(verify_api_key)],
)


async def _check_owner(service: SmartUploadService, proposal_id: uuid.UUID, user_id: str) -> None:
    proposal = await service.get_proposal(proposal_id)
    await owned_batch(service, proposal.batch_id, user_id)


@router.get("/{proposal_id}", response_model=ProposalResponse)
async def get_proposal(
    proposal_id: uuid.UUID,
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    await _check_owner(service, proposal_id, user_id)
    return ProposalResponse.model_validate(await service.get_proposal(proposal_id))


@router.patch("/{proposal_id}", response_model=ProposalResponse)
async def correct_proposal(
    proposal_id: uuid.UUID,
    corrections: Corrections,
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    """Merge reviewer corrections into the proposal without approving it."""
    await _check_owner(service, proposal_id, user_id)
    proposal = await service.update_proposal(proposal_id, corrections)
    return ProposalResponse.model_validate(proposal)


@router.post("/{proposal_id}/approve", response_model=ProposalResponse)
async def approve_proposal(
    proposal_id: uuid.UUID,
    request: Optional[ApproveRequest] = None,
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    """
    Approve a proposal (optionally with corrections). When it is the last
    pending proposal of its batch, ingestion is queued.
    """
    await _check_owner(service, proposal_id, user_id)
    corrections = request.corrections if request is not None else None
    proposal = await service.approve_proposal(proposal_id, approved_by=user_id, corrections=corrections)
    return ProposalResponse.model_validate(proposal)


@router.post("/{proposal_id}/reject", response_model=ItemSummary)
async def reject_proposal(
    proposal_id: uuid.UUID,
    request: RejectRequest,
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    """Drop the proposal's item from the batch."""
    await _check_owner(service, proposal_id, user_id)
    item = await service.reject_proposal(proposal_id, reason=request.reason, rejected_by=user_id)
    return ItemSummary.model_validate(item)
