"""
/api/v1/smart-upload batch endpoints.
Handles batch creation, file upload, detail, cancel, cleanup and ingestion retry.
"""

import uuid

import structlog
from fastapi import APIRouter, Depends, File, Query, UploadFile, status

from smart_upload.dependencies import get_service, get_user_id, verify_api_key
from smart_upload.errors import NotFoundError
from smart_upload.models.tables import UploadBatch
from smart_upload.pipeline.service import SmartUploadService
from smart_upload.schemas.api import (
    BatchDetail,
    BatchListResponse,
    BatchSummary,
    CleanupResponse,
    ItemSummary,
    ProposalListResponse,
    ProposalResponse,
    UploadResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/v1/smart-upload/batches",
    tags=["batches"],
    dependencies=[Depends(verify_api_key)],
)


async def owned_batch(service: SmartUploadService, batch_id: uuid.UUID, user_id: str) -> UploadBatch:
    """Other users' batches are reported as missing."""
    batch = await service.get_batch(batch_id)
    if batch.user_id != user_id:
        raise NotFoundError("UploadBatch", str(batch_id))
    return batch


@router.post("", response_model=BatchSummary, status_code=status.HTTP_201_CREATED)
async def create_batch(
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    """Open a new upload batch for the caller."""
    batch = await service.create_batch(user_id)
    return BatchSummary.model_validate(batch)


@router.get("", response_model=BatchListResponse)
async def list_batches(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    batches = await service.list_user_batches(user_id, limit=limit, offset=offset)
    return BatchListResponse(
        batches=[BatchSummary.model_validate(b) for b in batches],
        limit=limit,
        offset=offset,
    )


@router.get("/{batch_id}", response_model=BatchDetail)
async def get_batch(
    batch_id: uuid.UUID,
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    """Batch status and counters with every item and proposal."""
    await owned_batch(service, batch_id, user_id)
    batch, items, proposals = await service.get_batch_detail(batch_id)
    return BatchDetail(
        batch=BatchSummary.model_validate(batch),
        items=[ItemSummary.model_validate(i) for i in items],
        proposals=[ProposalResponse.model_validate(p) for p in proposals],
    )


@router.post("/{batch_id}/files", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    batch_id: uuid.UUID,
    file: UploadFile = File(...),
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    """Upload one file into the batch and queue it for processing."""
    await owned_batch(service, batch_id, user_id)
    data = await file.read()
    item = await service.upload_and_submit(
        batch_id,
        file.filename or "upload",
        file.content_type or "application/octet-stream",
        data,
    )
    return UploadResponse(item=ItemSummary.model_validate(item))


@router.get("/{batch_id}/proposals", response_model=ProposalListResponse)
async def list_proposals(
    batch_id: uuid.UUID,
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    await owned_batch(service, batch_id, user_id)
    proposals = await service.list_proposals(batch_id)
    return ProposalListResponse(
        proposals=[ProposalResponse.model_validate(p) for p in proposals],
        total=len(proposals),
    )


@router.post("/{batch_id}/cancel", response_model=BatchSummary)
async def cancel_batch(
    batch_id: uuid.UUID,
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    await owned_batch(service, batch_id, user_id)
    batch = await service.cancel_batch(batch_id)
    return BatchSummary.model_validate(batch)


@router.post("/{batch_id}/cleanup", response_model=CleanupResponse, status_code=status.HTTP_202_ACCEPTED)
async def cleanup_batch(
    batch_id: uuid.UUID,
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    """Cancel the batch if still cancellable and queue removal of its temporary files."""
    await owned_batch(service, batch_id, user_id)
    result = await service.request_cleanup(batch_id)
    return CleanupResponse(**result)


@router.post("/{batch_id}/ingest", response_model=BatchSummary, status_code=status.HTTP_202_ACCEPTED)
async def retry_ingestion(
    batch_id: uuid.UUID,
    user_id: str = Depends(get_user_id),
    service: SmartUploadService = Depends(get_service),
):
    """Queue ingestion for a fully approved batch whose ingestion was not queued."""
    await owned_batch(service, batch_id, user_id)
    batch = await service.start_ingestion(batch_id, approved_by=user_id)
    return BatchSummary.model_validate(batch)
