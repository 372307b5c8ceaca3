"""
/api/v1/jobs endpoints.
Queue statistics, dead-letter inspection and replay.
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from smart_upload.config import settings
from smart_upload.dependencies import get_runtime, verify_api_key
from smart_upload.runtime import Runtime
from smart_upload.schemas.jobs import DeadLetterListResponse, JobHandleResponse, QueueStats

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"], dependencies=[Depends(verify_api_key)])


@router.get("/queue/stats", response_model=QueueStats)
async def queue_stats(runtime: Runtime = Depends(get_runtime)):
    """Get current per-kind queue statistics."""
    try:
        queues = await runtime.queue.stats()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {str(e)}")
    return QueueStats(broker=type(runtime.broker).__name__, queues=queues)


@router.get("/dead-letters", response_model=DeadLetterListResponse)
async def list_dead_letters(
    limit: int = Query(settings.DEAD_LETTER_LIST_LIMIT, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
):
    """Jobs that exhausted their attempts, newest first."""
    entries = await runtime.queue.dead_letters(limit)
    return DeadLetterListResponse(entries=entries, total=len(entries))


@router.post("/dead-letters/{entry_id}/replay", response_model=JobHandleResponse, status_code=202)
async def replay_dead_letter(entry_id: str, runtime: Runtime = Depends(get_runtime)):
    """Re-enqueue a dead-lettered job into its original queue with a fresh attempt budget."""
    handle = await runtime.queue.replay(entry_id)
    return JobHandleResponse(
        job_id=handle.job_id,
        kind=handle.kind,
        queue=handle.queue,
        attempt=handle.attempt,
    )
