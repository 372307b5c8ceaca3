"""
Health check endpoints.
/health always returns 200; DB connectivity is reported but never blocks it.
"""

from fastapi import APIRouter, Request

from smart_upload.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """
    Liveness: the API is running. Reports DB connectivity without failing.
    """
    runtime = getattr(request.app.state, "runtime", None)
    db_ok = False
    db_error = None
    if runtime is not None:
        try:
            db_ok = await runtime.db.ping()
        except Exception as e:
            db_error = str(e)[:200]

    response = {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "database": "connected" if db_ok else "unreachable",
    }
    if db_error:
        response["database_error"] = db_error
    return response


@router.get("/health/ready")
async def readiness_check(request: Request):
    """
    Readiness check: ready only when the DB answers and the queue is open.
    """
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None or not runtime.queue.is_open:
        return {"ready": False}
    try:
        await runtime.db.ping()
    except Exception:
        return {"ready": False}
    return {"ready": True}
