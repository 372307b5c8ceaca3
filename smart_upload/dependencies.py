"""
FastAPI dependency injection.
Provides the runtime, the service, caller identity and API key validation.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from smart_upload.config import settings
from smart_upload.pipeline.service import SmartUploadService
from smart_upload.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """The runtime opened by the application lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return runtime


def get_service(runtime: Runtime = Depends(get_runtime)) -> SmartUploadService:
    return runtime.service


async def get_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> str:
    """Caller identity, set by the authenticating gateway in front of the API."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id.strip()


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key
