"""
FastAPI application factory.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from smart_upload.api.router import api_router
from smart_upload.config import settings
from smart_upload.errors import SmartUploadError
from smart_upload.observability.logging import setup_logging
from smart_upload.runtime import Runtime
from smart_upload.worker.brokers import InMemoryBroker

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: build and open the runtime, close it on shutdown."""
    # Startup
    setup_logging()

    # Sentry init if configured
    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    owned = getattr(app.state, "runtime", None) is None
    if owned:
        app.state.runtime = Runtime.from_settings()
        await app.state.runtime.open(create_schema=settings.DB_CREATE_SCHEMA)
    runtime: Runtime = app.state.runtime

    # In-process consumer for QUEUE_BACKEND=memory
    stop = asyncio.Event()
    consumer = None
    if owned and isinstance(runtime.broker, InMemoryBroker):
        consumer = asyncio.create_task(runtime.broker.serve(stop))

    logger.info("app_started", version=settings.APP_VERSION, queue_backend=type(runtime.broker).__name__)
    yield

    # Shutdown
    stop.set()
    if consumer is not None:
        await consumer
    if owned:
        await runtime.close()
        app.state.runtime = None


async def smart_upload_error_handler(request: Request, exc: SmartUploadError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.
    A pre-built, already opened runtime can be passed in; the app then
    leaves its lifecycle to the caller.
    """
    app = FastAPI(
        title="Smart Upload",
        description="Batch upload, extraction, review and ingestion of sheet music.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SmartUploadError, smart_upload_error_handler)

    # Prometheus metrics endpoint
    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    # Include all API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()
