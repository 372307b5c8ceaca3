"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from smart_upload.api.health import router as health_router
from smart_upload.api.batches import router as batches_router
from smart_upload.api.proposals import router as proposals_router
from smart_upload.api.jobs import router as jobs_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(batches_router)
api_router.include_router(proposals_router)
api_router.include_router(jobs_router)
