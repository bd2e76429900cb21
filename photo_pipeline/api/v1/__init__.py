"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

Primary endpoint: POST /api/v1/uploads
- Wait for the finished batch, or poll job status in the background mode
"""

from fastapi import APIRouter

from photo_pipeline.api.v1.uploads import router as uploads_router
from photo_pipeline.api.v1.metrics import router as metrics_router
from photo_pipeline.api.v1.status import router as status_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(uploads_router, prefix="/uploads", tags=["uploads"])
api_v1_router.include_router(status_router, prefix="/status", tags=["status"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
