"""
Status Endpoint - Job Status Tracking

GET    /api/v1/status/{job_id} - Current stage, progress, results and error
DELETE /api/v1/status/{job_id} - Drop a job from the live registry
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from photo_pipeline.api.dependencies import get_upload_service
from photo_pipeline.pipeline.service import UploadService

router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class JobErrorResponse(BaseModel):
    kind: str
    message: str
    stage: Optional[str] = None


class JobStatusResponse(BaseModel):
    """Full job status response."""
    job_id: str
    owner_id: str
    batch_id: Optional[str] = None
    file_name: str
    stage: str
    progress: int
    source_meta: Optional[Dict[str, Any]] = None
    results: Optional[Dict[str, Any]] = None
    error: Optional[JobErrorResponse] = None
    degradations: List[JobErrorResponse] = []
    stages: Dict[str, Dict[str, Any]] = {}
    created_at: str
    completed_at: Optional[str] = None


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    service: UploadService = Depends(get_upload_service)
):
    """
    Get the current status of an upload job.

    Live jobs are answered from memory; finished jobs that were expired
    from memory are answered from the database. Unknown ids return 404.
    """
    return await service.get_job_status(job_id)


@router.delete("/{job_id}")
async def expire_job(
    job_id: str,
    service: UploadService = Depends(get_upload_service)
):
    """Forget a job in the live registry. The persisted record is kept."""
    if not service.expire_job(job_id):
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return {"job_id": job_id, "expired": True}
