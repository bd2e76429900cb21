"""
Uploads Endpoint - Batch Submission

POST   /api/v1/uploads                      - Submit a batch of photos
DELETE /api/v1/uploads/batches/{batch_id}   - Cancel a running batch
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from photo_pipeline.api.dependencies import get_upload_service
from photo_pipeline.core.config import settings
from photo_pipeline.core.logging import get_logger
from photo_pipeline.pipeline.orchestrator import UploadedFile
from photo_pipeline.pipeline.scheduler import BatchOptions
from photo_pipeline.pipeline.service import UploadService

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class BatchSummaryResponse(BaseModel):
    """Finished batch."""
    batch_id: str
    total: int
    successful: List[Dict[str, Any]]
    failed: List[Dict[str, Any]]


class BatchAcceptedResponse(BaseModel):
    """Batch accepted for background processing."""
    batch_id: str
    job_ids: List[str]
    status_urls: List[str]


class BatchCancelResponse(BaseModel):
    batch_id: str
    cancelled: bool


# =============================================================================
# Endpoints
# =============================================================================

async def _read_upload(upload: UploadFile) -> UploadedFile:
    # Anything past the limit is rejected by validation; no need to buffer it
    data = await upload.read(settings.MAX_IMAGE_SIZE_BYTES + 1)
    return UploadedFile(
        name=upload.filename or "upload",
        data=data,
        mime_type=upload.content_type,
        declared_size=upload.size,
    )


@router.post(
    "",
    response_model=BatchSummaryResponse,
    responses={202: {"model": BatchAcceptedResponse}}
)
async def submit_uploads(
    files: List[UploadFile] = File(..., description="Photos to upload"),
    owner_id: str = Form(..., min_length=1, max_length=128),
    enable_ai: bool = Form(True),
    remove_background: bool = Form(False),
    concurrency: int = Form(settings.DEFAULT_CONCURRENCY, ge=1, le=settings.MAX_CONCURRENCY),
    wait: bool = Form(True),
    service: UploadService = Depends(get_upload_service)
):
    """
    Submit a batch of photos.

    With wait=true the response holds the finished batch (successful and
    failed jobs). With wait=false the batch runs in the background and the
    response lists job ids to poll at /api/v1/status/{job_id}.
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files submitted")

    uploads = [await _read_upload(f) for f in files]
    options = BatchOptions(
        concurrency=concurrency,
        enable_ai=enable_ai,
        remove_background=remove_background
    )

    logger.info(
        "upload_request_received",
        owner_id=owner_id,
        files=len(uploads),
        wait=wait,
        enable_ai=enable_ai,
        remove_background=remove_background
    )

    if not wait:
        handle = service.start_batch(owner_id, uploads, options)
        accepted = BatchAcceptedResponse(
            batch_id=handle.batch_id,
            job_ids=handle.job_ids,
            status_urls=[f"/api/v1/status/{job_id}" for job_id in handle.job_ids]
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=accepted.model_dump())

    result = await service.submit_batch(owner_id, uploads, options)
    return BatchSummaryResponse(**result.summary())


@router.delete("/batches/{batch_id}", response_model=BatchCancelResponse)
async def cancel_batch(
    batch_id: str,
    service: UploadService = Depends(get_upload_service)
):
    """Cancel a running batch. Jobs stop at their next stage boundary."""
    if not service.cancel_batch(batch_id):
        raise HTTPException(status_code=404, detail=f"No running batch: {batch_id}")
    return BatchCancelResponse(batch_id=batch_id, cancelled=True)
