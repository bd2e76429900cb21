"""
Metrics Endpoint

GET /api/v1/metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Response

from photo_pipeline.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - upload_pipeline_stage_latency_seconds (per stage)
    - upload_jobs_total (per outcome and failure kind)
    - upload_external_api_calls_total
    - upload_degradations_total
    - upload_cleanups_total
    - http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
