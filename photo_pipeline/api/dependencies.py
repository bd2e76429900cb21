"""
FastAPI Dependencies for the Upload Service

The service graph (storage, providers, quota, persistence, scheduler) is
built once per application and kept on app.state. Tests build their own
graph with in-memory collaborators and put it on app.state before the
first request.
"""

from typing import Optional

from fastapi import Request

from photo_pipeline.core.database import async_session_maker
from photo_pipeline.core.storage import IStorage, get_storage
from photo_pipeline.engines.matting.services import BackgroundRemover, get_background_remover
from photo_pipeline.engines.vision.services import VisionService, get_vision_service
from photo_pipeline.modules.quota.services import QuotaGate, SqlQuotaGate
from photo_pipeline.modules.uploads.repositories import JobRepository, SqlJobRepository
from photo_pipeline.pipeline.orchestrator import JobOrchestrator
from photo_pipeline.pipeline.registry import JobRegistry
from photo_pipeline.pipeline.scheduler import BatchScheduler
from photo_pipeline.pipeline.service import UploadService


def build_upload_service(
    storage: Optional[IStorage] = None,
    repository: Optional[JobRepository] = None,
    quota: Optional[QuotaGate] = None,
    vision: Optional[VisionService] = None,
    background_remover: Optional[BackgroundRemover] = None,
    registry: Optional[JobRegistry] = None
) -> UploadService:
    """Wire an UploadService; anything not passed comes from settings."""
    storage = storage or get_storage()
    repository = repository or SqlJobRepository(async_session_maker)
    quota = quota or SqlQuotaGate(async_session_maker)

    orchestrator = JobOrchestrator(
        storage=storage,
        repository=repository,
        quota=quota,
        vision=vision or get_vision_service(),
        background_remover=background_remover or get_background_remover(),
    )
    scheduler = BatchScheduler(orchestrator, quota, registry or JobRegistry())
    return UploadService(scheduler, repository)


def get_upload_service(request: Request) -> UploadService:
    """Returns the application's UploadService, building it on first use."""
    service = getattr(request.app.state, "upload_service", None)
    if service is None:
        service = build_upload_service()
        request.app.state.upload_service = service
    return service
