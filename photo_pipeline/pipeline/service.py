"""
Upload Service

Entry point used by the API: wires storage, providers, quota and
persistence into a scheduler and answers status queries.
"""

from typing import Any, Dict, Optional, Sequence

from photo_pipeline.core.exceptions import JobNotFoundError
from photo_pipeline.core.logging import get_logger
from photo_pipeline.modules.uploads.repositories import JobRepository
from photo_pipeline.pipeline.orchestrator import UploadedFile
from photo_pipeline.pipeline.registry import JobRegistry
from photo_pipeline.pipeline.scheduler import BatchHandle, BatchOptions, BatchResult, BatchScheduler

logger = get_logger(__name__)


class UploadService:

    def __init__(self, scheduler: BatchScheduler, repository: JobRepository):
        self.scheduler = scheduler
        self.repository = repository

    @property
    def registry(self) -> JobRegistry:
        return self.scheduler.registry

    async def submit_batch(
        self,
        owner_id: str,
        files: Sequence[UploadedFile],
        options: Optional[BatchOptions] = None
    ) -> BatchResult:
        return await self.scheduler.submit(owner_id, files, options)

    def start_batch(
        self,
        owner_id: str,
        files: Sequence[UploadedFile],
        options: Optional[BatchOptions] = None
    ) -> BatchHandle:
        return self.scheduler.start(owner_id, files, options)

    def cancel_batch(self, batch_id: str) -> bool:
        return self.scheduler.cancel(batch_id)

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """
        Live status from the registry, falling back to the persisted record.

        Raises:
            JobNotFoundError: if neither knows the job
        """
        status = self.registry.get_status(job_id)
        if status is not None:
            return status

        record = await self.repository.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record.to_job().to_status()

    def expire_job(self, job_id: str) -> bool:
        return self.registry.expire(job_id)
