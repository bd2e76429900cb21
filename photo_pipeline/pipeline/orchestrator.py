"""
Job Orchestrator

Drives one UploadJob through the pipeline:

    Queued -> Validating -> Uploading -> Deriving -> Enriching
           -> RemovingBackground -> Finalizing -> Completed

Any non-terminal stage may exit to Failed. Enrichment and background
removal are best-effort and only ever degrade a job. Anything written to
storage is removed before a Failed job is finalized.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from photo_pipeline.core.config import settings
from photo_pipeline.core.exceptions import (
    AIServiceError,
    BackgroundRemovalError,
    CircuitBreakerOpenError,
    JobCancelledError,
    PersistenceError,
    PipelineBaseException,
    StorageError,
    ThumbnailError,
)
from photo_pipeline.core.logging import LogContext, get_logger
from photo_pipeline.core.metrics import (
    active_jobs_gauge,
    record_degradation,
    record_job_completion,
    thumbnail_failures_total,
    track_stage_latency,
)
from photo_pipeline.core.storage import IStorage
from photo_pipeline.engines.matting.services import BackgroundRemover
from photo_pipeline.engines.vision.services import VisionService
from photo_pipeline.modules.quota.services import QuotaGate
from photo_pipeline.modules.uploads.models import UploadJobRecord
from photo_pipeline.modules.uploads.repositories import JobRepository
from photo_pipeline.modules.uploads.schemas import JobError, JobStage, StageStatus, UploadJob
from photo_pipeline.pipeline.cleanup import CleanupManager
from photo_pipeline.pipeline.outcomes import Degraded, Ok, best_effort
from photo_pipeline.pipeline.thumbnails import derive_thumbnails
from photo_pipeline.pipeline.validation import validate

logger = get_logger(__name__)

JobListener = Callable[[UploadJob], None]

# Stage -> (progress on entry, progress on exit)
PROGRESS_RANGES = {
    JobStage.VALIDATING: (0, 10),
    JobStage.UPLOADING: (15, 40),
    JobStage.DERIVING: (40, 65),
    JobStage.ENRICHING: (65, 80),
    JobStage.REMOVING_BACKGROUND: (80, 92),
    JobStage.FINALIZING: (92, 99),
}

ORIGINAL_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
}


@dataclass
class UploadedFile:
    """One file as received from the client."""
    name: str
    data: bytes
    mime_type: Optional[str]
    declared_size: Optional[int] = None


@dataclass
class _Run:
    job: UploadJob
    upload: UploadedFile
    log_context: LogContext
    enable_ai: bool
    remove_background: bool
    cancel_event: Optional[asyncio.Event]
    completed_at: Optional[datetime] = None


class JobOrchestrator:
    """Runs the stage sequence for single jobs. Safe to share between jobs."""

    def __init__(
        self,
        storage: IStorage,
        repository: JobRepository,
        quota: QuotaGate,
        vision: VisionService,
        background_remover: BackgroundRemover,
        cleanup: Optional[CleanupManager] = None,
        thumbnail_sizes: Mapping[str, int] = settings.THUMBNAIL_SIZES,
        thumbnail_quality: int = settings.THUMBNAIL_JPEG_QUALITY,
        listener: Optional[JobListener] = None
    ):
        self.storage = storage
        self.repository = repository
        self.quota = quota
        self.vision = vision
        self.background_remover = background_remover
        self.cleanup = cleanup or CleanupManager(storage)
        self.thumbnail_sizes = dict(thumbnail_sizes)
        self.thumbnail_quality = thumbnail_quality
        self.listener = listener

        self._stages = [
            (JobStage.VALIDATING, self._validate),
            (JobStage.UPLOADING, self._upload),
            (JobStage.DERIVING, self._derive),
            (JobStage.ENRICHING, self._enrich),
            (JobStage.REMOVING_BACKGROUND, self._remove_background),
            (JobStage.FINALIZING, self._finalize),
        ]

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def run(
        self,
        job: UploadJob,
        upload: UploadedFile,
        enable_ai: bool = True,
        remove_background: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
        listener: Optional[JobListener] = None
    ) -> UploadJob:
        """
        Run the job to a terminal stage and return it.

        Job failures are recorded on the job, not raised. Task cancellation
        fails the job, cleans up, and is re-raised.
        """
        listener = listener or self.listener
        start = time.monotonic()
        active_jobs_gauge.inc()

        with LogContext(job_id=job.id) as log_context:
            run = _Run(job, upload, log_context, enable_ai, remove_background, cancel_event)
            logger.info("job_started", file_name=job.file_name, owner_id=job.owner_id, batch_id=job.batch_id)

            try:
                for stage, handler in self._stages:
                    self._enter(run, stage, listener)
                    with track_stage_latency(stage.value):
                        await handler(run, listener)

                await self._complete(run, listener)

            except asyncio.CancelledError:
                if job.is_terminal:
                    raise
                await self._fail(run, JobCancelledError("Job task was cancelled"), listener)
                raise

            except Exception as e:
                if job.is_terminal:
                    raise
                await self._fail(run, e, listener)

            finally:
                active_jobs_gauge.dec()
                record_job_completion(
                    status=job.stage.value.lower(),
                    failure_kind=job.error.kind if job.error else "none",
                    duration_seconds=time.monotonic() - start
                )

        return job

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _notify(self, job: UploadJob, listener: Optional[JobListener]):
        if listener:
            listener(job)

    def _set_progress(self, run: _Run, value: int, listener: Optional[JobListener]):
        before = run.job.progress
        run.job.set_progress(value)
        if run.job.progress != before:
            self._notify(run.job, listener)

    def _enter(self, run: _Run, stage: JobStage, listener: Optional[JobListener]):
        if run.cancel_event is not None and run.cancel_event.is_set():
            raise JobCancelledError(stage=run.job.stage.value)

        run.job.advance_to(stage)
        run.log_context.set_stage(stage.value)
        run.job.set_progress(PROGRESS_RANGES[stage][0])
        self._notify(run.job, listener)

    def _degrade(self, run: _Run, error: PipelineBaseException, listener: Optional[JobListener]):
        stage = run.job.stage
        record = JobError(kind=error.kind, message=error.message, stage=stage.value)
        run.job.record_degradation(record)
        record_degradation(stage.value, error.kind)
        logger.warning("stage_degraded", kind=error.kind, error=error.message)
        self._notify(run.job, listener)

    async def _complete(self, run: _Run, listener: Optional[JobListener]):
        job = run.job
        job.mark_completed(run.completed_at)
        run.log_context.set_stage(JobStage.COMPLETED.value)
        self._notify(job, listener)

        logger.info(
            "job_completed",
            degradations=len(job.degradations),
            thumbnails=sorted(job.results.thumbnails)
        )

        try:
            # Runs to completion even if this task is cancelled
            await asyncio.shield(self.quota.increment_usage(job.owner_id, 1))
        except Exception as e:
            # Completed is final; a missed increment is an operator problem
            logger.error("quota_increment_failed", owner_id=job.owner_id, error=str(e))

    async def _fail(self, run: _Run, exc: BaseException, listener: Optional[JobListener]):
        job = run.job
        error = JobError.from_exception(exc, job.stage)

        if isinstance(exc, PipelineBaseException):
            logger.warning("job_failing", kind=error.kind, error=error.message)
        else:
            logger.error("job_internal_error", kind=error.kind, error=error.message, exc_info=exc)

        if job.failed_after_upload_started:
            await self.cleanup.cleanup(job.id, job.owner_id)

        job.mark_failed(error)
        run.log_context.set_stage(JobStage.FAILED.value)

        await self._persist_failed(job)
        self._notify(job, listener)
        logger.info("job_failed", kind=error.kind, failed_stage=error.stage)

    async def _persist_failed(self, job: UploadJob):
        try:
            await self.repository.save(UploadJobRecord.from_job(job))
        except PersistenceError as e:
            logger.warning("failed_job_not_persisted", error=e.message)

    async def reject(
        self,
        job: UploadJob,
        error: PipelineBaseException,
        listener: Optional[JobListener] = None
    ) -> UploadJob:
        """Fail a job that was never admitted to the pipeline."""
        with LogContext(job_id=job.id, stage=job.stage.value):
            job.mark_failed(JobError.from_exception(error, job.stage))
            await self._persist_failed(job)
            record_job_completion(status="failed", failure_kind=job.error.kind)
            self._notify(job, listener or self.listener)
            logger.info("job_rejected", kind=job.error.kind, file_name=job.file_name)
        return job

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _validate(self, run: _Run, listener: Optional[JobListener]):
        meta = validate(
            run.upload.data,
            run.upload.mime_type,
            declared_size=run.upload.declared_size,
            name=run.upload.name
        )
        run.job.set_source_meta(meta)
        self._set_progress(run, PROGRESS_RANGES[JobStage.VALIDATING][1], listener)

    async def _upload(self, run: _Run, listener: Optional[JobListener]):
        job = run.job
        low, high = PROGRESS_RANGES[JobStage.UPLOADING]
        mime_type = job.source_meta.mime_type
        path = f"{job.storage_prefix}/original{ORIGINAL_EXTENSIONS.get(mime_type, '')}"

        def on_progress(written: int, total: int):
            if total:
                self._set_progress(run, low + (high - low) * written // total, listener)

        url = await self.storage.put(path, run.upload.data, content_type=mime_type, on_progress=on_progress)
        job.results.original_url = url
        self._set_progress(run, high, listener)
        logger.info("original_stored", path=path, size=len(run.upload.data))

    async def _derive(self, run: _Run, listener: Optional[JobListener]):
        job = run.job
        low, high = PROGRESS_RANGES[JobStage.DERIVING]

        thumbnails = await asyncio.to_thread(
            derive_thumbnails, run.upload.data, self.thumbnail_sizes, self.thumbnail_quality
        )

        for size_class, message in thumbnails.failures.items():
            thumbnail_failures_total.labels(size_class=size_class).inc()
            self._degrade(run, ThumbnailError(message, size_class), listener)

        total = max(1, len(self.thumbnail_sizes))
        for index, (size_class, data) in enumerate(thumbnails.images.items(), start=1):
            path = f"{job.storage_prefix}/thumbnails/{size_class}.jpg"
            try:
                job.results.thumbnails[size_class] = await self.storage.put(path, data, content_type="image/jpeg")
            except StorageError as e:
                thumbnail_failures_total.labels(size_class=size_class).inc()
                self._degrade(run, ThumbnailError(f"Could not store thumbnail: {e.message}", size_class), listener)
            self._set_progress(run, low + (high - low) * index // total, listener)

        self._set_progress(run, high, listener)

    async def _enrich(self, run: _Run, listener: Optional[JobListener]):
        job = run.job
        if not run.enable_ai:
            job.update_stage(JobStage.ENRICHING, StageStatus.SKIPPED)
        else:
            outcome = await best_effort(
                self.vision.analyze(
                    image_url=job.results.original_url,
                    image_bytes=run.upload.data,
                    mime_type=job.source_meta.mime_type
                ),
                AIServiceError,
                CircuitBreakerOpenError
            )
            if isinstance(outcome, Ok):
                job.results.ai_analysis = outcome.value
            elif isinstance(outcome, Degraded):
                self._degrade(run, outcome.error, listener)

        self._set_progress(run, PROGRESS_RANGES[JobStage.ENRICHING][1], listener)

    async def _remove_background(self, run: _Run, listener: Optional[JobListener]):
        job = run.job
        if not run.remove_background:
            job.update_stage(JobStage.REMOVING_BACKGROUND, StageStatus.SKIPPED)
        else:
            outcome = await best_effort(
                self.background_remover.remove_background(run.upload.data),
                BackgroundRemovalError,
                CircuitBreakerOpenError
            )
            if isinstance(outcome, Degraded):
                self._degrade(run, outcome.error, listener)
            else:
                path = f"{job.storage_prefix}/background_removed.png"
                try:
                    job.results.background_removed_url = await self.storage.put(
                        path, outcome.value, content_type="image/png"
                    )
                except StorageError as e:
                    self._degrade(run, e, listener)

        self._set_progress(run, PROGRESS_RANGES[JobStage.REMOVING_BACKGROUND][1], listener)

    async def _finalize(self, run: _Run, listener: Optional[JobListener]):
        job = run.job

        # Persist exactly what the job will look like once Completed
        final = job.model_copy(deep=True)
        final.mark_completed(datetime.now(timezone.utc))
        await self.repository.save(UploadJobRecord.from_job(final))

        run.completed_at = final.completed_at
        self._set_progress(run, PROGRESS_RANGES[JobStage.FINALIZING][1], listener)
