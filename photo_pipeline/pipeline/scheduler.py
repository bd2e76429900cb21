"""
Batch Scheduler

Admits a batch against the owner's quota and runs the admitted jobs with
at most `concurrency` orchestrators in the pipeline at once. One job's
failure never fails the batch.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from photo_pipeline.core.config import settings
from photo_pipeline.core.exceptions import QuotaCheckError, QuotaExceededError
from photo_pipeline.core.logging import get_logger
from photo_pipeline.core.metrics import quota_rejections_total
from photo_pipeline.modules.quota.services import QuotaGate
from photo_pipeline.modules.uploads.schemas import JobStage, UploadJob
from photo_pipeline.pipeline.orchestrator import JobOrchestrator, UploadedFile
from photo_pipeline.pipeline.registry import JobRegistry

logger = get_logger(__name__)


class BatchOptions(BaseModel):
    concurrency: int = Field(default=settings.DEFAULT_CONCURRENCY, ge=1, le=settings.MAX_CONCURRENCY)
    enable_ai: bool = True
    remove_background: bool = False


class BatchResult(BaseModel):
    batch_id: str
    successful: List[UploadJob] = Field(default_factory=list)
    failed: List[UploadJob] = Field(default_factory=list)

    def summary(self) -> Dict[str, object]:
        return {
            "batch_id": self.batch_id,
            "total": len(self.successful) + len(self.failed),
            "successful": [job.to_status() for job in self.successful],
            "failed": [job.to_status() for job in self.failed],
        }


@dataclass
class BatchHandle:
    """A batch running in the background."""
    batch_id: str
    job_ids: List[str]
    cancel_event: asyncio.Event
    task: "asyncio.Task[BatchResult]" = field(repr=False)

    async def wait(self) -> BatchResult:
        return await asyncio.shield(self.task)

    def cancel(self):
        self.cancel_event.set()


def _collect(batch_id: str, jobs: Sequence[UploadJob]) -> BatchResult:
    result = BatchResult(batch_id=batch_id)
    for job in jobs:
        if job.stage == JobStage.COMPLETED:
            result.successful.append(job)
        else:
            result.failed.append(job)
    return result


class BatchScheduler:
    """
    Runs batches of uploads for one or many owners.

    Quota is checked once per batch. Slots admitted by batches still in
    flight on this scheduler are held as reservations until each job
    reaches a terminal stage, so concurrent batches of the same owner
    cannot admit more files than the quota allows.
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        quota: QuotaGate,
        registry: Optional[JobRegistry] = None
    ):
        self.orchestrator = orchestrator
        self.quota = quota
        self.registry = registry if registry is not None else JobRegistry()

        self._reserved: Dict[str, int] = {}
        self._admission_lock = asyncio.Lock()
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def submit(
        self,
        owner_id: str,
        files: Sequence[UploadedFile],
        options: Optional[BatchOptions] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> BatchResult:
        """Run a whole batch and return once every job is terminal."""
        options = options or BatchOptions()
        batch_id, jobs, cancel_event = self._prepare(owner_id, files, cancel_event)
        try:
            tasks = await self._launch(owner_id, jobs, files, options, cancel_event)
            await asyncio.gather(*tasks)
        finally:
            self._cancel_events.pop(batch_id, None)

        result = _collect(batch_id, jobs)
        logger.info(
            "batch_completed",
            batch_id=batch_id,
            successful=len(result.successful),
            failed=len(result.failed)
        )
        return result

    async def iter_submit(
        self,
        owner_id: str,
        files: Sequence[UploadedFile],
        options: Optional[BatchOptions] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[UploadJob]:
        """Yield each job as soon as it reaches a terminal stage."""
        options = options or BatchOptions()
        batch_id, jobs, cancel_event = self._prepare(owner_id, files, cancel_event)
        tasks: List[asyncio.Task] = []
        try:
            tasks = await self._launch(owner_id, jobs, files, options, cancel_event)
            launched = {id(job) for job in jobs if not job.is_terminal}

            # Rejected at admission
            for job in jobs:
                if job.is_terminal and id(job) not in launched:
                    yield job

            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            if any(not task.done() for task in tasks):
                # Consumer stopped early; stop the rest of the batch
                cancel_event.set()
                await asyncio.gather(*tasks, return_exceptions=True)
            self._cancel_events.pop(batch_id, None)

    def start(
        self,
        owner_id: str,
        files: Sequence[UploadedFile],
        options: Optional[BatchOptions] = None
    ) -> BatchHandle:
        """Run a batch in the background; job ids are known immediately."""
        options = options or BatchOptions()
        batch_id, jobs, cancel_event = self._prepare(owner_id, files, None)

        async def _run() -> BatchResult:
            try:
                tasks = await self._launch(owner_id, jobs, files, options, cancel_event)
                await asyncio.gather(*tasks)
            finally:
                self._cancel_events.pop(batch_id, None)
                self._tasks.pop(batch_id, None)
            return _collect(batch_id, jobs)

        task = asyncio.create_task(_run(), name=f"batch-{batch_id}")
        self._tasks[batch_id] = task
        return BatchHandle(batch_id=batch_id, job_ids=[job.id for job in jobs], cancel_event=cancel_event, task=task)

    def cancel(self, batch_id: str) -> bool:
        """Signal a running batch to stop. Jobs fail at their next stage boundary."""
        event = self._cancel_events.get(batch_id)
        if event is None:
            return False
        event.set()
        logger.info("batch_cancel_requested", batch_id=batch_id)
        return True

    def reserved(self, owner_id: str) -> int:
        return self._reserved.get(owner_id, 0)

    async def shutdown(self):
        """Cancel background batches and wait for them to settle."""
        for event in self._cancel_events.values():
            event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _prepare(
        self,
        owner_id: str,
        files: Sequence[UploadedFile],
        cancel_event: Optional[asyncio.Event]
    ) -> Tuple[str, List[UploadJob], asyncio.Event]:
        batch_id = str(uuid.uuid4())
        cancel_event = cancel_event or asyncio.Event()
        self._cancel_events[batch_id] = cancel_event

        jobs = [
            self.registry.register(UploadJob(owner_id=owner_id, file_name=f.name, batch_id=batch_id))
            for f in files
        ]
        logger.info("batch_submitted", batch_id=batch_id, owner_id=owner_id, files=len(jobs))
        return batch_id, jobs, cancel_event

    async def _admit(self, owner_id: str, count: int) -> int:
        """Reserve up to count slots for the owner and return how many were granted."""
        async with self._admission_lock:
            # Snapshot before reading the quota: a reservation is released
            # only after its increment is visible.
            reserved = self._reserved.get(owner_id, 0)
            remaining = await self.quota.check_remaining(owner_id)

            if remaining < 0:
                granted = count
            else:
                granted = max(0, min(count, remaining - reserved))

            self._reserved[owner_id] = reserved + granted
            return granted

    def _release(self, owner_id: str):
        left = self._reserved.get(owner_id, 0) - 1
        if left > 0:
            self._reserved[owner_id] = left
        else:
            self._reserved.pop(owner_id, None)

    async def _launch(
        self,
        owner_id: str,
        jobs: List[UploadJob],
        files: Sequence[UploadedFile],
        options: BatchOptions,
        cancel_event: asyncio.Event
    ) -> List["asyncio.Task[UploadJob]"]:
        if not jobs:
            return []

        try:
            granted = await self._admit(owner_id, len(jobs))
        except QuotaCheckError as e:
            logger.error("quota_check_failed", owner_id=owner_id, error=e.message)
            for job in jobs:
                await self.orchestrator.reject(job, QuotaCheckError(e.message))
            return []

        if granted < len(jobs):
            rejected = len(jobs) - granted
            quota_rejections_total.inc(rejected)
            logger.warning("quota_exceeded", owner_id=owner_id, admitted=granted, rejected=rejected)
            for job in jobs[granted:]:
                await self.orchestrator.reject(
                    job,
                    QuotaExceededError(
                        f"Photo quota exhausted; {granted} of {len(jobs)} files admitted",
                        remaining=0
                    )
                )

        semaphore = asyncio.Semaphore(options.concurrency)

        async def run_one(job: UploadJob, upload: UploadedFile) -> UploadJob:
            try:
                async with semaphore:
                    return await self.orchestrator.run(
                        job,
                        upload,
                        enable_ai=options.enable_ai,
                        remove_background=options.remove_background,
                        cancel_event=cancel_event
                    )
            finally:
                self._release(owner_id)

        return [
            asyncio.create_task(run_one(job, upload))
            for job, upload in zip(jobs[:granted], files[:granted])
        ]
