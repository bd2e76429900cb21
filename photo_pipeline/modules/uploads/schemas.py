"""
UploadJob - in-memory state of one file moving through the pipeline

Owned and mutated by exactly one orchestrator. Other components read it
through to_status() snapshots.
"""

import uuid
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from photo_pipeline.core.exceptions import InvalidTransitionError, PipelineBaseException
from photo_pipeline.engines.vision.schemas import AnalysisDraft


class JobStage(str, Enum):
    """Pipeline stages, in order."""
    QUEUED = "Queued"                          # admitted, waiting for a scheduler slot
    VALIDATING = "Validating"
    UPLOADING = "Uploading"
    DERIVING = "Deriving"
    ENRICHING = "Enriching"
    REMOVING_BACKGROUND = "RemovingBackground"
    FINALIZING = "Finalizing"
    COMPLETED = "Completed"
    FAILED = "Failed"


STAGE_ORDER: List[JobStage] = [
    JobStage.QUEUED,
    JobStage.VALIDATING,
    JobStage.UPLOADING,
    JobStage.DERIVING,
    JobStage.ENRICHING,
    JobStage.REMOVING_BACKGROUND,
    JobStage.FINALIZING,
    JobStage.COMPLETED,
]

TERMINAL_STAGES = {JobStage.COMPLETED, JobStage.FAILED}

# Stages during which a job occupies a scheduler slot
ACTIVE_STAGES = set(STAGE_ORDER[1:-1])


class StageStatus(str, Enum):
    """Individual stage status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DEGRADED = "degraded"
    SKIPPED = "skipped"
    FAILED = "failed"


class SourceMeta(BaseModel):
    """Facts about the submitted file, captured at validation."""
    name: str
    byte_size: int
    mime_type: str
    pixel_width: int
    pixel_height: int


class JobError(BaseModel):
    kind: str
    message: str
    stage: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: Exception, stage: Optional[JobStage] = None) -> "JobError":
        stage_name = stage.value if stage else None
        if isinstance(exc, PipelineBaseException):
            return cls(kind=exc.kind, message=exc.message, stage=exc.stage or stage_name)
        return cls(kind="InternalError", message=f"{type(exc).__name__}: {exc}", stage=stage_name)


class JobResults(BaseModel):
    original_url: Optional[str] = None
    thumbnails: Dict[str, str] = Field(default_factory=dict)
    ai_analysis: Optional[AnalysisDraft] = None
    background_removed_url: Optional[str] = None


class UploadJob(BaseModel):
    """
    One submitted file and its path through the pipeline.

    Stages advance strictly in STAGE_ORDER; FAILED is reachable from any
    non-terminal stage. Progress never decreases before a terminal stage
    and results are only ever added.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    file_name: str
    batch_id: Optional[str] = None

    source_meta: Optional[SourceMeta] = None
    stage: JobStage = JobStage.QUEUED
    progress: int = 0
    results: JobResults = Field(default_factory=JobResults)
    error: Optional[JobError] = None
    degradations: List[JobError] = Field(default_factory=list)

    # {stage_name: {status, started_at, completed_at, duration_ms, error}}
    stages_metadata: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def storage_prefix(self) -> str:
        """Every object this job writes lives under this prefix."""
        return f"users/{self.owner_id}/jobs/{self.id}"

    # -------------------------------------------------------------------------
    # Stage transitions
    # -------------------------------------------------------------------------

    def update_stage(self, stage: JobStage, status: StageStatus, error: Optional[str] = None):
        """Update a specific stage's status and timing."""
        now = datetime.now(timezone.utc)
        stage_data = dict(self.stages_metadata.get(stage.value, {}))
        stage_data["status"] = status.value

        if status == StageStatus.IN_PROGRESS:
            stage_data["started_at"] = now.isoformat()
        else:
            stage_data["completed_at"] = now.isoformat()
            if "started_at" in stage_data:
                started = datetime.fromisoformat(stage_data["started_at"])
                stage_data["duration_ms"] = int((now - started).total_seconds() * 1000)

        if error:
            stage_data["error"] = error

        self.stages_metadata[stage.value] = stage_data

    def advance_to(self, stage: JobStage):
        """Move to the next pipeline stage. Skipping or going back is refused."""
        if stage == JobStage.FAILED or self.is_terminal:
            raise InvalidTransitionError(self.stage.value, stage.value, job_id=self.id)

        current_index = STAGE_ORDER.index(self.stage)
        if STAGE_ORDER.index(stage) != current_index + 1:
            raise InvalidTransitionError(self.stage.value, stage.value, job_id=self.id)

        previous = self.stages_metadata.get(self.stage.value)
        if previous and previous.get("status") == StageStatus.IN_PROGRESS.value:
            self.update_stage(self.stage, StageStatus.COMPLETED)

        if self.stage == JobStage.QUEUED:
            self.started_at = datetime.now(timezone.utc)

        self.stage = stage
        if stage != JobStage.COMPLETED:
            self.update_stage(stage, StageStatus.IN_PROGRESS)

    def set_progress(self, value: int):
        """Raise progress; lower values are ignored."""
        if self.is_terminal:
            return
        self.progress = max(self.progress, min(100, max(0, int(value))))

    def set_source_meta(self, meta: SourceMeta):
        if self.source_meta is None:
            self.source_meta = meta

    def record_degradation(self, error: JobError, status: StageStatus = StageStatus.DEGRADED):
        self.degradations.append(error)
        if error.stage:
            self.update_stage(JobStage(error.stage), status, error=error.message)

    def mark_completed(self, completed_at: Optional[datetime] = None):
        self.advance_to(JobStage.COMPLETED)
        self.progress = 100
        self.completed_at = completed_at or datetime.now(timezone.utc)

    def mark_failed(self, error: JobError):
        if self.is_terminal:
            raise InvalidTransitionError(self.stage.value, JobStage.FAILED.value, job_id=self.id)

        failed_stage = self.stage
        if failed_stage != JobStage.QUEUED:
            self.update_stage(failed_stage, StageStatus.FAILED, error=error.message)

        self.error = error if error.stage else error.model_copy(update={"stage": failed_stage.value})
        self.stage = JobStage.FAILED
        self.completed_at = datetime.now(timezone.utc)

    @property
    def failed_after_upload_started(self) -> bool:
        """True once anything may have been written to storage for this job."""
        return JobStage.UPLOADING.value in self.stages_metadata

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    def to_status(self) -> Dict[str, Any]:
        """Snapshot for status polling; safe to hand to other tasks."""
        status: Dict[str, Any] = {
            "job_id": self.id,
            "owner_id": self.owner_id,
            "batch_id": self.batch_id,
            "file_name": self.file_name,
            "stage": self.stage.value,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if self.source_meta:
            status["source_meta"] = self.source_meta.model_dump()
        if self.results.original_url:
            status["results"] = self.results.model_dump(mode="json")
        if self.error:
            status["error"] = self.error.model_dump()
        if self.degradations:
            status["degradations"] = [d.model_dump() for d in self.degradations]
        status["stages"] = {name: dict(data) for name, data in self.stages_metadata.items()}
        return status
