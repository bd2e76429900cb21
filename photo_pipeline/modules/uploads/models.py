"""
UploadJobRecord - durable copy of an UploadJob

Written at most twice per job: once when it completes (the Finalizing
write) and once, best-effort, when it fails.
"""

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone

from photo_pipeline.modules.uploads.schemas import (
    JobError, JobResults, JobStage, SourceMeta, UploadJob
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands DateTime columns back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UploadJobRecord(SQLModel, table=True):
    """Persisted upload job."""
    __tablename__ = "upload_jobs"

    id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    batch_id: Optional[str] = Field(default=None, index=True)
    file_name: str = Field(default="")

    stage: str = Field(default=JobStage.QUEUED.value, index=True)
    progress: int = Field(default=0)

    source_meta: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    results: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    # Error Tracking
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    error_stage: Optional[str] = None
    degradations: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))

    # Structure: {stage_name: {status, duration_ms, started_at, completed_at, error}}
    stages_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    # Timestamps
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))

    @classmethod
    def from_job(cls, job: UploadJob, **overrides: Any) -> "UploadJobRecord":
        """Build a record from the in-memory job; overrides win over job fields."""
        values: Dict[str, Any] = {
            "id": job.id,
            "owner_id": job.owner_id,
            "batch_id": job.batch_id,
            "file_name": job.file_name,
            "stage": job.stage.value,
            "progress": job.progress,
            "source_meta": job.source_meta.model_dump() if job.source_meta else None,
            "results": job.results.model_dump(mode="json"),
            "error_kind": job.error.kind if job.error else None,
            "error_message": job.error.message if job.error else None,
            "error_stage": job.error.stage if job.error else None,
            "degradations": [d.model_dump() for d in job.degradations],
            "stages_metadata": {name: dict(data) for name, data in job.stages_metadata.items()},
            "created_at": job.created_at,
            "updated_at": datetime.now(timezone.utc),
            "started_at": job.started_at,
            "completed_at": job.completed_at,
        }
        values.update(overrides)
        return cls(**values)

    def to_job(self) -> UploadJob:
        """Rehydrate an UploadJob, e.g. to answer status queries after a restart."""
        error = None
        if self.error_kind:
            error = JobError(kind=self.error_kind, message=self.error_message or "", stage=self.error_stage)

        return UploadJob(
            id=self.id,
            owner_id=self.owner_id,
            batch_id=self.batch_id,
            file_name=self.file_name,
            source_meta=SourceMeta(**self.source_meta) if self.source_meta else None,
            stage=JobStage(self.stage),
            progress=self.progress,
            results=JobResults(**(self.results or {})),
            error=error,
            degradations=[JobError(**d) for d in (self.degradations or [])],
            stages_metadata=dict(self.stages_metadata or {}),
            created_at=_as_utc(self.created_at),
            started_at=_as_utc(self.started_at),
            completed_at=_as_utc(self.completed_at),
        )
