"""
Uploads Module

In-memory job state, its persisted record, and the job repositories.
"""

from photo_pipeline.modules.uploads.schemas import (
    JobStage, StageStatus, SourceMeta, JobError, JobResults, UploadJob
)
from photo_pipeline.modules.uploads.models import UploadJobRecord
from photo_pipeline.modules.uploads.repositories import (
    JobRepository, SqlJobRepository, InMemoryJobRepository
)

__all__ = [
    "JobStage", "StageStatus", "SourceMeta", "JobError", "JobResults", "UploadJob",
    "UploadJobRecord",
    "JobRepository", "SqlJobRepository", "InMemoryJobRepository",
]
