import pytest

from photo_pipeline.core.exceptions import InvalidTransitionError, QuotaExceededError
from photo_pipeline.engines.vision.schemas import AnalysisDraft
from photo_pipeline.modules.uploads.models import UploadJobRecord
from photo_pipeline.modules.uploads.schemas import (
    JobError,
    JobStage,
    SourceMeta,
    StageStatus,
    UploadJob,
)

PIPELINE = [
    JobStage.VALIDATING,
    JobStage.UPLOADING,
    JobStage.DERIVING,
    JobStage.ENRICHING,
    JobStage.REMOVING_BACKGROUND,
    JobStage.FINALIZING,
]


def _job() -> UploadJob:
    return UploadJob(owner_id="owner-1", file_name="a.jpg")


def test_linear_order_is_enforced():
    job = _job()

    with pytest.raises(InvalidTransitionError):
        job.advance_to(JobStage.UPLOADING)

    for stage in PIPELINE:
        job.advance_to(stage)
    job.mark_completed()

    assert job.stage == JobStage.COMPLETED
    assert job.progress == 100
    assert job.stages_metadata["Validating"]["status"] == StageStatus.COMPLETED.value


def test_no_going_back_or_leaving_terminal():
    job = _job()
    job.advance_to(JobStage.VALIDATING)
    job.advance_to(JobStage.UPLOADING)

    with pytest.raises(InvalidTransitionError):
        job.advance_to(JobStage.VALIDATING)

    job.mark_failed(JobError(kind="StorageError", message="disk full"))
    with pytest.raises(InvalidTransitionError):
        job.mark_failed(JobError(kind="StorageError", message="again"))
    with pytest.raises(InvalidTransitionError):
        job.advance_to(JobStage.DERIVING)


def test_progress_never_decreases():
    job = _job()
    job.set_progress(40)
    job.set_progress(20)
    assert job.progress == 40


def test_failure_records_stage():
    job = _job()
    job.advance_to(JobStage.VALIDATING)

    job.mark_failed(JobError(kind="ValidationError.TooLarge", message="too big"))

    assert job.stage == JobStage.FAILED
    assert job.error.stage == "Validating"
    assert job.stages_metadata["Validating"]["status"] == StageStatus.FAILED.value
    assert job.failed_after_upload_started is False


def test_error_from_pipeline_exception_uses_kind():
    error = JobError.from_exception(QuotaExceededError("no slots"), JobStage.QUEUED)
    assert (error.kind, error.stage) == ("QuotaExceededError", "Queued")

    internal = JobError.from_exception(RuntimeError("boom"), JobStage.DERIVING)
    assert internal.kind == "InternalError"
    assert "boom" in internal.message


def test_record_round_trip_keeps_results_and_errors():
    job = _job()
    for stage in PIPELINE[:4]:
        job.advance_to(stage)
    job.set_source_meta(SourceMeta(name="a.jpg", byte_size=1234, mime_type="image/jpeg", pixel_width=640, pixel_height=480))
    job.results.original_url = "/static/storage/x/original.jpg"
    job.results.thumbnails["small"] = "/static/storage/x/thumbnails/small.jpg"
    job.results.ai_analysis = AnalysisDraft(title="Blue shirt")
    job.record_degradation(JobError(kind="AIServiceError", message="timeout", stage="Enriching"))

    restored = UploadJobRecord.from_job(job).to_job()

    assert restored.id == job.id
    assert restored.stage == JobStage.ENRICHING
    assert restored.results == job.results
    assert restored.degradations == job.degradations
    assert restored.source_meta == job.source_meta


def test_status_snapshot_is_detached():
    job = _job()
    job.advance_to(JobStage.VALIDATING)
    snapshot = job.to_status()

    job.advance_to(JobStage.UPLOADING)

    assert snapshot["stage"] == "Validating"
    assert "Uploading" not in snapshot["stages"]
