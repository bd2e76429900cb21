from datetime import timedelta

import pytest

from photo_pipeline.core.exceptions import JobNotFoundError
from photo_pipeline.modules.uploads.models import UploadJobRecord
from photo_pipeline.modules.uploads.schemas import JobError, JobStage, UploadJob
from photo_pipeline.pipeline.registry import JobRegistry


def _job(**kwargs) -> UploadJob:
    return UploadJob(owner_id="owner-1", file_name="a.jpg", **kwargs)


def test_register_get_and_expire():
    registry = JobRegistry()
    job = registry.register(_job())

    assert registry.get(job.id) is job
    assert job.id in registry
    assert registry.get_status(job.id)["stage"] == "Queued"

    assert registry.expire(job.id) is True
    assert registry.expire(job.id) is False
    assert registry.get_status(job.id) is None


def test_terminal_jobs_are_kept_until_purged():
    registry = JobRegistry()
    done = registry.register(_job())
    running = registry.register(_job())
    done.mark_failed(JobError(kind="QuotaExceededError", message="no slots"))
    running.advance_to(JobStage.VALIDATING)

    assert registry.purge_terminal(older_than=timedelta(hours=1)) == 0
    assert len(registry) == 2

    assert registry.purge_terminal() == 1
    assert registry.get(done.id) is None
    assert registry.get(running.id) is running


def test_list_batch():
    registry = JobRegistry()
    registry.register(_job(batch_id="b1"))
    registry.register(_job(batch_id="b1"))
    registry.register(_job(batch_id="b2"))

    assert len(registry.list_batch("b1")) == 2


@pytest.mark.asyncio
async def test_service_status_prefers_registry_then_repository(upload_service, repository, jpeg_file):
    result = await upload_service.submit_batch("owner-1", [jpeg_file()])
    job = result.successful[0]

    live = await upload_service.get_job_status(job.id)
    assert live["stage"] == "Completed"
    assert live["progress"] == 100

    upload_service.expire_job(job.id)
    persisted = await upload_service.get_job_status(job.id)
    assert persisted["stage"] == "Completed"
    assert persisted["results"]["thumbnails"].keys() == {"small", "medium", "large"}


@pytest.mark.asyncio
async def test_service_status_unknown_job(upload_service):
    with pytest.raises(JobNotFoundError):
        await upload_service.get_job_status("does-not-exist")


@pytest.mark.asyncio
async def test_service_status_from_record_only(upload_service, repository):
    job = _job()
    job.mark_failed(JobError(kind="StorageError", message="disk full", stage="Uploading"))
    await repository.save(UploadJobRecord.from_job(job))

    status = await upload_service.get_job_status(job.id)

    assert status["stage"] == "Failed"
    assert status["error"] == {"kind": "StorageError", "message": "disk full", "stage": "Uploading"}
