import asyncio

import pytest

from photo_pipeline.core.database import create_db_and_tables, make_session_factory
from photo_pipeline.modules.quota.services import UNLIMITED, SqlQuotaGate
from photo_pipeline.modules.uploads.models import UploadJobRecord
from photo_pipeline.modules.uploads.repositories import SqlJobRepository
from photo_pipeline.modules.uploads.schemas import JobError, JobStage, UploadJob
from photo_pipeline.pipeline.orchestrator import JobOrchestrator


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = make_session_factory(f"sqlite+aiosqlite:///{tmp_path}/db/test.db")
    await create_db_and_tables(engine)
    yield factory
    await engine.dispose()


@pytest.mark.asyncio
async def test_job_record_upsert(session_factory):
    repository = SqlJobRepository(session_factory)
    job = UploadJob(owner_id="owner-1", file_name="a.jpg", batch_id="b1")
    job.advance_to(JobStage.VALIDATING)

    await repository.save(UploadJobRecord.from_job(job))
    job.mark_failed(JobError(kind="ValidationError.TooSmall", message="too small"))
    await repository.save(UploadJobRecord.from_job(job))

    stored = await repository.get(job.id)
    assert stored.stage == "Failed"
    assert stored.error_kind == "ValidationError.TooSmall"
    assert stored.stages_metadata["Validating"]["status"] == "failed"
    assert [r.id for r in await repository.list_by_owner("owner-1")] == [job.id]
    assert await repository.get("missing") is None


@pytest.mark.asyncio
async def test_quota_defaults_and_increments(session_factory):
    gate = SqlQuotaGate(session_factory, default_limit=5)

    assert await gate.check_remaining("new-owner") == 5

    await gate.increment_usage("new-owner", 1)
    await gate.increment_usage("new-owner", 2)

    assert await gate.get_usage("new-owner") == 3
    assert await gate.check_remaining("new-owner") == 2


@pytest.mark.asyncio
async def test_quota_concurrent_increments_are_not_lost(session_factory):
    gate = SqlQuotaGate(session_factory, default_limit=100)
    await gate.increment_usage("owner-1", 1)

    await asyncio.gather(*(gate.increment_usage("owner-1", 1) for _ in range(10)))

    assert await gate.get_usage("owner-1") == 11


@pytest.mark.asyncio
async def test_quota_unlimited_and_exhausted(session_factory):
    gate = SqlQuotaGate(session_factory, default_limit=2)
    await gate.set_limit("pro", -1)
    await gate.increment_usage("free", 5)

    assert await gate.check_remaining("pro") == UNLIMITED
    assert await gate.check_remaining("free") == 0


@pytest.mark.asyncio
async def test_job_completes_against_sql_backends(session_factory, storage, vision, background_remover, jpeg_file):
    repository = SqlJobRepository(session_factory)
    gate = SqlQuotaGate(session_factory, default_limit=5)
    orchestrator = JobOrchestrator(
        storage=storage,
        repository=repository,
        quota=gate,
        vision=vision,
        background_remover=background_remover,
        thumbnail_sizes={"small": 150},
    )
    job = UploadJob(owner_id="owner-1", file_name="photo.jpg")

    await orchestrator.run(job, jpeg_file(), enable_ai=False)

    assert job.stage == JobStage.COMPLETED, job.error
    assert job.completed_at.tzinfo is not None
    stored = (await repository.get(job.id)).to_job()
    assert stored.stage == JobStage.COMPLETED
    assert stored.created_at.tzinfo is not None
    assert stored.completed_at.tzinfo is not None
    assert await gate.get_usage("owner-1") == 1
