import asyncio

import pytest


def _files(*named_payloads):
    return [("files", (name, data, mime)) for name, data, mime in named_payloads]


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_root_lists_endpoints(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["uploads"] == "/api/v1/uploads"


@pytest.mark.asyncio
async def test_upload_batch_and_wait(client, image_factory):
    jpeg = image_factory(640, 480)
    response = await client.post(
        "/api/v1/uploads",
        data={"owner_id": "owner-1", "concurrency": "2", "enable_ai": "true"},
        files=_files(("a.jpg", jpeg, "image/jpeg"), ("notes.txt", b"hello" * 200, "text/plain")),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert len(body["successful"]) == 1
    ok = body["successful"][0]
    assert ok["stage"] == "Completed"
    assert ok["progress"] == 100
    assert ok["results"]["ai_analysis"]["title"]
    assert set(ok["results"]["thumbnails"]) == {"small", "medium", "large"}

    failed = body["failed"][0]
    assert failed["file_name"] == "notes.txt"
    assert failed["error"]["kind"] == "ValidationError.UnsupportedType"


@pytest.mark.asyncio
async def test_upload_in_background_then_poll(client, image_factory):
    response = await client.post(
        "/api/v1/uploads",
        data={"owner_id": "owner-1", "wait": "false"},
        files=_files(("a.jpg", image_factory(400, 400), "image/jpeg")),
    )

    assert response.status_code == 202
    accepted = response.json()
    job_id = accepted["job_ids"][0]
    assert accepted["status_urls"] == [f"/api/v1/status/{job_id}"]

    status = None
    for _ in range(200):
        status = (await client.get(f"/api/v1/status/{job_id}")).json()
        if status["stage"] in ("Completed", "Failed"):
            break
        await asyncio.sleep(0.05)

    assert status["stage"] == "Completed"
    assert status["stages"]["Uploading"]["status"] == "completed"


@pytest.mark.asyncio
async def test_status_unknown_job_is_404(client):
    response = await client.get("/api/v1/status/not-a-job")

    assert response.status_code == 404
    assert response.json()["kind"] == "JobNotFoundError"


@pytest.mark.asyncio
async def test_expire_job(client, image_factory, upload_service):
    response = await client.post(
        "/api/v1/uploads",
        data={"owner_id": "owner-1"},
        files=_files(("a.jpg", image_factory(400, 400), "image/jpeg")),
    )
    job_id = response.json()["successful"][0]["job_id"]

    assert (await client.delete(f"/api/v1/status/{job_id}")).status_code == 200
    assert job_id not in upload_service.registry
    # Still answerable from the persisted record
    assert (await client.get(f"/api/v1/status/{job_id}")).json()["stage"] == "Completed"
    assert (await client.delete(f"/api/v1/status/{job_id}")).status_code == 404


@pytest.mark.asyncio
async def test_cancel_unknown_batch_is_404(client):
    response = await client.delete("/api/v1/uploads/batches/nope")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_invalid_concurrency_is_rejected(client, image_factory):
    response = await client.post(
        "/api/v1/uploads",
        data={"owner_id": "owner-1", "concurrency": "0"},
        files=_files(("a.jpg", image_factory(400, 400), "image/jpeg")),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_metrics_endpoint(client, image_factory):
    await client.post(
        "/api/v1/uploads",
        data={"owner_id": "owner-1"},
        files=_files(("a.jpg", image_factory(400, 400), "image/jpeg")),
    )

    response = await client.get("/api/v1/metrics")

    assert response.status_code == 200
    assert "upload_jobs_total" in response.text
    assert "upload_pipeline_stage_latency_seconds" in response.text
