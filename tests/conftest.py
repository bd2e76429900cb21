import io
import os
import tempfile

# Settings are read at import time; point them somewhere disposable first
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="photo-pipeline-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DATA_DIR}/app.db")
os.environ.setdefault("LOCAL_STORAGE_PATH", os.path.join(_TEST_DATA_DIR, "storage"))
os.environ.setdefault("USE_SIMULATION", "true")
os.environ.setdefault("LOG_FORMAT_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from PIL import Image

from photo_pipeline.core.storage import LocalStorage
from photo_pipeline.engines.matting.services import SimulatedBackgroundRemover
from photo_pipeline.engines.vision.services import SimulatedVisionService
from photo_pipeline.modules.quota.services import InMemoryQuotaGate
from photo_pipeline.modules.uploads.repositories import InMemoryJobRepository
from photo_pipeline.pipeline.orchestrator import JobOrchestrator, UploadedFile
from photo_pipeline.pipeline.registry import JobRegistry
from photo_pipeline.pipeline.scheduler import BatchScheduler
from photo_pipeline.pipeline.service import UploadService


def make_image(width: int = 640, height: int = 480, fmt: str = "JPEG", mode: str = "RGB") -> bytes:
    """Random-noise image; noise keeps encoded files well above the minimum byte size."""
    channels = len(mode)
    img = Image.frombytes(mode, (width, height), os.urandom(width * height * channels))
    output = io.BytesIO()
    img.save(output, format=fmt)
    return output.getvalue()


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def image_factory():
    return make_image


@pytest.fixture
def jpeg_file():
    def _make(name: str = "photo.jpg", width: int = 640, height: int = 480) -> UploadedFile:
        data = make_image(width, height)
        return UploadedFile(name=name, data=data, mime_type="image/jpeg", declared_size=len(data))
    return _make


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    # Small chunks so uploads report progress several times
    return LocalStorage(base_path=str(tmp_path / "storage"), public_url="/static/storage", chunk_size=4096)


@pytest.fixture
def repository() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture
def quota() -> InMemoryQuotaGate:
    return InMemoryQuotaGate(default_limit=100)


@pytest.fixture
def vision() -> SimulatedVisionService:
    return SimulatedVisionService()


@pytest.fixture
def background_remover() -> SimulatedBackgroundRemover:
    return SimulatedBackgroundRemover()


@pytest.fixture
def orchestrator(storage, repository, quota, vision, background_remover) -> JobOrchestrator:
    return JobOrchestrator(
        storage=storage,
        repository=repository,
        quota=quota,
        vision=vision,
        background_remover=background_remover,
        thumbnail_sizes={"small": 150, "medium": 400, "large": 800},
    )


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def scheduler(orchestrator, quota, registry) -> BatchScheduler:
    return BatchScheduler(orchestrator, quota, registry)


@pytest.fixture
def upload_service(scheduler, repository) -> UploadService:
    return UploadService(scheduler, repository)


@pytest.fixture
async def client(upload_service) -> AsyncGenerator[AsyncClient, None]:
    # Lifespan is not run: the test service graph is in-memory
    from photo_pipeline.main import create_app

    app = create_app()
    app.state.upload_service = upload_service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
