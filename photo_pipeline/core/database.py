from pathlib import Path

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from photo_pipeline.core.config import settings

# Import ALL models to ensure they're registered with SQLModel.metadata
from photo_pipeline.modules.uploads.models import UploadJobRecord  # noqa: F401
from photo_pipeline.modules.quota.models import OwnerQuota  # noqa: F401

# Create async engine
engine = create_async_engine(settings.DATABASE_URL, echo=False, future=True)

# Create async session factory
async_session_maker = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


def make_session_factory(database_url: str):
    """Engine and session factory for a database other than the default one."""
    custom_engine = create_async_engine(database_url, echo=False, future=True)
    return custom_engine, sessionmaker(custom_engine, class_=AsyncSession, expire_on_commit=False)


async def create_db_and_tables(target: AsyncEngine = engine):
    """Create all tables if they don't exist."""
    url = target.url
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    async with target.begin() as conn:
        await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, checkfirst=True))
