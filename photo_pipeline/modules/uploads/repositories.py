"""
Upload Job Repositories

SqlJobRepository persists records through an async SQLModel session factory.
InMemoryJobRepository keeps them in a dict for tests and local runs.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from photo_pipeline.core.exceptions import PersistenceError
from photo_pipeline.core.logging import get_logger
from photo_pipeline.modules.uploads.models import UploadJobRecord

logger = get_logger(__name__)


class JobRepository(ABC):
    """Durable store for upload job records."""

    @abstractmethod
    async def save(self, record: UploadJobRecord) -> UploadJobRecord:
        """
        Insert or replace a record in one write.

        Raises:
            PersistenceError: if the write did not happen
        """
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[UploadJobRecord]:
        pass

    @abstractmethod
    async def list_by_owner(self, owner_id: str, limit: int = 100) -> List[UploadJobRecord]:
        pass


class SqlJobRepository(JobRepository):
    """Repository backed by the application database."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def save(self, record: UploadJobRecord) -> UploadJobRecord:
        try:
            async with self.session_factory() as session:
                merged = await session.merge(record)
                await session.commit()
                await session.refresh(merged)
                return merged
        except SQLAlchemyError as e:
            logger.error("job_record_save_failed", job_id=record.id, error=str(e))
            raise PersistenceError(f"Could not save job {record.id}: {e}", job_id=record.id)

    async def get(self, job_id: str) -> Optional[UploadJobRecord]:
        try:
            async with self.session_factory() as session:
                return await session.get(UploadJobRecord, job_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load job {job_id}: {e}", job_id=job_id)

    async def list_by_owner(self, owner_id: str, limit: int = 100) -> List[UploadJobRecord]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(UploadJobRecord)
                    .where(UploadJobRecord.owner_id == owner_id)
                    .order_by(UploadJobRecord.created_at.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not list jobs for {owner_id}: {e}")


class InMemoryJobRepository(JobRepository):
    """Dict-backed repository. Set fail_saves to simulate an unavailable database."""

    def __init__(self):
        self.records: Dict[str, UploadJobRecord] = {}
        self.fail_saves = False
        self.save_calls = 0

    async def save(self, record: UploadJobRecord) -> UploadJobRecord:
        self.save_calls += 1
        if self.fail_saves:
            raise PersistenceError(f"Could not save job {record.id}: database unavailable", job_id=record.id)
        self.records[record.id] = record
        return record

    async def get(self, job_id: str) -> Optional[UploadJobRecord]:
        return self.records.get(job_id)

    async def list_by_owner(self, owner_id: str, limit: int = 100) -> List[UploadJobRecord]:
        owned = [r for r in self.records.values() if r.owner_id == owner_id]
        owned.sort(key=lambda r: r.created_at, reverse=True)
        return owned[:limit]
