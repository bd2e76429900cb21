"""
Quota Gate

check_remaining answers how many more photos an owner may upload
(UNLIMITED for no cap). increment_usage is atomic per call and is only
invoked when a job reaches Completed.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import col

from photo_pipeline.core.config import settings
from photo_pipeline.core.exceptions import QuotaCheckError
from photo_pipeline.core.logging import get_logger
from photo_pipeline.modules.quota.models import OwnerQuota

logger = get_logger(__name__)

UNLIMITED = -1


def remaining_for(used: int, limit: int) -> int:
    if limit < 0:
        return UNLIMITED
    return max(0, limit - used)


class QuotaGate(ABC):
    """Collaborator contract for the owner's photo allowance."""

    @abstractmethod
    async def check_remaining(self, owner_id: str) -> int:
        """
        Remaining uploads for the owner, or a negative number for unlimited.

        Raises:
            QuotaCheckError: if the allowance could not be determined
        """
        pass

    @abstractmethod
    async def increment_usage(self, owner_id: str, count: int = 1) -> None:
        pass


class SqlQuotaGate(QuotaGate):
    """Quota stored in the owner_quotas table."""

    def __init__(self, session_factory, default_limit: int = settings.DEFAULT_PHOTO_LIMIT):
        self.session_factory = session_factory
        self.default_limit = default_limit

    async def check_remaining(self, owner_id: str) -> int:
        try:
            async with self.session_factory() as session:
                quota = await session.get(OwnerQuota, owner_id)
        except SQLAlchemyError as e:
            logger.error("quota_check_failed", owner_id=owner_id, error=str(e))
            raise QuotaCheckError(f"Could not read quota for {owner_id}: {e}")

        if quota is None:
            return remaining_for(0, self.default_limit)
        return remaining_for(quota.photos_used, quota.photos_limit)

    async def increment_usage(self, owner_id: str, count: int = 1) -> None:
        statement = (
            update(OwnerQuota)
            .where(col(OwnerQuota.owner_id) == owner_id)
            .values(photos_used=col(OwnerQuota.photos_used) + count, updated_at=datetime.now(timezone.utc))
        )

        # First increment for an owner inserts the row; a concurrent insert
        # loses on the primary key and falls back to the UPDATE.
        for _ in range(2):
            try:
                async with self.session_factory() as session:
                    result = await session.execute(statement)
                    if result.rowcount == 0:
                        session.add(OwnerQuota(
                            owner_id=owner_id,
                            photos_used=count,
                            photos_limit=self.default_limit
                        ))
                    await session.commit()
                    return
            except IntegrityError:
                continue
        raise QuotaCheckError(f"Could not increment quota for {owner_id}")

    async def set_limit(self, owner_id: str, photos_limit: int) -> None:
        async with self.session_factory() as session:
            quota = await session.get(OwnerQuota, owner_id)
            if quota is None:
                quota = OwnerQuota(owner_id=owner_id, photos_limit=photos_limit)
            else:
                quota.photos_limit = photos_limit
                quota.updated_at = datetime.now(timezone.utc)
            session.add(quota)
            await session.commit()

    async def get_usage(self, owner_id: str) -> int:
        async with self.session_factory() as session:
            quota = await session.get(OwnerQuota, owner_id)
            return quota.photos_used if quota else 0


class InMemoryQuotaGate(QuotaGate):
    """Process-local quota for tests and simulation runs."""

    def __init__(self, default_limit: int = settings.DEFAULT_PHOTO_LIMIT, limits: Optional[Dict[str, int]] = None):
        self.default_limit = default_limit
        self.limits: Dict[str, int] = dict(limits or {})
        self.usage: Dict[str, int] = {}
        self.fail_checks = False
        self._lock = asyncio.Lock()

    async def check_remaining(self, owner_id: str) -> int:
        if self.fail_checks:
            raise QuotaCheckError(f"Quota backend unavailable for {owner_id}")
        async with self._lock:
            limit = self.limits.get(owner_id, self.default_limit)
            return remaining_for(self.usage.get(owner_id, 0), limit)

    async def increment_usage(self, owner_id: str, count: int = 1) -> None:
        async with self._lock:
            self.usage[owner_id] = self.usage.get(owner_id, 0) + count
