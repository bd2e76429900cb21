from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, Column
from datetime import datetime, timezone

from photo_pipeline.core.config import settings


class OwnerQuota(SQLModel, table=True):
    """Per-owner photo allowance. photos_limit == -1 means unlimited."""
    __tablename__ = "owner_quotas"

    owner_id: str = Field(primary_key=True)
    photos_used: int = Field(default=0)
    photos_limit: int = Field(default=settings.DEFAULT_PHOTO_LIMIT)

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
