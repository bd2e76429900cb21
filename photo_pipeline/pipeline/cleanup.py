from photo_pipeline.core.exceptions import CleanupError
from photo_pipeline.core.logging import get_logger
from photo_pipeline.core.metrics import cleanups_total
from photo_pipeline.core.storage import IStorage

logger = get_logger(__name__)


def job_prefix(owner_id: str, job_id: str) -> str:
    return f"users/{owner_id}/jobs/{job_id}"


class CleanupManager:
    """Removes everything a failed job wrote. Best-effort: logs, never raises."""

    def __init__(self, storage: IStorage):
        self.storage = storage

    async def cleanup(self, job_id: str, owner_id: str) -> bool:
        prefix = job_prefix(owner_id, job_id)
        try:
            removed = await self.storage.delete_tree(prefix)
        except Exception as e:
            error = CleanupError(f"Could not remove {prefix}: {e}", job_id=job_id)
            logger.error("cleanup_failed", prefix=prefix, kind=error.kind, error=error.message)
            cleanups_total.labels(status="error").inc()
            return False

        logger.info("cleanup_completed", prefix=prefix, objects_removed=removed)
        cleanups_total.labels(status="success").inc()
        return True
