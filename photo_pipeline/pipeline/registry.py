"""
Job Registry

Process-local index of admitted jobs for status polling. Entries stay until
they are expired explicitly; nothing is removed on a timer.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from photo_pipeline.modules.uploads.schemas import UploadJob


class JobRegistry:

    def __init__(self):
        self._jobs: Dict[str, UploadJob] = {}
        self._lock = threading.Lock()

    def register(self, job: UploadJob) -> UploadJob:
        with self._lock:
            self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Optional[UploadJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Snapshot of the job, or None when it is not registered."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.to_status() if job else None

    def list_batch(self, batch_id: str) -> List[UploadJob]:
        with self._lock:
            return [job for job in self._jobs.values() if job.batch_id == batch_id]

    def expire(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def purge_terminal(self, older_than: timedelta = timedelta(0)) -> int:
        """Drop terminal jobs that finished more than older_than ago."""
        cutoff = datetime.now(timezone.utc) - older_than
        with self._lock:
            stale = [
                job_id for job_id, job in self._jobs.items()
                if job.is_terminal and job.completed_at is not None and job.completed_at <= cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs
