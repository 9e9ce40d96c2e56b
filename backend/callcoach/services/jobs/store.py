"""
Process-local job table.

The store lives exactly as long as the process hosting it. A recycled worker,
a new container or a second replica starts with an empty table, so a lookup
miss is an expected outcome, not an error: callers must be ready to recompute.
Nothing here is persisted and there is no TTL eviction.
"""
import time
import uuid
from dataclasses import replace
from typing import Callable, Dict, List, Optional
from callcoach.models.job import JobError, JobRecord, JobStatus
from callcoach.schemas.analysis import Report
from callcoach.core.logging import get_logger

logger = get_logger("job_store")

class JobStore:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._jobs: Dict[str, JobRecord] = {}

    def create(self, session_id: Optional[str] = None) -> JobRecord:
        now = self.clock()
        record = JobRecord(
            job_id=uuid.uuid4().hex,
            session_id=session_id,
            submitted_at=now,
            last_updated_at=now,
        )
        self._jobs[record.job_id] = record
        return replace(record)

    def get(self, job_id: str) -> Optional[JobRecord]:
        record = self._jobs.get(job_id)
        return replace(record) if record is not None else None

    def complete(self, job_id: str, report: Report) -> None:
        record = self._jobs.get(job_id)
        if record is None:
            # The table was wiped while the task ran; the result only reaches
            # callers through the persister now.
            logger.warning(f"Job {job_id} vanished before completion could be recorded")
            return
        record.status = JobStatus.COMPLETED
        record.result = report
        record.last_updated_at = self.clock()

    def fail(self, job_id: str, error: JobError) -> None:
        record = self._jobs.get(job_id)
        if record is None:
            logger.warning(f"Job {job_id} vanished before failure could be recorded")
            return
        record.status = JobStatus.FAILED
        record.error = error
        record.last_updated_at = self.clock()

    def all(self) -> List[JobRecord]:
        return [replace(r) for r in self._jobs.values()]

    def clear(self) -> None:
        """Drop every record, as a process recycle would."""
        self._jobs.clear()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs
