from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any
from callcoach.core.errors import AnalysisError, ErrorKind
from callcoach.schemas.analysis import Report

class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

# Wire-only status: the absence of a record. Never stored.
NOT_FOUND = "not_found"


@dataclass(frozen=True)
class JobError:
    kind: ErrorKind
    message: str

    @classmethod
    def from_exception(cls, exc: Exception) -> "JobError":
        if isinstance(exc, AnalysisError):
            return cls(kind=exc.kind, message=exc.message)
        return cls(kind=ErrorKind.UPSTREAM, message=str(exc) or type(exc).__name__)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message}


@dataclass
class JobRecord:
    job_id: str
    session_id: Optional[str]
    submitted_at: float
    last_updated_at: float
    status: JobStatus = JobStatus.PROCESSING
    result: Optional[Report] = None
    error: Optional[JobError] = None

    def progress_percent(self, now: float, estimated_total: float, cap: int = 95) -> Optional[int]:
        """
        Advisory progress estimate. Processing jobs are clamped to [0, cap]:
        100 is reserved for actual completion. Failed jobs report nothing.
        """
        if self.status == JobStatus.COMPLETED:
            return 100
        if self.status == JobStatus.FAILED:
            return None
        if estimated_total <= 0:
            return cap
        elapsed = max(0.0, now - self.submitted_at)
        return max(0, min(cap, int(elapsed / estimated_total * 100)))

    @property
    def duration(self) -> Optional[float]:
        if self.status == JobStatus.PROCESSING:
            return None
        return self.last_updated_at - self.submitted_at


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view handed to callers of JobOrchestrator.status()."""
    job_id: str
    session_id: Optional[str]
    status: JobStatus
    progress_percent: Optional[int]
    result: Optional[Report] = None
    error: Optional[JobError] = None
