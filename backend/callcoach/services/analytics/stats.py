from typing import List, Dict, Any
from collections import Counter
from callcoach.models.job import JobRecord, JobStatus

class StatsService:
    def compute_stats(self, jobs: List[JobRecord]) -> Dict[str, Any]:
        """Snapshot of this process's job table. Says nothing about other processes."""
        status_counts = Counter(j.status for j in jobs)
        failure_kinds = Counter(j.error.kind.value for j in jobs if j.error is not None)

        durations = [j.duration for j in jobs if j.status == JobStatus.COMPLETED and j.duration is not None]
        avg_duration_ms = round(sum(durations) / len(durations) * 1000) if durations else None

        return {
            "total_jobs": len(jobs),
            "processing": status_counts.get(JobStatus.PROCESSING, 0),
            "completed": status_counts.get(JobStatus.COMPLETED, 0),
            "failed": status_counts.get(JobStatus.FAILED, 0),
            "failure_kinds": dict(failure_kinds),
            "average_duration_ms": avg_duration_ms,
        }

stats_service = StatsService()
