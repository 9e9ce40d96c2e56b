import asyncio
from typing import Awaitable, Callable, Optional, Set
from callcoach.core.config import settings
from callcoach.core.errors import AnalysisError, SessionNotFoundError
from callcoach.core.logging import get_logger
from callcoach.models.job import JobError, JobSnapshot
from callcoach.schemas.analysis import Report, ScenarioContext
from callcoach.services.jobs.store import JobStore

logger = get_logger("job_orchestrator")

ScoringFunction = Callable[[str, ScenarioContext, Optional[float]], Awaitable[Report]]


class JobOrchestrator:
    """
    Owns the lifecycle of background scoring jobs.

    submit() never waits on the scoring call: it records the job and hands the
    work to a tracked asyncio task. Whatever the task raises ends up in the
    job record as a Failed status; nothing escapes the task.
    """

    def __init__(
        self,
        store: JobStore,
        scorer: ScoringFunction,
        persister=None,
        estimated_total_seconds: float = settings.ANALYSIS_ESTIMATED_TOTAL_SECONDS,
        progress_cap: int = settings.ANALYSIS_PROGRESS_CAP,
    ):
        self.store = store
        self.scorer = scorer
        self.persister = persister
        self.estimated_total_seconds = estimated_total_seconds
        self.progress_cap = progress_cap
        self._tasks: Set[asyncio.Task] = set()

    def submit(
        self,
        transcript: str,
        scenario: ScenarioContext,
        duration_seconds: Optional[float] = None,
        session_id: Optional[str] = None,
    ) -> str:
        record = self.store.create(session_id=session_id)
        task = asyncio.get_running_loop().create_task(
            self._run(record.job_id, transcript, scenario, duration_seconds, session_id),
            name=f"score-{record.job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Submitted job {record.job_id} (session={session_id})")
        return record.job_id

    async def _run(
        self,
        job_id: str,
        transcript: str,
        scenario: ScenarioContext,
        duration_seconds: Optional[float],
        session_id: Optional[str],
    ) -> None:
        try:
            report = await self.scorer(transcript, scenario, duration_seconds)
        except AnalysisError as e:
            logger.warning(f"Job {job_id} failed ({e.kind.value}): {e.message}")
            self.store.fail(job_id, JobError.from_exception(e))
            return
        except Exception as e:
            logger.exception(f"Job {job_id} crashed: {e}")
            self.store.fail(job_id, JobError.from_exception(e))
            return

        self.store.complete(job_id, report)
        logger.info(f"Job {job_id} completed with score {report.overall_score}")

        if session_id and self.persister is not None:
            try:
                outcome = await self.persister.persist(session_id, report)
                if not outcome.newly_scored:
                    logger.info(f"Job {job_id}: session {session_id} was already scored, result discarded")
            except SessionNotFoundError:
                logger.warning(f"Job {job_id}: session {session_id} does not exist, nothing persisted")
            except Exception as e:
                # The job stays Completed; pollers still deliver the report.
                logger.exception(f"Job {job_id}: persisting session {session_id} failed: {e}")

    def status(self, job_id: str) -> Optional[JobSnapshot]:
        """Pure read. None means this process has no record of the job."""
        record = self.store.get(job_id)
        if record is None:
            return None
        return JobSnapshot(
            job_id=record.job_id,
            session_id=record.session_id,
            status=record.status,
            progress_percent=record.progress_percent(
                self.store.clock(), self.estimated_total_seconds, self.progress_cap
            ),
            result=record.result,
            error=record.error,
        )

    @property
    def in_flight(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def drain(self) -> None:
        """Wait for every running job. Jobs are never cancelled."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
