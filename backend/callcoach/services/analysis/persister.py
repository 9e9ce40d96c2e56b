"""
Idempotent delivery of reports into training sessions.

Both delivery paths (the background job and the synchronous fallback) end
here. The write is a single conditional UPDATE guarded by
"overall_score IS NULL", so the first report to arrive wins and every later
one is a no-op. Scored hooks (points awards) run in the same transaction as
the winning write and never for the losers.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from callcoach.core.errors import SessionNotFoundError
from callcoach.core.logging import get_logger
from callcoach.models.session import TrainingSession
from callcoach.schemas.analysis import Report
from callcoach.services.gamification.points import award_session_points

logger = get_logger("result_persister")

ScoredHook = Callable[[AsyncSession, TrainingSession, Report], Awaitable[None]]


@dataclass(frozen=True)
class PersistOutcome:
    session_id: str
    report: Report
    newly_scored: bool


class ResultPersister:
    def __init__(self, session_factory: async_sessionmaker, on_scored: Optional[List[ScoredHook]] = None):
        self.session_factory = session_factory
        self.on_scored: List[ScoredHook] = list(on_scored) if on_scored is not None else [award_session_points]

    async def persist(self, session_id: str, report: Report) -> PersistOutcome:
        async with self.session_factory() as db:
            stmt = (
                update(TrainingSession)
                .where(TrainingSession.id == session_id, TrainingSession.overall_score.is_(None))
                .values(
                    analysis_status="completed",
                    analysis_completed_at=datetime.now(timezone.utc),
                    **TrainingSession.report_columns(report),
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)

            if result.rowcount == 1:
                session = await db.get(TrainingSession, session_id)
                for hook in self.on_scored:
                    await hook(db, session, report)
                await db.commit()
                logger.info(f"Session {session_id} scored {report.overall_score}")
                return PersistOutcome(session_id=session_id, report=report, newly_scored=True)

            await db.rollback()
            session = await db.get(TrainingSession, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)

            logger.info(f"Session {session_id} already scored {session.overall_score}, duplicate report ignored")
            return PersistOutcome(session_id=session_id, report=session.to_report(), newly_scored=False)

    async def get_report(self, session_id: str) -> Optional[Report]:
        async with self.session_factory() as db:
            session = await db.get(TrainingSession, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            return session.to_report()
