from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from callcoach.api.deps import get_db, get_persister
from callcoach.core.errors import SessionNotFoundError
from callcoach.models.session import TrainingSession
from callcoach.schemas.analysis import PersistResponse, Report
from callcoach.schemas.session import SessionCreate, SessionCreated, SessionRead
from callcoach.services.analysis.persister import ResultPersister

router = APIRouter()


@router.post("", status_code=201, response_model=SessionCreated)
async def create_session(body: SessionCreate, db: AsyncSession = Depends(get_db)):
    session = TrainingSession(
        user_id=body.user_id,
        scenario_id=body.scenario_id,
        difficulty=body.difficulty,
        transcript_raw=body.transcript_raw,
        transcript_turns=[t.model_dump() for t in body.transcript_turns],
        duration_seconds=body.duration_seconds,
    )
    db.add(session)
    await db.commit()
    return SessionCreated(session_id=session.id)


@router.get("/{session_id}", response_model=SessionRead)
async def read_session(session_id: str, db: AsyncSession = Depends(get_db)):
    session = await db.get(TrainingSession, session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    return SessionRead(
        session_id=session.id,
        user_id=session.user_id,
        scenario_id=session.scenario_id,
        difficulty=session.difficulty,
        duration_seconds=session.duration_seconds,
        analysis_status=session.analysis_status,
        analysis_completed_at=session.analysis_completed_at,
        points_earned=session.points_earned,
        report=session.to_report(),
    )


@router.patch("/{session_id}", response_model=PersistResponse)
async def persist_report(session_id: str, report: Report, persister: ResultPersister = Depends(get_persister)):
    """Write a report into the session. Repeating the call never overwrites the first report."""
    outcome = await persister.persist(session_id, report)
    return PersistResponse(session_id=session_id, newly_scored=outcome.newly_scored, report=outcome.report)
