from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from callcoach.api.deps import get_db, get_fallback, get_orchestrator, get_persister
from callcoach.core.errors import AlreadyScoredError
from callcoach.core.logging import get_logger
from callcoach.models.job import NOT_FOUND, JobStatus
from callcoach.models.session import TrainingSession
from callcoach.schemas.analysis import (
    AnalyzeResponse,
    JobStatusResponse,
    QueueResponse,
    QueueStatsResponse,
    Report,
    ScenarioContext,
    SessionContext,
)
from callcoach.services.analysis.fallback import SynchronousFallback
from callcoach.services.analysis.persister import ResultPersister
from callcoach.services.analysis.transcript import resolve_transcript
from callcoach.services.analytics.stats import stats_service
from callcoach.services.jobs.orchestrator import JobOrchestrator

logger = get_logger("analysis_api")

router = APIRouter()


@router.post("/queue", status_code=202, response_model=QueueResponse)
@router.post("/start", status_code=202, response_model=QueueResponse, include_in_schema=False)
async def queue_analysis(
    body: SessionContext,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    # Rejecting an unusable transcript here keeps it out of the job table
    transcript = resolve_transcript(body.transcript, body.transcript_turns)
    job_id = orchestrator.submit(
        transcript,
        body.scenario_context,
        body.duration_seconds,
        session_id=body.session_id,
    )
    return QueueResponse(job_id=job_id, status=JobStatus.PROCESSING.value)


@router.get("/status/{job_id}", response_model=JobStatusResponse, response_model_exclude_none=True)
async def get_job_status(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    snapshot = orchestrator.status(job_id)
    if snapshot is None:
        # Normal outcome: this process never saw the job, or was recycled since.
        return JobStatusResponse(job_id=job_id, status=NOT_FOUND)
    return JobStatusResponse(
        job_id=job_id,
        status=snapshot.status.value,
        progress_percent=snapshot.progress_percent,
        result=snapshot.result,
        error=snapshot.error.to_dict() if snapshot.error else None,
    )


@router.post("/analyze", response_model=AnalyzeResponse, response_model_exclude_none=True)
async def analyze(body: SessionContext, fallback: SynchronousFallback = Depends(get_fallback)):
    report, newly_scored = await fallback.run(body)
    return AnalyzeResponse(report=report, newly_scored=newly_scored)


@router.get("/results/{session_id}", response_model=Report)
async def get_results(session_id: str, persister: ResultPersister = Depends(get_persister)):
    report = await persister.get_report(session_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Analysis results not found")
    return report


@router.post("/retry/{session_id}", status_code=202, response_model=QueueResponse)
async def retry_analysis(
    session_id: str,
    scenario: Optional[ScenarioContext] = None,
    db: AsyncSession = Depends(get_db),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    session = await db.get(TrainingSession, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Training session not found")
    if session.is_scored:
        raise AlreadyScoredError(session_id)

    transcript = resolve_transcript(session.transcript_raw, session.transcript_turns)
    scenario = scenario or ScenarioContext(difficulty=session.difficulty)
    job_id = orchestrator.submit(transcript, scenario, session.duration_seconds, session_id=session_id)
    logger.info(f"Re-queued analysis for session {session_id} as job {job_id}")
    return QueueResponse(job_id=job_id, status=JobStatus.PROCESSING.value)


@router.get("/queue-stats", response_model=QueueStatsResponse)
async def queue_stats(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    return QueueStatsResponse(**stats_service.compute_stats(orchestrator.store.all()))
