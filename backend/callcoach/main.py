from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine
from callcoach.core.config import settings
from callcoach.api.api import api_router
from callcoach.core.errors import AlreadyScoredError, AnalysisError, SessionNotFoundError
from callcoach.core.logging import get_logger
from callcoach.db.session import AsyncSessionLocal, build_session_factory, engine as default_engine, init_db
from callcoach.services.analysis.fallback import SynchronousFallback
from callcoach.services.analysis.persister import ResultPersister
from callcoach.services.jobs.orchestrator import JobOrchestrator, ScoringFunction
from callcoach.services.jobs.store import JobStore

logger = get_logger("main")


def create_app(
    scorer: Optional[ScoringFunction] = None,
    engine: Optional[AsyncEngine] = None,
    job_store: Optional[JobStore] = None,
    fallback_retry_wait: float = settings.FALLBACK_RETRY_WAIT_SECONDS,
    create_tables: bool = True,
) -> FastAPI:
    if scorer is None:
        from callcoach.services.scoring.scorer import coaching_scorer
        scorer = coaching_scorer
    engine = engine or default_engine
    session_factory = AsyncSessionLocal if engine is default_engine else build_session_factory(engine)

    persister = ResultPersister(session_factory)
    # The job table lives and dies with this process
    orchestrator = JobOrchestrator(job_store or JobStore(), scorer, persister=persister)
    fallback = SynchronousFallback(scorer, persister=persister, retry_wait=fallback_retry_wait)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if create_tables:
            await init_db(engine)
        yield
        if orchestrator.in_flight:
            logger.info(f"Waiting for {orchestrator.in_flight} scoring job(s) to finish")
        await orchestrator.drain()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory
    app.state.persister = persister
    app.state.orchestrator = orchestrator
    app.state.fallback = fallback

    # Set all CORS enabled origins
    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(AnalysisError)
    async def analysis_error_handler(request: Request, exc: AnalysisError) -> JSONResponse:
        logger.warning(f"{request.method} {request.url.path} -> {exc.kind.value}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(SessionNotFoundError)
    async def session_not_found_handler(request: Request, exc: SessionNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": {"kind": "session_not_found", "message": str(exc), "retryable": False}})

    @app.exception_handler(AlreadyScoredError)
    async def already_scored_handler(request: Request, exc: AlreadyScoredError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"error": {"kind": "already_scored", "message": str(exc), "retryable": False}})

    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/")
    def root():
        return {"service": settings.PROJECT_NAME, "docs": "/docs", "jobs_in_flight": orchestrator.in_flight}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
