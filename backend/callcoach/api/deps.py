from typing import AsyncIterator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession
from callcoach.services.analysis.fallback import SynchronousFallback
from callcoach.services.analysis.persister import ResultPersister
from callcoach.services.jobs.orchestrator import JobOrchestrator


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_fallback(request: Request) -> SynchronousFallback:
    return request.app.state.fallback


def get_persister(request: Request) -> ResultPersister:
    return request.app.state.persister


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as db:
        yield db
