"""Shared fixtures: an app wired to a fake scorer and a throwaway SQLite file."""
import asyncio
import os
from typing import List, Optional

# Settings are read at import time
os.environ.setdefault("LLM_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["LOG_FILE"] = ""

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import func, select  # noqa: E402

from callcoach.db.session import build_engine, build_session_factory, init_db  # noqa: E402
from callcoach.main import create_app  # noqa: E402
from callcoach.models.award import PointsAward  # noqa: E402
from callcoach.models.session import TrainingSession  # noqa: E402
from callcoach.schemas.analysis import Report  # noqa: E402
from callcoach.services.jobs.store import JobStore  # noqa: E402

LONG_TRANSCRIPT = (
    "CSR: Thanks for calling Acme Pest, this is Sam. How can I help today?\n"
    "Customer: I keep seeing ants in the kitchen and I want them gone."
)

TURNS = [
    {"role": "agent", "content": "Hi, I have ants all over my kitchen counters."},
    {"role": "user", "content": "Sorry to hear that! We can get a technician out Thursday morning, does that work?"},
]


def make_report(score: int = 82, summary: str = "Solid call with a clear booking attempt.") -> Report:
    return Report.model_validate({
        "overallScore": score,
        "categoryScores": {
            "empathyRapport": {"score": score, "feedback": "Warm opening."},
            "bookingConversion": {"score": score, "feedback": "Offered a concrete slot."},
        },
        "strengths": [{"title": "Booking", "description": "Asked for the appointment", "quote": "Thursday morning"}],
        "improvements": [{"title": "Value", "issue": "No recurring plan offered"}],
        "summary": summary,
        "nextSteps": ["Offer the quarterly plan"],
    })


class FakeScorer:
    """
    Stands in for CoachingScorer. Call N returns reports[N] (the last one is
    reused) unless errors still has entries, which are raised first. While
    hold is set to an unset Event, calls wait on it.
    """

    def __init__(self, reports: Optional[List[Report]] = None, errors: Optional[List[Exception]] = None):
        self.reports = reports or [make_report()]
        self.errors = list(errors or [])
        self.calls = 0
        self.hold: Optional[asyncio.Event] = None

    def block(self) -> asyncio.Event:
        self.hold = asyncio.Event()
        return self.hold

    def release(self) -> None:
        if self.hold is not None:
            self.hold.set()

    async def __call__(self, transcript, scenario, duration_seconds=None) -> Report:
        index = self.calls
        self.calls += 1
        if self.hold is not None:
            await self.hold.wait()
        if self.errors:
            raise self.errors.pop(0)
        return self.reports[min(index, len(self.reports) - 1)]


class TickingClock:
    """Monotonic fake clock that advances a fixed step on every read."""

    def __init__(self, step: float = 1.0):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


class ForgetfulStore(JobStore):
    """A job table that loses every record, as after a process recycle."""

    def get(self, job_id):
        return None


@pytest.fixture
def scorer():
    return FakeScorer()


@pytest.fixture
def job_store():
    return JobStore(clock=TickingClock())


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'callcoach.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def app(scorer, engine, job_store):
    return create_app(
        scorer=scorer,
        engine=engine,
        job_store=job_store,
        fallback_retry_wait=0,
        create_tables=False,
    )


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    await app.state.orchestrator.drain()


async def create_session(session_factory, **overrides) -> str:
    fields = {
        "user_id": "user-1",
        "scenario_id": "scenario-1",
        "difficulty": "medium",
        "transcript_raw": LONG_TRANSCRIPT,
        "duration_seconds": 95.0,
    }
    fields.update(overrides)
    async with session_factory() as db:
        session = TrainingSession(**fields)
        db.add(session)
        await db.commit()
        return session.id


async def count_awards(session_factory, session_id: str) -> int:
    async with session_factory() as db:
        result = await db.execute(
            select(func.count()).select_from(PointsAward).where(PointsAward.session_id == session_id)
        )
        return result.scalar_one()
