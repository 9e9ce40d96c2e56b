import asyncio
import httpx
import pytest
import pytest_asyncio
from callcoach.client.poller import InvalidTransition, PollClient, PollState
from callcoach.client.singleflight import SingleFlight
from callcoach.core.errors import InsufficientTranscriptError, ParseError
from callcoach.main import create_app
from callcoach.schemas.analysis import ScenarioContext, SessionContext

from conftest import (
    LONG_TRANSCRIPT,
    FakeScorer,
    ForgetfulStore,
    TickingClock,
    count_awards,
    create_session,
    make_report,
)

INTERVAL = 0.01


class FailingPathTransport(httpx.AsyncBaseTransport):
    """Raises a connection error for requests whose path contains marker."""

    def __init__(self, inner: httpx.AsyncBaseTransport, marker: str):
        self.inner = inner
        self.marker = marker

    async def handle_async_request(self, request):
        if self.marker in request.url.path:
            raise httpx.ConnectError("connection refused", request=request)
        return await self.inner.handle_async_request(request)


async def wait_until(predicate, timeout: float = 2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


def context_for(session_id=None, transcript=LONG_TRANSCRIPT) -> SessionContext:
    return SessionContext(
        session_id=session_id,
        transcript=transcript,
        scenario_context=ScenarioContext(name="Ant inquiry"),
        duration_seconds=95,
    )


@pytest_asyncio.fixture
async def forgetful_app(scorer, engine):
    app = create_app(
        scorer=scorer,
        engine=engine,
        job_store=ForgetfulStore(clock=TickingClock()),
        fallback_retry_wait=0,
        create_tables=False,
    )
    yield app
    await app.state.orchestrator.drain()


# State machine

@pytest.mark.parametrize("path", [
    [PollState.COMPLETED],
    [PollState.POLLING, PollState.POLLING],
    [PollState.FALLBACK_TRIGGERED, PollState.POLLING],
    [PollState.FALLBACK_TRIGGERED, PollState.CANCELLED],
    [PollState.POLLING, PollState.CANCELLED, PollState.FALLBACK_TRIGGERED],
    [PollState.POLLING, PollState.FAILED, PollState.COMPLETED],
])
def test_invalid_transitions(path):
    poller = PollClient(http=None)
    *allowed, forbidden = path
    for state in allowed:
        poller._transition(state)
    with pytest.raises(InvalidTransition):
        poller._transition(forbidden)


def test_fallback_cannot_be_entered_twice():
    poller = PollClient(http=None)
    poller._transition(PollState.FALLBACK_TRIGGERED)
    with pytest.raises(InvalidTransition):
        poller._transition(PollState.FALLBACK_TRIGGERED)


@pytest.mark.asyncio
async def test_single_flight_joins_the_running_call():
    flights = SingleFlight()
    started = []
    gate = asyncio.Event()

    async def work():
        started.append(1)
        await gate.wait()
        return "done"

    first = flights.run("session-1", work)
    second = flights.run("session-1", work)
    other = flights.run("session-2", work)
    assert first is second
    assert other is not first
    assert flights.in_flight("session-1")

    gate.set()
    assert await first == "done"
    await flights.wait_all()
    assert len(started) == 2
    assert not flights.in_flight("session-1")

    # Free again once finished
    third = flights.run("session-1", work)
    assert third is not first
    assert await third == "done"


# Happy path: three processing polls, then completed

@pytest.mark.asyncio
async def test_polls_until_completed_and_persists_once(app, scorer, session_factory):
    session_id = await create_session(session_factory)
    gate = scorer.block()
    status_polls = []

    async def release_after_three_polls(response):
        if "/analysis/status/" in response.request.url.path:
            status_polls.append(response.status_code)
            if len(status_polls) == 3:
                gate.set()

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
        event_hooks={"response": [release_after_three_polls]},
    ) as http:
        poller = PollClient(http, interval=INTERVAL, flights=SingleFlight())
        outcome = await poller.analyze(context_for(session_id))

    await app.state.orchestrator.drain()

    assert outcome.state == PollState.COMPLETED
    assert poller.state == PollState.COMPLETED
    assert outcome.via == "job"
    assert outcome.fallback_reason is None
    assert len(status_polls) == 4
    assert len(outcome.progress) == 3
    assert outcome.progress == sorted(set(outcome.progress))
    assert max(outcome.progress) < 100
    assert scorer.calls == 1

    report = await app.state.persister.get_report(session_id)
    assert report.overall_score == outcome.report.overall_score
    assert await count_awards(session_factory, session_id) == 1


@pytest.mark.asyncio
async def test_job_failure_is_terminal(app, client):
    app.state.orchestrator.scorer.errors.append(ParseError("model answered in prose"))
    poller = PollClient(client, interval=INTERVAL, flights=SingleFlight())

    outcome = await poller.analyze(context_for())
    assert outcome.state == PollState.FAILED
    assert outcome.via == "job"
    assert isinstance(outcome.error, ParseError)
    assert outcome.retryable is False


@pytest.mark.asyncio
async def test_insufficient_transcript_fails_without_scoring(client, scorer):
    poller = PollClient(client, interval=INTERVAL, flights=SingleFlight())

    outcome = await poller.analyze(context_for(transcript="too short"))
    assert outcome.state == PollState.FAILED
    assert isinstance(outcome.error, InsufficientTranscriptError)
    assert scorer.calls == 0


# Lost job table: fall back, first delivery wins

@pytest.mark.asyncio
async def test_not_found_falls_back_and_late_job_loses(forgetful_app, scorer, session_factory):
    scorer.reports = [make_report(55, "late job")]
    job_gate = scorer.block()
    fallback_scorer = FakeScorer(reports=[make_report(90, "fallback")])
    forgetful_app.state.fallback.scorer = fallback_scorer
    session_id = await create_session(session_factory)

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=forgetful_app), base_url="http://test") as http:
        poller = PollClient(http, interval=INTERVAL, flights=SingleFlight())
        outcome = await poller.analyze(context_for(session_id))

        assert outcome.state == PollState.COMPLETED
        assert outcome.via == "fallback"
        assert outcome.fallback_reason == "job not found"
        assert outcome.newly_scored is True
        assert outcome.report.summary == "fallback"

        # The original job finishes afterwards and must not overwrite
        job_gate.set()
        await forgetful_app.state.orchestrator.drain()

        response = await http.get(f"/api/v1/sessions/{session_id}")

    body = response.json()
    assert body["report"]["summary"] == "fallback"
    assert body["report"]["overallScore"] == 90
    assert (scorer.calls, fallback_scorer.calls) == (1, 1)
    assert await count_awards(session_factory, session_id) == 1


@pytest.mark.asyncio
async def test_poll_transport_error_falls_back(app, scorer, session_factory):
    session_id = await create_session(session_factory)
    transport = FailingPathTransport(httpx.ASGITransport(app=app), "/analysis/status/")

    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        poller = PollClient(http, interval=INTERVAL, flights=SingleFlight())
        outcome = await poller.analyze(context_for(session_id))
    await app.state.orchestrator.drain()

    assert outcome.state == PollState.COMPLETED
    assert outcome.via == "fallback"
    assert outcome.fallback_reason.startswith("transport error")
    assert await count_awards(session_factory, session_id) == 1


@pytest.mark.asyncio
async def test_submit_failure_falls_back_from_idle(app, scorer):
    transport = FailingPathTransport(httpx.ASGITransport(app=app), "/analysis/queue")

    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        poller = PollClient(http, interval=INTERVAL, flights=SingleFlight())
        outcome = await poller.analyze(context_for())

    assert outcome.state == PollState.COMPLETED
    assert outcome.via == "fallback"
    assert outcome.fallback_reason.startswith("submit failed")
    assert outcome.newly_scored is None
    assert scorer.calls == 1


@pytest.mark.asyncio
async def test_exhausted_poll_budget_falls_back(app, scorer, session_factory):
    session_id = await create_session(session_factory)
    job_gate = scorer.block()
    app.state.fallback.scorer = FakeScorer()

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        poller = PollClient(http, interval=INTERVAL, max_polls=3, flights=SingleFlight())
        outcome = await poller.analyze(context_for(session_id))

    job_gate.set()
    await app.state.orchestrator.drain()

    assert outcome.state == PollState.COMPLETED
    assert outcome.via == "fallback"
    assert outcome.fallback_reason == "still processing after 3 polls"
    assert len(outcome.progress) == 3
    assert await count_awards(session_factory, session_id) == 1


@pytest.mark.asyncio
async def test_fallback_errors_are_terminal(forgetful_app):
    forgetful_app.state.fallback.scorer = FakeScorer(errors=[ParseError("garbled")])

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=forgetful_app), base_url="http://test") as http:
        poller = PollClient(http, interval=INTERVAL, flights=SingleFlight())
        outcome = await poller.analyze(context_for())

    assert outcome.state == PollState.FAILED
    assert outcome.via == "fallback"
    assert isinstance(outcome.error, ParseError)
    assert outcome.error.message == "garbled"
    assert poller.state == PollState.FAILED


@pytest.mark.asyncio
async def test_concurrent_clients_share_one_fallback(forgetful_app, scorer, session_factory):
    session_id = await create_session(session_factory)
    gate = scorer.block()
    analyze_calls = []

    async def count_analyze(request):
        if request.url.path.endswith("/analysis/analyze"):
            analyze_calls.append(request.url.path)

    flights = SingleFlight()
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=forgetful_app),
        base_url="http://test",
        event_hooks={"request": [count_analyze]},
    ) as http:
        first = PollClient(http, interval=INTERVAL, flights=flights)
        second = PollClient(http, interval=INTERVAL, flights=flights)
        tasks = [
            asyncio.create_task(first.analyze(context_for(session_id))),
            asyncio.create_task(second.analyze(context_for(session_id))),
        ]
        await wait_until(lambda: first.state == second.state == PollState.FALLBACK_TRIGGERED)
        assert first.fallback_task is second.fallback_task

        gate.set()
        outcomes = await asyncio.gather(*tasks)
        await forgetful_app.state.orchestrator.drain()

    assert len(analyze_calls) == 1
    assert [o.state for o in outcomes] == [PollState.COMPLETED, PollState.COMPLETED]
    assert outcomes[0].report.to_wire() == outcomes[1].report.to_wire()
    assert await count_awards(session_factory, session_id) == 1


# Cancellation

@pytest.mark.asyncio
async def test_cancel_stops_polling(app, scorer):
    gate = scorer.block()

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        poller = PollClient(http, interval=5.0, flights=SingleFlight())
        task = asyncio.create_task(poller.analyze(context_for()))
        await wait_until(lambda: len(poller.progress) == 1)

        poller.cancel()
        outcome = await asyncio.wait_for(task, 1.0)

    gate.set()
    await app.state.orchestrator.drain()
    assert outcome.state == PollState.CANCELLED
    assert poller.fallback_task is None


@pytest.mark.asyncio
async def test_cancel_before_start():
    poller = PollClient(http=None)
    poller.cancel()
    outcome = await poller.analyze(context_for())
    assert outcome.state == PollState.CANCELLED


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_abandon_the_fallback(forgetful_app, scorer, session_factory):
    session_id = await create_session(session_factory)
    gate = scorer.block()

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=forgetful_app), base_url="http://test") as http:
        poller = PollClient(http, interval=INTERVAL, flights=SingleFlight())
        task = asyncio.create_task(poller.analyze(context_for(session_id)))
        await wait_until(lambda: poller.fallback_task is not None)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        gate.set()
        report, newly_scored = await poller.fallback_task
        await forgetful_app.state.orchestrator.drain()

    assert report.overall_score == 82
    assert await count_awards(session_factory, session_id) == 1
    assert (await forgetful_app.state.persister.get_report(session_id)) is not None


def scripted_transport(routes, seen=None):
    """MockTransport answering from {(method, path): response or exception}."""

    def handler(request):
        if seen is not None:
            seen.append((request.method, request.url.path))
        answer = routes[(request.method, request.url.path)]
        if isinstance(answer, Exception):
            raise answer
        # Fresh copy per request; canned responses are shared between tests
        return httpx.Response(answer.status_code, headers=answer.headers, content=answer.content)

    return httpx.MockTransport(handler)


QUEUED = httpx.Response(202, json={"jobId": "j1", "status": "processing"})


@pytest.mark.asyncio
@pytest.mark.parametrize("status_response", [
    httpx.Response(200, text="<html>bad gateway page</html>"),
    httpx.Response(200, json={"jobId": "j1", "status": "completed"}),
    httpx.Response(200, json={"jobId": "j1", "status": "completed", "result": []}),
    httpx.Response(200, json=["completed"]),
])
async def test_unreadable_status_body_falls_back(status_response):
    transport = scripted_transport({
        ("POST", "/api/v1/analysis/queue"): QUEUED,
        ("GET", "/api/v1/analysis/status/j1"): status_response,
        ("POST", "/api/v1/analysis/analyze"): httpx.Response(200, json={"report": make_report(77).to_wire()}),
    })

    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        poller = PollClient(http, interval=INTERVAL, flights=SingleFlight())
        outcome = await poller.analyze(context_for())

    assert outcome.state == PollState.COMPLETED
    assert poller.state == PollState.COMPLETED
    assert outcome.via == "fallback"
    assert outcome.fallback_reason == "malformed status response"
    assert outcome.report.overall_score == 77


@pytest.mark.asyncio
@pytest.mark.parametrize("patch_answer", [
    httpx.Response(503, text="Service Unavailable"),
    httpx.ConnectError("connection reset"),
])
async def test_fallback_keeps_its_report_when_the_session_write_fails(patch_answer):
    seen = []
    transport = scripted_transport({
        ("POST", "/api/v1/analysis/queue"): QUEUED,
        ("GET", "/api/v1/analysis/status/j1"): httpx.Response(200, json={"jobId": "j1", "status": "not_found"}),
        ("POST", "/api/v1/analysis/analyze"): httpx.Response(200, json={"report": make_report(88).to_wire()}),
        ("PATCH", "/api/v1/sessions/S9"): patch_answer,
    }, seen)

    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        poller = PollClient(http, interval=INTERVAL, flights=SingleFlight())
        outcome = await poller.analyze(context_for("S9"))

    assert ("PATCH", "/api/v1/sessions/S9") in seen
    assert outcome.state == PollState.COMPLETED
    assert outcome.via == "fallback"
    assert outcome.error is None
    assert outcome.report.overall_score == 88
    assert outcome.newly_scored is None


@pytest.mark.asyncio
async def test_unreadable_analyze_body_fails_with_parse_error():
    transport = scripted_transport({
        ("POST", "/api/v1/analysis/queue"): QUEUED,
        ("GET", "/api/v1/analysis/status/j1"): httpx.Response(404),
        ("POST", "/api/v1/analysis/analyze"): httpx.Response(200, text="<html>oops</html>"),
    })

    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        poller = PollClient(http, interval=INTERVAL, flights=SingleFlight())
        outcome = await poller.analyze(context_for())

    assert outcome.state == PollState.FAILED
    assert isinstance(outcome.error, ParseError)
    assert outcome.fallback_reason == "job not found"
