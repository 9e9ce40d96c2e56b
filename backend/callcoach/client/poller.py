"""
Caller-side driver for post-call analysis.

A PollClient submits a session for background scoring and polls the job. The
job table on the server is process-local, so a "not_found" answer almost
always means the process that owned the job is gone: the client does not keep
polling, it falls back to scoring synchronously and persists that result.

States::

    idle --> polling --> completed | failed | fallback_triggered | cancelled
    idle --> fallback_triggered | failed | cancelled
    fallback_triggered --> completed | failed

fallback_triggered can be entered once per client; across clients the
fallback for a session is single-flight (see SingleFlight).
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import httpx
from pydantic import ValidationError
from callcoach.client.singleflight import SingleFlight
from callcoach.core.config import settings
from callcoach.core.errors import AnalysisError, InsufficientTranscriptError, ParseError, UpstreamError, error_from_kind
from callcoach.core.logging import get_logger
from callcoach.schemas.analysis import Report, SessionContext

logger = get_logger("poll_client")


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    FALLBACK_TRIGGERED = "fallback_triggered"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TRANSITIONS = {
    PollState.IDLE: {PollState.POLLING, PollState.FALLBACK_TRIGGERED, PollState.FAILED, PollState.CANCELLED},
    PollState.POLLING: {PollState.COMPLETED, PollState.FAILED, PollState.FALLBACK_TRIGGERED, PollState.CANCELLED},
    PollState.FALLBACK_TRIGGERED: {PollState.COMPLETED, PollState.FAILED},
    PollState.COMPLETED: set(),
    PollState.FAILED: set(),
    PollState.CANCELLED: set(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class PollOutcome:
    state: PollState
    report: Optional[Report] = None
    error: Optional[AnalysisError] = None
    via: Optional[str] = None  # "job" or "fallback"
    newly_scored: Optional[bool] = None
    fallback_reason: Optional[str] = None
    progress: List[int] = field(default_factory=list)

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable


# Shared by every PollClient in the process so fallbacks are single-flight per session
fallback_flights = SingleFlight()


def _error_from_response(response: httpx.Response) -> AnalysisError:
    try:
        detail = response.json().get("error") or {}
    except ValueError:
        detail = {}
    if isinstance(detail, dict) and detail.get("kind"):
        return error_from_kind(detail["kind"], detail.get("message", ""))
    return UpstreamError(f"HTTP {response.status_code} from {response.request.url.path}")


class PollClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        interval: float = settings.POLL_INTERVAL_SECONDS,
        max_polls: int = settings.POLL_MAX_ATTEMPTS,
        flights: Optional[SingleFlight] = None,
        api_prefix: str = settings.API_V1_STR,
    ):
        self.http = http
        self.interval = interval
        self.max_polls = max_polls
        self.flights = flights if flights is not None else fallback_flights
        self.api_prefix = api_prefix
        self.state = PollState.IDLE
        self.progress: List[int] = []
        self.fallback_task: Optional[asyncio.Task] = None
        self._cancelled = asyncio.Event()

    def _transition(self, new_state: PollState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug(f"{self.state.value} -> {new_state.value}")
        self.state = new_state

    def _url(self, path: str) -> str:
        return f"{self.api_prefix}{path}"

    @staticmethod
    def _payload(context: SessionContext, include_session: bool = True) -> Dict[str, Any]:
        exclude = None if include_session else {"session_id"}
        return context.model_dump(by_alias=True, mode="json", exclude_none=True, exclude=exclude)

    def cancel(self) -> None:
        """
        Stop polling (the owning UI went away). A fallback that is already
        running is left alone and still persists its result.
        """
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def submit(self, context: SessionContext) -> str:
        response = await self.http.post(self._url("/analysis/queue"), json=self._payload(context))
        if response.status_code == 422:
            error = _error_from_response(response)
            if isinstance(error, InsufficientTranscriptError):
                raise error
        response.raise_for_status()
        return response.json()["jobId"]

    async def analyze(self, context: SessionContext) -> PollOutcome:
        """Submit, poll, and fall back if needed. Returns the terminal outcome."""
        if self.cancelled:
            self._transition(PollState.CANCELLED)
            return PollOutcome(PollState.CANCELLED)
        try:
            job_id = await self.submit(context)
        except InsufficientTranscriptError as e:
            self._transition(PollState.FAILED)
            return PollOutcome(PollState.FAILED, error=e)
        except httpx.HTTPError as e:
            return await self._fallback(context, reason=f"submit failed: {e}")
        return await self.poll(job_id, context)

    async def poll(self, job_id: str, context: SessionContext) -> PollOutcome:
        self._transition(PollState.POLLING)
        attempts = 0
        while True:
            if self.cancelled:
                self._transition(PollState.CANCELLED)
                return PollOutcome(PollState.CANCELLED, progress=list(self.progress))

            try:
                response = await self.http.get(self._url(f"/analysis/status/{job_id}"))
            except httpx.HTTPError as e:
                return await self._fallback(context, reason=f"transport error: {e}")

            if response.status_code == 404:
                return await self._fallback(context, reason="job not found")
            if response.status_code >= 400:
                return await self._fallback(context, reason=f"status request returned HTTP {response.status_code}")

            try:
                body = response.json()
                status = body.get("status")
                report = Report.model_validate(body["result"]) if status == "completed" else None
                error = None
                if status == "failed":
                    detail = body.get("error") or {}
                    error = error_from_kind(detail.get("kind", ""), detail.get("message", "Analysis failed"))
            except (ValueError, KeyError, AttributeError, ValidationError) as e:
                # An unreadable body (proxy error page, truncated JSON) counts as a lost job
                logger.warning(f"Malformed status response for job {job_id}: {e}")
                return await self._fallback(context, reason="malformed status response")

            if report is not None:
                return await self._complete_from_job(context, report)

            if error is not None:
                self._transition(PollState.FAILED)
                return PollOutcome(PollState.FAILED, error=error, via="job", progress=list(self.progress))

            if status == "not_found":
                return await self._fallback(context, reason="job not found")

            if body.get("progressPercent") is not None:
                self.progress.append(body["progressPercent"])

            attempts += 1
            if attempts >= self.max_polls:
                return await self._fallback(context, reason=f"still processing after {attempts} polls")

            await self._wait_interval()

    async def _wait_interval(self) -> None:
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass

    async def _complete_from_job(self, context: SessionContext, report: Report) -> PollOutcome:
        newly_scored = None
        try:
            report, newly_scored = await self._persist(context, report)
        except (httpx.HTTPError, AnalysisError) as e:
            # The server persists job results for sessions itself; this write is a second chance.
            logger.warning(f"Persisting job result for session {context.session_id} failed: {e}")
        self._transition(PollState.COMPLETED)
        return PollOutcome(PollState.COMPLETED, report=report, via="job", newly_scored=newly_scored, progress=list(self.progress))

    async def _persist(self, context: SessionContext, report: Report) -> Tuple[Report, Optional[bool]]:
        if not context.session_id:
            return report, None
        response = await self.http.patch(self._url(f"/sessions/{context.session_id}"), json=report.to_wire())
        if response.status_code >= 400:
            raise _error_from_response(response)
        body = response.json()
        return Report.model_validate(body["report"]), body["newlyScored"]

    async def _run_fallback(self, context: SessionContext) -> Tuple[Report, Optional[bool]]:
        response = await self.http.post(self._url("/analysis/analyze"), json=self._payload(context, include_session=False))
        if response.status_code >= 400:
            raise _error_from_response(response)
        try:
            report = Report.model_validate(response.json()["report"])
        except (ValueError, KeyError, TypeError) as e:
            raise ParseError(f"Unreadable analyze response: {e}") from e
        try:
            return await self._persist(context, report)
        except (httpx.HTTPError, AnalysisError) as e:
            # The report is still good; the server job or a later PATCH can persist it.
            logger.warning(f"Persisting fallback result for session {context.session_id} failed: {e}")
            return report, None

    async def _fallback(self, context: SessionContext, reason: str) -> PollOutcome:
        self._transition(PollState.FALLBACK_TRIGGERED)
        logger.info(f"Falling back to synchronous analysis for session {context.session_id}: {reason}")

        key = context.session_id or f"anonymous-{id(self)}"
        self.fallback_task = self.flights.run(key, lambda: self._run_fallback(context))
        try:
            # Shielded: cancelling the caller must not abandon a computation in flight
            report, newly_scored = await asyncio.shield(self.fallback_task)
        except AnalysisError as e:
            self._transition(PollState.FAILED)
            return PollOutcome(PollState.FAILED, error=e, via="fallback", fallback_reason=reason, progress=list(self.progress))
        except httpx.HTTPError as e:
            self._transition(PollState.FAILED)
            return PollOutcome(
                PollState.FAILED,
                error=UpstreamError(f"Fallback request failed: {e}"),
                via="fallback",
                fallback_reason=reason,
                progress=list(self.progress),
            )

        self._transition(PollState.COMPLETED)
        return PollOutcome(
            PollState.COMPLETED,
            report=report,
            via="fallback",
            newly_scored=newly_scored,
            fallback_reason=reason,
            progress=list(self.progress),
        )
