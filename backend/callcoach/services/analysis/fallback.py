from typing import Optional, Tuple
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed
from callcoach.core.config import settings
from callcoach.core.errors import ScoringTimeoutError, UpstreamError
from callcoach.core.logging import get_logger
from callcoach.schemas.analysis import Report, SessionContext
from callcoach.services.analysis.persister import ResultPersister
from callcoach.services.analysis.transcript import resolve_transcript
from callcoach.services.jobs.orchestrator import ScoringFunction

logger = get_logger("sync_fallback")

RETRYABLE_ERRORS = (UpstreamError, ScoringTimeoutError)


class SynchronousFallback:
    """
    Degraded-but-correct path: score a session inline and wait for it.

    Used when a background job's state cannot be retrieved, and as the direct
    synchronous analysis API. Upstream errors and timeouts get one more
    attempt; parse errors are not retried.
    """

    def __init__(
        self,
        scorer: ScoringFunction,
        persister: Optional[ResultPersister] = None,
        max_attempts: int = settings.FALLBACK_MAX_ATTEMPTS,
        retry_wait: float = settings.FALLBACK_RETRY_WAIT_SECONDS,
        min_transcript_chars: int = settings.MIN_TRANSCRIPT_CHARS,
    ):
        self.scorer = scorer
        self.persister = persister
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait
        self.min_transcript_chars = min_transcript_chars

    async def score(self, context: SessionContext) -> Report:
        transcript = resolve_transcript(
            context.transcript, context.transcript_turns, min_chars=self.min_transcript_chars
        )
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_wait),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(f"Retrying scoring for session {context.session_id} (attempt {attempt.retry_state.attempt_number})")
                report = await self.scorer(transcript, context.scenario_context, context.duration_seconds)
        return report

    async def run(self, context: SessionContext) -> Tuple[Report, Optional[bool]]:
        """
        Score inline and, when the context names a session, persist.
        Returns the report that is now authoritative for the session (the
        first one persisted) and whether this call was the one that scored it.
        """
        report = await self.score(context)
        if context.session_id and self.persister is not None:
            outcome = await self.persister.persist(context.session_id, report)
            return outcome.report, outcome.newly_scored
        return report, None
