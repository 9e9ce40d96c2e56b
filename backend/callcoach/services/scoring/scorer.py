import asyncio
from typing import Optional
from pydantic import ValidationError
from callcoach.core.config import settings
from callcoach.core.errors import ParseError, ScoringTimeoutError
from callcoach.core.logging import get_logger
from callcoach.schemas.analysis import Report, ScenarioContext
from callcoach.services.llm.client import LLMClient, llm_client
from callcoach.services.scoring.prompts import CoachingPromptBuilder, prompt_builder

logger = get_logger("coaching_scorer")

class CoachingScorer:
    """
    transcript + scenario + duration -> Report.

    No side effects of its own. Raises UpstreamError, ParseError or
    ScoringTimeoutError; callers decide about retries.
    """

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        prompts: Optional[CoachingPromptBuilder] = None,
        timeout: float = settings.LLM_TIMEOUT,
    ):
        self.llm = llm or llm_client
        self.prompts = prompts or prompt_builder
        self.timeout = timeout

    async def __call__(self, transcript: str, scenario: ScenarioContext, duration_seconds: Optional[float] = None) -> Report:
        system, user = self.prompts.build(transcript, scenario, duration_seconds)
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]

        try:
            payload = await asyncio.wait_for(
                self.llm.achat_completion(messages, expect_json=True),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Scoring call exceeded {self.timeout}s")
            raise ScoringTimeoutError(f"Scoring call exceeded {self.timeout}s") from e

        return self.parse_report(payload)

    @staticmethod
    def parse_report(payload) -> Report:
        if not isinstance(payload, dict):
            raise ParseError(f"Expected a JSON object, got {type(payload).__name__}")
        try:
            return Report.model_validate(payload)
        except ValidationError as e:
            logger.error(f"Scoring output does not match the report schema: {e}")
            raise ParseError(f"Scoring output does not match the report schema: {e.error_count()} error(s)") from e

coaching_scorer = CoachingScorer()
