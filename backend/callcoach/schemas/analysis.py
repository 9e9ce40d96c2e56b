from typing import Any, Dict, List, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Wire models speak camelCase, Python code uses snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _coerce_score(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        raise ValueError("score must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"score must be a number, got {value!r}")
    return max(0, min(100, int(round(number))))


# Report

class CategoryScore(CamelModel):
    score: int
    feedback: str = ""
    key_moments: List[Any] = Field(default_factory=list)

    @field_validator("score", mode="before")
    @classmethod
    def clamp_score(cls, v: Any) -> int:
        return _coerce_score(v)


class Strength(CamelModel):
    title: str
    description: str = ""
    quote: Optional[str] = None


class Improvement(CamelModel):
    title: str
    issue: str = ""
    quote: Optional[str] = None
    alternative: Optional[str] = None


class KeyMoment(CamelModel):
    timestamp: Optional[str] = None
    description: Optional[str] = None
    impact: Optional[str] = None
    better_approach: Optional[str] = None


class Report(CamelModel):
    overall_score: int
    category_scores: Dict[str, CategoryScore] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("categoryScores", "categories", "category_scores"),
    )
    strengths: List[Strength] = Field(default_factory=list)
    improvements: List[Improvement] = Field(default_factory=list)
    summary: str = ""
    key_moment: Optional[KeyMoment] = None
    next_steps: List[str] = Field(default_factory=list)

    @field_validator("overall_score", mode="before")
    @classmethod
    def clamp_overall(cls, v: Any) -> int:
        return _coerce_score(v)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# Scenario context

class ScoringCriterion(CamelModel):
    phrase: str
    description: Optional[str] = None
    impact: str = "medium"


class CustomCriterion(CamelModel):
    criterion: str
    category: str = "scenarioSpecific"
    impact: str = "medium"


class ScoringCriteria(CamelModel):
    required_phrases: List[ScoringCriterion] = Field(default_factory=list)
    prohibited_phrases: List[ScoringCriterion] = Field(default_factory=list)
    custom_criteria: List[CustomCriterion] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.required_phrases or self.prohibited_phrases or self.custom_criteria)


class ProductContext(CamelModel):
    packages: List[Dict[str, Any]] = Field(default_factory=list)
    objections: List[Dict[str, Any]] = Field(default_factory=list)
    competitors: List[Dict[str, Any]] = Field(default_factory=list)
    guidelines: List[Dict[str, Any]] = Field(default_factory=list)

    def has_products(self) -> bool:
        return bool(self.packages or self.objections or self.competitors or self.guidelines)


class ScenarioContext(CamelModel):
    name: str = "Customer Service Call"
    difficulty: str = "medium"
    company_name: str = "the company"
    product_context: Optional[ProductContext] = None
    scoring_criteria: Optional[ScoringCriteria] = None
    custom_system_prompt: Optional[str] = None
    custom_user_prompt: Optional[str] = None


# Transcript / session context

class TranscriptTurn(CamelModel):
    role: str
    content: str = ""


class SessionContext(CamelModel):
    """Everything needed to (re)score one training session."""
    session_id: Optional[str] = None
    transcript: Optional[str] = None
    transcript_turns: List[TranscriptTurn] = Field(default_factory=list)
    scenario_context: ScenarioContext = Field(default_factory=ScenarioContext)
    duration_seconds: Optional[float] = None


# HTTP bodies

class QueueResponse(CamelModel):
    job_id: str
    status: str = "processing"


class JobStatusResponse(CamelModel):
    job_id: str
    status: str
    progress_percent: Optional[int] = None
    result: Optional[Report] = None
    error: Optional[Dict[str, Any]] = None


class AnalyzeResponse(CamelModel):
    report: Report
    newly_scored: Optional[bool] = None


class PersistResponse(CamelModel):
    session_id: str
    newly_scored: bool
    report: Report


class QueueStatsResponse(CamelModel):
    total_jobs: int
    processing: int
    completed: int
    failed: int
    failure_kinds: Dict[str, int] = Field(default_factory=dict)
    average_duration_ms: Optional[int] = None
