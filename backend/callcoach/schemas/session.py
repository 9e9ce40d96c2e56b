from datetime import datetime
from typing import List, Optional
from pydantic import Field
from callcoach.schemas.analysis import CamelModel, Report, TranscriptTurn


class SessionCreate(CamelModel):
    user_id: str
    scenario_id: Optional[str] = None
    difficulty: str = "medium"
    transcript_raw: Optional[str] = None
    transcript_turns: List[TranscriptTurn] = Field(default_factory=list)
    duration_seconds: Optional[float] = None


class SessionCreated(CamelModel):
    session_id: str


class SessionRead(CamelModel):
    session_id: str
    user_id: str
    scenario_id: Optional[str] = None
    difficulty: str
    duration_seconds: Optional[float] = None
    analysis_status: str
    analysis_completed_at: Optional[datetime] = None
    points_earned: Optional[int] = None
    report: Optional[Report] = None
