import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from sqlalchemy import String, Text, Integer, Float, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from callcoach.db.base import Base
from callcoach.models.award import PointsAward
from callcoach.schemas.analysis import Report

class TrainingSession(Base):
    __tablename__ = "training_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: uuid.uuid4().hex)
    user_id: Mapped[str] = mapped_column(String, index=True)
    scenario_id: Mapped[Optional[str]] = mapped_column(String, index=True)
    difficulty: Mapped[str] = mapped_column(String, default="medium")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    # Call capture
    transcript_raw: Mapped[Optional[str]] = mapped_column(Text)
    transcript_turns: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)

    # Report fields. overall_score stays NULL until the first report lands;
    # it is the only "already scored" signal.
    overall_score: Mapped[Optional[int]] = mapped_column(Integer)
    category_scores: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    strengths: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)
    improvements: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    key_moment: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    next_steps: Mapped[Optional[List[str]]] = mapped_column(JSON)

    analysis_status: Mapped[str] = mapped_column(String, default="pending") # pending, completed
    analysis_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    points_earned: Mapped[Optional[int]] = mapped_column(Integer)

    award: Mapped[Optional[PointsAward]] = relationship("PointsAward", back_populates="session", uselist=False)

    @property
    def is_scored(self) -> bool:
        return self.overall_score is not None

    def to_report(self) -> Optional[Report]:
        if self.overall_score is None:
            return None
        return Report.model_validate({
            "overallScore": self.overall_score,
            "categoryScores": self.category_scores or {},
            "strengths": self.strengths or [],
            "improvements": self.improvements or [],
            "summary": self.summary or "",
            "keyMoment": self.key_moment,
            "nextSteps": self.next_steps or [],
        })

    @staticmethod
    def report_columns(report: Report) -> Dict[str, Any]:
        """Column values written when a report is persisted."""
        wire = report.to_wire()
        return {
            "overall_score": report.overall_score,
            "category_scores": wire["categoryScores"],
            "strengths": wire["strengths"],
            "improvements": wire["improvements"],
            "summary": report.summary,
            "key_moment": wire["keyMoment"],
            "next_steps": list(report.next_steps),
        }
