from datetime import datetime, timezone
from sqlalchemy import String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from callcoach.db.base import Base

class PointsAward(Base):
    __tablename__ = "points_awards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # One award per session, ever
    session_id: Mapped[str] = mapped_column(String, ForeignKey("training_sessions.id"), unique=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    points: Mapped[int] = mapped_column(Integer)
    awarded_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    session: Mapped["TrainingSession"] = relationship("TrainingSession", back_populates="award")
