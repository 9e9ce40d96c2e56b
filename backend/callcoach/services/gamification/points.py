from datetime import timedelta
from typing import Dict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from callcoach.core.logging import get_logger
from callcoach.models.award import PointsAward
from callcoach.models.session import TrainingSession
from callcoach.schemas.analysis import Report

logger = get_logger("points")

SESSION_COMPLETE = 10
# (minimum score, bonus), highest first
SCORE_BONUS = [(90, 50), (80, 30), (70, 20), (60, 10)]
DIFFICULTY_MULTIPLIER: Dict[str, float] = {"easy": 1.0, "medium": 1.5, "hard": 2.0}
STREAK_BONUS: Dict[int, int] = {3: 25, 7: 75, 14: 150, 30: 500, 90: 2000}


def calculate_points(score: int, difficulty: str = "medium", streak: int = 0) -> int:
    points = SESSION_COMPLETE

    for threshold, bonus in SCORE_BONUS:
        if score >= threshold:
            points += bonus
            break

    multiplier = DIFFICULTY_MULTIPLIER.get((difficulty or "").lower(), 1.0)
    points = int(round(points * multiplier))

    streak_bonuses = [bonus for days, bonus in STREAK_BONUS.items() if streak >= days]
    if streak_bonuses:
        points += max(streak_bonuses)

    return points


async def current_streak(db: AsyncSession, session: TrainingSession) -> int:
    """
    Consecutive days, ending on the day of this session, on which the user
    finished a scored session. The session being scored counts for its own day.
    """
    result = await db.execute(
        select(TrainingSession.created_at).where(
            TrainingSession.user_id == session.user_id,
            TrainingSession.id != session.id,
            TrainingSession.overall_score.is_not(None),
        )
    )
    scored_days = {created_at.date() for created_at in result.scalars() if created_at is not None}

    day = session.created_at.date()
    streak = 1
    while day - timedelta(days=streak) in scored_days:
        streak += 1
    return streak


async def award_session_points(db: AsyncSession, session: TrainingSession, report: Report) -> None:
    """
    Scored hook: runs inside the transaction that set overall_score, and only
    when that write flipped the score from NULL.
    """
    streak = await current_streak(db, session)
    points = calculate_points(report.overall_score, session.difficulty, streak)
    db.add(PointsAward(session_id=session.id, user_id=session.user_id, points=points))
    session.points_earned = points
    logger.info(f"Awarded {points} points to user {session.user_id} for session {session.id} (streak {streak})")
