"""
Feature provider: turns a student's session history into the raw churn feature vector.

Every vector returned has exactly one value per FactorCategory. Gaps in the
per-session data (unscored sessions, no engagement analysis, no follow-up
messages) fall back to neutral mid-scale values here, before scoring, so the
scoring engine never sees a partial vector.
"""
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models_db import TutoringSession
from ..utils.weights import FactorCategory

NEUTRAL_TEN_POINT = 5.0
NEUTRAL_RATE = 0.5
FRICTION_STATUSES = ("rescheduled", "no_show_student", "no_show_tutor", "cancelled")

def _mean(values: List[float], fallback: float) -> float:
    return sum(values) / len(values) if values else fallback

def features_from_sessions(completed: List[TutoringSession], friction_count: int = 0) -> Dict[str, float]:
    """Raw features from completed sessions ordered by start time. `completed` must be non-empty."""
    n = len(completed)
    scores = [s.overall_session_score if s.overall_session_score is not None else NEUTRAL_TEN_POINT for s in completed]
    engagement = [s.student_engagement_score for s in completed if s.student_engagement_score is not None]
    answered = [bool(s.follow_up_responded) for s in completed if s.follow_up_responded is not None]
    tutors = [s.tutor_id for s in completed]
    switches = sum(1 for prev, cur in zip(tutors, tutors[1:]) if prev != cur)

    return {
        FactorCategory.FIRST_SESSION_SATISFACTION.value: scores[0],
        FactorCategory.SESSIONS_COMPLETED.value: float(n),
        FactorCategory.FOLLOW_UP_BOOKING_RATE.value: sum(1 for s in completed if s.follow_up_booked) / n,
        FactorCategory.AVG_SESSION_SCORE.value: sum(scores) / n,
        FactorCategory.TUTOR_CONSISTENCY.value: float(len(set(tutors))),
        FactorCategory.STUDENT_ENGAGEMENT.value: _mean(engagement, NEUTRAL_TEN_POINT),
        FactorCategory.TUTOR_SWITCH_FREQUENCY.value: switches / (n - 1) if n > 1 else 0.0,
        FactorCategory.SCHEDULING_FRICTION.value: friction_count / (n + friction_count),
        FactorCategory.RESPONSE_RATE.value: _mean([float(a) for a in answered], NEUTRAL_RATE),
    }

class SessionFeatureProvider:
    def __init__(self, db: Session):
        self.db = db

    def completed_sessions(self, student_id: str) -> List[TutoringSession]:
        return (
            self.db.query(TutoringSession)
            .filter(TutoringSession.student_id == student_id, TutoringSession.status == "completed")
            .order_by(TutoringSession.scheduled_start.asc())
            .all()
        )

    def friction_count(self, student_id: str) -> int:
        return (
            self.db.query(func.count(TutoringSession.id))
            .filter(TutoringSession.student_id == student_id, TutoringSession.status.in_(FRICTION_STATUSES))
            .scalar()
        ) or 0

    def features_for(self, student_id: str) -> Optional[Dict[str, float]]:
        """None when the student has no completed sessions yet."""
        completed = self.completed_sessions(student_id)
        if not completed:
            return None
        return features_from_sessions(completed, self.friction_count(student_id))

    def completed_counts(self, student_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(student_ids)
        if not ids:
            return {}
        rows = (
            self.db.query(TutoringSession.student_id, func.count(TutoringSession.id))
            .filter(TutoringSession.student_id.in_(ids), TutoringSession.status == "completed")
            .group_by(TutoringSession.student_id)
            .all()
        )
        return {sid: int(count) for sid, count in rows}
