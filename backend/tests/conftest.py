"""
Shared fixtures.

DATABASE_URL must point at a throwaway SQLite file before churn_api is
imported, since the engine is built at import time.
"""
import os
import tempfile
from datetime import date, datetime, timedelta, timezone

import pytest

_tmpdir = tempfile.mkdtemp(prefix="churn-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmpdir, 'test.db')}"

from churn_api.database import Base, SessionLocal, engine, init_db  # noqa: E402
from churn_api.models_db import Student, StudentChurnReason, TutoringSession  # noqa: E402
from churn_api.utils.weights import CATEGORIES  # noqa: E402

TODAY = date.today()


# =============================================================================
# FEATURE VECTORS
# =============================================================================

# raw features that score high risk under the default weights
RISKY_FEATURES = {
    "first_session_satisfaction": 3.0,
    "sessions_completed": 2,
    "follow_up_booking_rate": 0.0,
    "avg_session_score": 3.0,
    "tutor_consistency": 4,
    "student_engagement": 2.0,
    "tutor_switch_frequency": 1.0,
    "scheduling_friction": 0.8,
    "response_rate": 0.1,
}

# raw features that score low risk under the default weights
SAFE_FEATURES = {
    "first_session_satisfaction": 9.5,
    "sessions_completed": 25,
    "follow_up_booking_rate": 1.0,
    "avg_session_score": 9.0,
    "tutor_consistency": 1,
    "student_engagement": 9.0,
    "tutor_switch_frequency": 0.0,
    "scheduling_friction": 0.0,
    "response_rate": 1.0,
}

@pytest.fixture
def risky_features():
    return dict(RISKY_FEATURES)


@pytest.fixture
def safe_features():
    return dict(SAFE_FEATURES)


@pytest.fixture
def uniform_weights():
    return {c.value: 1.0 / len(CATEGORIES) for c in CATEGORIES}


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def db():
    """Fresh schema per test on the temporary SQLite file."""
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def add_student(db, user_id, status="active", enrolled_days_ago=200, churned_days_ago=None,
                survey=None, reasons=(), sessions=()):
    """
    Insert a student with completed sessions.

    `sessions` is a list of (tutor_id, score, engagement, follow_up_booked) tuples,
    one per completed session in chronological order.
    """
    student = Student(
        user_id=user_id,
        name=user_id.title(),
        enrolled_since=TODAY - timedelta(days=enrolled_days_ago),
        status=status,
        churned_date=TODAY - timedelta(days=churned_days_ago) if churned_days_ago is not None else None,
        churn_survey_response=survey,
    )
    db.add(student)
    start = datetime(2026, 1, 5, 16, 0, tzinfo=timezone.utc)
    for i, (tutor, score, engagement, booked) in enumerate(sessions):
        db.add(TutoringSession(
            student_id=user_id,
            tutor_id=tutor,
            scheduled_start=start + timedelta(days=7 * i),
            status="completed",
            overall_session_score=score,
            student_engagement_score=engagement,
            follow_up_booked=booked,
            follow_up_responded=booked,
        ))
    for reason in reasons:
        db.add(StudentChurnReason(student_id=user_id, reason=reason))
    db.commit()
    return student


POOR_SESSIONS = [("t1", 3.0, 2.0, False), ("t2", 4.0, 3.0, False), ("t3", 3.5, 2.5, False)]
GOOD_SESSIONS = [("t1", 9.0, 9.0, True)] * 6


@pytest.fixture
def seeded_db(db):
    """
    A small cohort:
      - churned-poor: churned after poor sessions (caught by the defaults)
      - active-good:  long-tenured, good sessions
      - churned-good: churned despite good sessions (missed by the defaults)
      - new-active:   active but under the tenure threshold
      - paused:       outcome not known
      - no-sessions:  active, never completed a session
    """
    add_student(db, "churned-poor", status="churned", churned_days_ago=10,
                survey="The first tutor did not explain things well.",
                reasons=["poor_first_session", "tutor_mismatch"], sessions=POOR_SESSIONS)
    add_student(db, "active-good", status="active", enrolled_days_ago=200, sessions=GOOD_SESSIONS)
    add_student(db, "churned-good", status="churned", churned_days_ago=30,
                reasons=["price"], sessions=GOOD_SESSIONS)
    add_student(db, "new-active", status="active", enrolled_days_ago=20, sessions=GOOD_SESSIONS)
    add_student(db, "paused", status="paused", sessions=GOOD_SESSIONS)
    add_student(db, "no-sessions", status="active", enrolled_days_ago=120)
    return db
