"""
Tests for deriving raw churn features from session history.
"""
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from churn_api.models_db import TutoringSession
from churn_api.services.feature_provider import SessionFeatureProvider, features_from_sessions
from churn_api.utils.weights import CATEGORIES

from conftest import POOR_SESSIONS, add_student


def session(tutor="t1", score=8.0, engagement=7.0, booked=True, responded=True):
    return SimpleNamespace(
        tutor_id=tutor,
        overall_session_score=score,
        student_engagement_score=engagement,
        follow_up_booked=booked,
        follow_up_responded=responded,
    )


# =============================================================================
# PURE DERIVATION
# =============================================================================

class TestFeaturesFromSessions:

    def test_every_category_present(self):
        features = features_from_sessions([session()])

        assert set(features) == {c.value for c in CATEGORIES}

    def test_values(self):
        completed = [
            session("t1", 6.0, 5.0, True, True),
            session("t2", 8.0, None, False, None),
            session("t2", 10.0, 9.0, True, False),
            session("t1", None, 7.0, False, None),
        ]

        f = features_from_sessions(completed, friction_count=1)

        assert f["first_session_satisfaction"] == 6.0
        assert f["sessions_completed"] == 4.0
        assert f["follow_up_booking_rate"] == 0.5
        assert f["avg_session_score"] == pytest.approx((6 + 8 + 10 + 5) / 4)   # unscored counts as 5
        assert f["tutor_consistency"] == 2.0
        assert f["student_engagement"] == pytest.approx(7.0)
        assert f["tutor_switch_frequency"] == pytest.approx(2 / 3)
        assert f["scheduling_friction"] == pytest.approx(1 / 5)
        assert f["response_rate"] == 0.5

    def test_gaps_fall_back_to_neutral(self):
        f = features_from_sessions([session(score=None, engagement=None, responded=None)])

        assert f["first_session_satisfaction"] == 5.0
        assert f["student_engagement"] == 5.0
        assert f["response_rate"] == 0.5
        assert f["tutor_switch_frequency"] == 0.0


# =============================================================================
# DATABASE-BACKED PROVIDER
# =============================================================================

class TestSessionFeatureProvider:

    def test_no_sessions_returns_none(self, db):
        add_student(db, "fresh")

        assert SessionFeatureProvider(db).features_for("fresh") is None

    def test_features_from_stored_sessions(self, db):
        add_student(db, "poor", sessions=POOR_SESSIONS)
        db.add(TutoringSession(student_id="poor", tutor_id="t1", status="no_show_student",
                               scheduled_start=datetime(2026, 2, 1, tzinfo=timezone.utc)))
        db.add(TutoringSession(student_id="poor", tutor_id="t1", status="scheduled",
                               scheduled_start=datetime(2026, 9, 1, tzinfo=timezone.utc)))
        db.commit()

        f = SessionFeatureProvider(db).features_for("poor")

        assert f["first_session_satisfaction"] == 3.0
        assert f["sessions_completed"] == 3.0
        assert f["tutor_consistency"] == 3.0
        assert f["tutor_switch_frequency"] == 1.0
        assert f["scheduling_friction"] == pytest.approx(1 / 4)
        assert f["response_rate"] == 0.0

    def test_completed_counts(self, seeded_db):
        counts = SessionFeatureProvider(seeded_db).completed_counts(["churned-poor", "active-good", "no-sessions"])

        assert counts == {"churned-poor": 3, "active-good": 6}

    def test_completed_counts_empty(self, db):
        assert SessionFeatureProvider(db).completed_counts([]) == {}
