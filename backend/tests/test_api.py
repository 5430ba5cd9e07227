"""
HTTP tests through FastAPI's TestClient.

The app opens its own sessions on the same SQLite file, so everything the
seeded_db fixture commits is visible to it.
"""
import pandas as pd
import pytest
from fastapi.testclient import TestClient

from churn_api.main import app, cache
from churn_api.services.churn_service import ChurnService
from churn_api.utils.weights import CATEGORIES, DEFAULT_WEIGHTS

from conftest import RISKY_FEATURES, SAFE_FEATURES

SESSIONS_ONLY = {c.value: (1.0 if c.value == "sessions_completed" else 0.0) for c in CATEGORIES}


@pytest.fixture
def client(seeded_db):
    cache.clear()
    with TestClient(app) as c:
        yield c
    cache.clear()


# =============================================================================
# WEIGHTS
# =============================================================================

class TestWeightsEndpoints:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"

    def test_current_weights_default(self, client):
        body = client.get("/weights").json()

        assert body["version"] == 0
        assert body["weights"] == DEFAULT_WEIGHTS.to_dict()

    def test_validate_reports_sum(self, client):
        body = client.post("/weights/validate", json={"weights": {c.value: 0.2 for c in CATEGORIES}}).json()

        assert body["is_valid"] is False
        assert body["sum"] == pytest.approx(1.8)
        assert body["errors"]

    def test_validate_reports_shape_problems(self, client):
        body = client.post("/weights/validate", json={"weights": {"first_session_satisfaction": 1.0}}).json()

        assert body["is_valid"] is False
        assert any("missing" in e for e in body["errors"])

    def test_update_rejects_invalid_sum(self, client):
        r = client.put("/weights", json={
            "weights": {c.value: 0.2 for c in CATEGORIES}, "changed_by": "ops", "change_reason": "bad",
        })

        assert r.status_code == 400
        assert isinstance(r.json()["detail"], list)

    def test_update_and_history(self, client):
        r = client.put("/weights", json={
            "weights": SESSIONS_ONLY, "changed_by": "ops", "change_reason": "sessions only",
        })
        assert r.status_code == 200
        update = r.json()
        assert update["version"] == 1

        assert client.get("/weights").json()["weights"]["sessions_completed"] == 1.0

        history = client.get("/weights/history").json()
        assert len(history) == 1
        assert history[0]["delta"] == pytest.approx(update["delta"])

        detail = client.get(f"/weights/history/{update['history_id']}").json()
        assert detail["old_weights"] == DEFAULT_WEIGHTS.to_dict()
        assert detail["new_weights"]["sessions_completed"] == 1.0

    def test_missing_history_entry(self, client):
        assert client.get("/weights/history/nope").status_code == 404


# =============================================================================
# SCORING
# =============================================================================

class TestScoringEndpoints:

    def test_student_risk(self, client):
        body = client.get("/students/churned-poor/risk").json()

        assert body["risk_level"] == "high"
        assert len(body["factors"]) == len(CATEGORIES)
        contributions = [f["contribution_to_risk"] for f in body["risk_factors"]]
        assert contributions == sorted(contributions, reverse=True)

    def test_student_without_sessions(self, client):
        body = client.get("/students/no-sessions/risk").json()

        assert body["risk_score"] == pytest.approx(0.5)
        assert body["explanation"]

    def test_unknown_student(self, client):
        assert client.get("/students/ghost/risk").status_code == 404

    def test_score_rows(self, client):
        r = client.post("/score", json={"rows": [
            {**RISKY_FEATURES, "student_id": "a"}, {**SAFE_FEATURES, "student_id": "b"},
        ]})

        items = r.json()["items"]
        assert [i["student_id"] for i in items] == ["a", "b"]
        assert [i["risk_level"] for i in items] == ["high", "low"]

    def test_score_with_invalid_weights(self, client):
        r = client.post("/score", json={"rows": [RISKY_FEATURES], "weights": {c.value: 0.5 for c in CATEGORIES}})

        assert r.status_code == 400

    def test_score_missing_feature(self, client):
        row = dict(RISKY_FEATURES)
        del row["response_rate"]

        assert client.post("/score", json={"rows": [row]}).status_code == 422


# =============================================================================
# BACKTEST
# =============================================================================

class TestBacktestEndpoints:

    COHORT = [
        {**RISKY_FEATURES, "actual_outcome": "churned", "tenure_days": 200},
        {**SAFE_FEATURES, "actual_outcome": "churned", "tenure_days": 200},
        {**SAFE_FEATURES, "actual_outcome": "active", "tenure_days": 200},
        {**SAFE_FEATURES, "actual_outcome": "active", "tenure_days": 5},
    ]

    def test_inline_backtest(self, client):
        r = client.post("/backtest", json={"cohort": self.COHORT, "weights": DEFAULT_WEIGHTS.to_dict()})

        m = r.json()["metrics"]
        assert m["total_predictions"] == 3
        assert m["excluded_ineligible"] == 1
        assert m["false_negatives"] == 1
        assert r.json()["comparison"] is None

    def test_inline_backtest_with_baseline(self, client):
        r = client.post("/backtest", json={
            "cohort": self.COHORT, "weights": SESSIONS_ONLY, "baseline_weights": DEFAULT_WEIGHTS.to_dict(),
        })

        comparison = r.json()["comparison"]
        assert comparison["recommendation"] == "hold"
        assert comparison["validation"]["is_valid"] is True

    def test_csv_backtest(self, client):
        csv = pd.DataFrame(self.COHORT).to_csv(index=False).encode()

        r = client.post("/backtest_csv", files={"file": ("cohort.csv", csv, "text/csv")})

        assert r.status_code == 200
        assert r.json()["total_predictions"] == 3

    def test_csv_missing_column(self, client):
        csv = pd.DataFrame(self.COHORT).drop(columns=["actual_outcome"]).to_csv(index=False).encode()

        r = client.post("/backtest_csv", files={"file": ("cohort.csv", csv, "text/csv")})

        assert r.status_code == 400

    def test_simulate_against_stored_cohort(self, client):
        body = client.post("/simulate", json={"weights": SESSIONS_ONLY}).json()

        assert body["recommendation"] == "apply"
        assert body["false_negative_delta"] == -1
        assert body["before"]["excluded_ineligible"] == 3

    def test_simulate_flags_invalid_sum(self, client):
        body = client.post("/simulate", json={"weights": {c.value: 0.5 for c in CATEGORIES}}).json()

        assert body["validation"]["is_valid"] is False


# =============================================================================
# CASE STUDIES & LEARNING EVENTS
# =============================================================================

class TestLearningEndpoints:

    def test_case_study(self, client):
        body = client.post("/case-studies/churned-good").json()

        assert body["was_correct"] is False
        assert sum(body["suggested_weights"].values()) == pytest.approx(1.0)
        assert body["factor_analysis"]

    def test_case_study_unknown_student(self, client):
        assert client.post("/case-studies/ghost").status_code == 404

    def test_apply_case_study(self, client):
        suggested = client.post("/case-studies/churned-good").json()["suggested_weights"]

        r = client.post("/case-studies/churned-good/apply", json={
            "weights": suggested, "changed_by": "ops", "change_reason": "missed churn",
        })

        assert r.status_code == 200
        history = client.get("/weights/history").json()
        assert history[0]["case_study_student_id"] == "churned-good"

    def test_record_learning_event(self, client):
        r = client.post("/learning-events/churned-poor", json={})

        assert r.status_code == 201
        assert r.json()["was_prediction_correct"] is True
        assert r.json()["is_correction"] is False

    def test_duplicate_learning_event(self, client):
        client.post("/learning-events/churned-good", json={})

        assert client.post("/learning-events/churned-good", json={}).status_code == 409
        r = client.post("/learning-events/churned-good", json={"is_correction": True})
        assert r.status_code == 201
        assert len(client.get("/learning-events").json()) == 2

    def test_feed_fields(self, client):
        client.post("/learning-events/churned-good", json={})
        suggested = client.post("/case-studies/churned-good").json()["suggested_weights"]
        client.post("/case-studies/churned-good/apply", json={
            "weights": suggested, "changed_by": "ops", "change_reason": "missed churn",
        })

        event = client.get("/learning-events").json()[0]

        assert event["student_name"] == "Churned-Good"
        assert event["weights_version"] == 0
        assert event["version"] == 1
        assert event["what_system_learned"] == "missed churn"
        assert event["weight_change_summary"]

    def test_student_learning_events(self, client):
        client.post("/learning-events/churned-poor", json={})
        client.post("/learning-events/churned-good", json={})

        body = client.get("/learning-events/churned-poor").json()

        assert [e["student_id"] for e in body] == ["churned-poor"]
        assert client.get("/learning-events/active-good").json() == []
        assert client.get("/learning-events/ghost").status_code == 404

    def test_stale_weight_version_conflict(self, client, monkeypatch):
        client.put("/weights", json={"weights": SESSIONS_ONLY, "changed_by": "ops", "change_reason": "one"})
        monkeypatch.setattr(ChurnService, "current_version", lambda self: 0)

        r = client.put("/weights", json={
            "weights": DEFAULT_WEIGHTS.to_dict(), "changed_by": "ops", "change_reason": "stale",
        })

        assert r.status_code == 409

    def test_outcome_not_known(self, client):
        assert client.post("/learning-events/new-active", json={}).status_code == 409

    def test_recent_churns(self, client):
        body = client.get("/churns/recent").json()

        assert [c["user_id"] for c in body] == ["churned-poor", "churned-good"]
        assert body[0]["sessions_completed"] == 3
        assert body[0]["predicted_risk"]["risk_level"] == "high"
