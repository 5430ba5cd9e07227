"""
Per-category transforms from a raw feature value to a 0-1 risk score.

Every normalizer is monotonic in its raw value and works on scalars as well as
numpy arrays / pandas Series, so the same table serves single-student scoring
and vectorised cohort backtests.
"""
from typing import Callable, Dict

import numpy as np

from .weights import FactorCategory

Normalizer = Callable[[object], np.ndarray]

FIRST_SESSION_PENALTY_BELOW = 6.5    # first sessions scored below this are penalised 1.5x
SESSION_COUNT_SATURATION = 20        # 20+ completed sessions means no count-based risk
CONSISTENT_TUTOR_COUNT = 2
TUTOR_COUNT_STEP = 0.15

def _unit(x) -> np.ndarray:
    return np.clip(x, 0.0, 1.0)

def _inverted_ten_point(raw) -> np.ndarray:
    return _unit(1.0 - np.asarray(raw, dtype=float) / 10.0)

def first_session_satisfaction(raw) -> np.ndarray:
    score = np.asarray(raw, dtype=float)
    risk = 1.0 - score / 10.0
    return _unit(np.where(score < FIRST_SESSION_PENALTY_BELOW, np.minimum(1.0, risk * 1.5), risk))

def sessions_completed(raw) -> np.ndarray:
    count = np.asarray(raw, dtype=float)
    return _unit(1.0 - np.minimum(count / SESSION_COUNT_SATURATION, 1.0))

def follow_up_booking_rate(raw) -> np.ndarray:
    return _unit(1.0 - np.asarray(raw, dtype=float))

def tutor_consistency(raw) -> np.ndarray:
    # raw is the number of distinct tutors seen
    extra = np.maximum(np.asarray(raw, dtype=float) - CONSISTENT_TUTOR_COUNT, 0.0)
    return _unit(extra * TUTOR_COUNT_STEP)

def _rate(raw) -> np.ndarray:
    return _unit(np.asarray(raw, dtype=float))

DEFAULT_NORMALIZERS: Dict[FactorCategory, Normalizer] = {
    FactorCategory.FIRST_SESSION_SATISFACTION: first_session_satisfaction,
    FactorCategory.SESSIONS_COMPLETED: sessions_completed,
    FactorCategory.FOLLOW_UP_BOOKING_RATE: follow_up_booking_rate,
    FactorCategory.AVG_SESSION_SCORE: _inverted_ten_point,
    FactorCategory.TUTOR_CONSISTENCY: tutor_consistency,
    FactorCategory.STUDENT_ENGAGEMENT: _inverted_ten_point,
    FactorCategory.TUTOR_SWITCH_FREQUENCY: _rate,
    FactorCategory.SCHEDULING_FRICTION: _rate,
    FactorCategory.RESPONSE_RATE: follow_up_booking_rate,
}

# "negative": a higher raw value lowers risk. "positive": a higher raw value raises risk.
IMPACT_DIRECTION: Dict[FactorCategory, str] = {
    FactorCategory.FIRST_SESSION_SATISFACTION: "negative",
    FactorCategory.SESSIONS_COMPLETED: "negative",
    FactorCategory.FOLLOW_UP_BOOKING_RATE: "negative",
    FactorCategory.AVG_SESSION_SCORE: "negative",
    FactorCategory.TUTOR_CONSISTENCY: "positive",
    FactorCategory.STUDENT_ENGAGEMENT: "negative",
    FactorCategory.TUTOR_SWITCH_FREQUENCY: "positive",
    FactorCategory.SCHEDULING_FRICTION: "positive",
    FactorCategory.RESPONSE_RATE: "negative",
}
