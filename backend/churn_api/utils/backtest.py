import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from .normalizers import Normalizer
from .scoring import score_frame
from .weights import CATEGORIES, FactorCategory, WeightSet

log = logging.getLogger(__name__)

OUTCOMES = ("churned", "active")
DEFAULT_ACTIVE_TENURE_DAYS = 90

@dataclass(frozen=True)
class CohortMember:
    student_id: str
    features: Mapping
    actual_outcome: Optional[str]        # "churned" | "active" | None when unknown
    tenure_days: Optional[int] = None

@dataclass(frozen=True)
class AccuracyMetrics:
    accuracy: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    true_positives: int = 0
    false_positives: int = 0
    true_negatives: int = 0
    false_negatives: int = 0
    total_predictions: int = 0
    excluded_ineligible: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)

class Recommendation(str, Enum):
    APPLY = "apply"
    HOLD = "hold"

@dataclass(frozen=True)
class ProjectionComparison:
    before: AccuracyMetrics
    after: AccuracyMetrics
    accuracy_delta: float
    false_negative_delta: int
    recommendation: Recommendation

def is_eligible(member: CohortMember, active_tenure_days: int = DEFAULT_ACTIVE_TENURE_DAYS) -> bool:
    if member.actual_outcome not in OUTCOMES:
        return False
    # active students only count as ground truth once they've stayed long enough
    if member.actual_outcome == "active" and member.tenure_days is not None:
        return member.tenure_days >= active_tenure_days
    return True

def _ratio(num: float, den: float) -> float:
    return num / den if den > 0 else 0.0

def metrics_from_predictions(
    scores: Sequence[float],
    outcomes: Sequence[str],
    decision_threshold: float,
    excluded_ineligible: int = 0,
) -> AccuracyMetrics:
    tp = fp = tn = fn = 0
    for score, outcome in zip(scores, outcomes):
        predicted_churn = score >= decision_threshold
        actual_churn = outcome == "churned"
        if predicted_churn and actual_churn:
            tp += 1
        elif predicted_churn:
            fp += 1
        elif actual_churn:
            fn += 1     # missed churn
        else:
            tn += 1

    total = tp + fp + tn + fn
    precision = _ratio(tp, tp + fp)
    recall = _ratio(tp, tp + fn)
    return AccuracyMetrics(
        accuracy=_ratio(tp + tn, total),
        precision=precision,
        recall=recall,
        f1_score=_ratio(2 * precision * recall, precision + recall),
        true_positives=tp,
        false_positives=fp,
        true_negatives=tn,
        false_negatives=fn,
        total_predictions=total,
        excluded_ineligible=excluded_ineligible,
    )

def cohort_frame(members: Iterable[CohortMember]) -> pd.DataFrame:
    rows = []
    for m in members:
        row = {FactorCategory(k).value: v for k, v in m.features.items()}
        row["student_id"] = m.student_id
        row["actual_outcome"] = m.actual_outcome
        rows.append(row)
    return pd.DataFrame(rows, columns=["student_id", *[c.value for c in CATEGORIES], "actual_outcome"])

def project_accuracy(
    cohort: Iterable[CohortMember],
    weights: WeightSet,
    decision_threshold: float,
    normalizers: Optional[Mapping[FactorCategory, Normalizer]] = None,
    active_tenure_days: int = DEFAULT_ACTIVE_TENURE_DAYS,
) -> AccuracyMetrics:
    eligible: List[CohortMember] = []
    excluded = 0
    for member in cohort:
        if is_eligible(member, active_tenure_days):
            eligible.append(member)
        else:
            excluded += 1
    if excluded:
        log.info("backtest excluded %d ineligible cohort members", excluded)
    if not eligible:
        return AccuracyMetrics(excluded_ineligible=excluded)

    frame = cohort_frame(eligible)
    scores = score_frame(frame, weights, normalizers)
    return metrics_from_predictions(
        scores.tolist(), frame["actual_outcome"].tolist(), decision_threshold, excluded_ineligible=excluded,
    )

def project_frame(
    frame: pd.DataFrame,
    weights: WeightSet,
    decision_threshold: float,
    normalizers: Optional[Mapping[FactorCategory, Normalizer]] = None,
    active_tenure_days: int = DEFAULT_ACTIVE_TENURE_DAYS,
) -> AccuracyMetrics:
    """Backtest over a frame with category columns, `actual_outcome` and optional `tenure_days`."""
    outcome = frame["actual_outcome"].where(frame["actual_outcome"].isin(OUTCOMES))
    eligible = outcome.notna()
    if "tenure_days" in frame.columns:
        tenure = pd.to_numeric(frame["tenure_days"], errors="coerce")
        eligible &= ~((outcome == "active") & tenure.notna() & (tenure < active_tenure_days))
    excluded = int((~eligible).sum())
    if not eligible.any():
        return AccuracyMetrics(excluded_ineligible=excluded)

    scores = score_frame(frame[eligible], weights, normalizers)
    return metrics_from_predictions(
        scores.tolist(), outcome[eligible].tolist(), decision_threshold, excluded_ineligible=excluded,
    )

def compare_projections(
    before: AccuracyMetrics,
    after: AccuracyMetrics,
    min_accuracy_gain: float = 0.05,
) -> ProjectionComparison:
    accuracy_delta = after.accuracy - before.accuracy
    fn_delta = after.false_negatives - before.false_negatives
    # fewer missed churns outweighs raw accuracy
    apply_worthy = accuracy_delta > min_accuracy_gain or fn_delta < 0
    return ProjectionComparison(
        before=before,
        after=after,
        accuracy_delta=accuracy_delta,
        false_negative_delta=fn_delta,
        recommendation=Recommendation.APPLY if apply_worthy else Recommendation.HOLD,
    )
