"""
Learning from confirmed outcomes.

When a student's real outcome is known it is compared with the prediction that
was made for them. A wrong prediction yields a factor analysis: factors that
pointed at the real outcome get more weight, factors that pointed away from it
get less, and the nudged set is renormalised so it can be applied as-is.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple

from .scoring import ChurnFactor, RiskAssessment
from .weights import CATEGORIES, FactorCategory, WeightSet

@dataclass(frozen=True)
class LearningPolicy:
    churn_levels: Tuple[str, ...] = ("medium", "high")
    increase_step: float = 0.05
    decrease_step: float = 0.03
    min_weight: float = 0.05
    signal_margin: float = 0.1

    @classmethod
    def from_settings(cls, settings) -> "LearningPolicy":
        return cls(
            churn_levels=tuple(settings.CHURN_PREDICTED_LEVELS),
            increase_step=settings.LEARNING_INCREASE_STEP,
            decrease_step=settings.LEARNING_DECREASE_STEP,
            min_weight=settings.LEARNING_MIN_WEIGHT,
            signal_margin=settings.LEARNING_SIGNAL_MARGIN,
        )

    def predicts_churn(self, level: str) -> bool:
        return level in self.churn_levels

@dataclass(frozen=True)
class FactorAdjustment:
    factor: FactorCategory
    current_weight: float
    suggested_weight: float
    reason: str

    def to_dict(self) -> Dict:
        return {
            "factor": self.factor.value,
            "current_weight": self.current_weight,
            "suggested_weight": self.suggested_weight,
            "reason": self.reason,
        }

@dataclass(frozen=True)
class CaseStudyRecommendation:
    student_id: str
    predicted_risk: RiskAssessment
    actual_outcome: str
    was_correct: bool
    suggested_weights: WeightSet
    rationale: str
    factor_analysis: List[FactorAdjustment] = field(default_factory=list)

@dataclass(frozen=True)
class LearningEvent:
    student_id: str
    churn_date: Optional[date]
    predicted_risk: float
    predicted_level: str
    actual_outcome: str
    was_prediction_correct: bool
    suggested_weights: WeightSet
    rationale: str
    factor_analysis: Tuple[FactorAdjustment, ...]
    survey_response: Optional[str]
    created_at: datetime
    weights_version: int = 0

def weights_of(assessment: RiskAssessment) -> WeightSet:
    return WeightSet.from_mapping({f.category.value: f.weight for f in assessment.factors})

def _reason(f: ChurnFactor, churned: bool, raise_weight: bool) -> str:
    value = "no data" if f.value is None else f"value {f.value:g}"
    seen = f"{f.category.label} ({value}, risk score {f.normalized_score:.2f})"
    if churned and raise_weight:
        return f"{seen} signalled churn and the student churned. Increase weight to catch this pattern."
    if churned:
        return f"{seen} looked protective but the student still churned. Other factors matter more."
    if raise_weight:
        return f"{seen} looked protective and the student stayed. Increase weight."
    return f"{seen} signalled churn but the student stayed active. Reduce weight to cut false alarms."

def _nudge(weight: float, raise_weight: bool, policy: LearningPolicy) -> float:
    if raise_weight:
        return min(1.0, weight + policy.increase_step)
    # never push a weight below the floor, but leave weights already under it alone
    return max(min(weight, policy.min_weight), weight - policy.decrease_step)

def derive_case_study(
    student_id: str,
    assessment: RiskAssessment,
    actual_outcome: str,
    policy: LearningPolicy = LearningPolicy(),
) -> CaseStudyRecommendation:
    if actual_outcome not in ("churned", "active"):
        raise ValueError(f"actual_outcome must be 'churned' or 'active' (got {actual_outcome!r})")

    current = weights_of(assessment)
    churned = actual_outcome == "churned"
    was_correct = policy.predicts_churn(assessment.risk_level) == churned

    if was_correct:
        return CaseStudyRecommendation(
            student_id=student_id,
            predicted_risk=assessment,
            actual_outcome=actual_outcome,
            was_correct=True,
            suggested_weights=current,
            rationale=(
                "The prediction was correct. Current weights appear well-calibrated "
                "for this type of case. No adjustments recommended."
            ),
        )

    changes: Dict[str, float] = {}
    reasons: Dict[FactorCategory, str] = {}
    for f in assessment.factors:
        if abs(f.normalized_score - 0.5) < policy.signal_margin:
            continue
        # adverse factors pointed at churn; protective ones pointed at staying
        pointed_at_churn = f.effect == "adverse"
        raise_weight = pointed_at_churn == churned
        suggested = _nudge(f.weight, raise_weight, policy)
        if abs(suggested - f.weight) > 0.001:
            changes[f.category.value] = suggested
            reasons[f.category] = _reason(f, churned, raise_weight)

    suggested_weights = current.replace(**changes).normalized() if reasons else current
    analysis = [
        FactorAdjustment(
            factor=c,
            current_weight=current[c],
            suggested_weight=suggested_weights[c],
            reason=reasons[c],
        )
        for c in CATEGORIES if c in reasons
    ]

    predicted = f"predicted {assessment.risk_level} risk ({assessment.risk_score:.2f})"
    rationale = f"The prediction was incorrect: {predicted}, actual outcome {actual_outcome}. "
    if analysis:
        rationale += "Analyzing which factors need adjustment:\n\n" + "\n".join(f"- {a.reason}" for a in analysis)
    else:
        rationale += "No factor carried a clear enough signal; no adjustments recommended."

    return CaseStudyRecommendation(
        student_id=student_id,
        predicted_risk=assessment,
        actual_outcome=actual_outcome,
        was_correct=False,
        suggested_weights=suggested_weights,
        rationale=rationale,
        factor_analysis=analysis,
    )

def record_outcome(
    student_id: str,
    assessment: RiskAssessment,
    actual_outcome: str,
    survey_response: Optional[str] = None,
    churn_date: Optional[date] = None,
    policy: LearningPolicy = LearningPolicy(),
    created_at: Optional[datetime] = None,
    weights_version: int = 0,
) -> LearningEvent:
    case = derive_case_study(student_id, assessment, actual_outcome, policy)
    return LearningEvent(
        student_id=student_id,
        churn_date=churn_date,
        predicted_risk=assessment.risk_score,
        predicted_level=assessment.risk_level,
        actual_outcome=actual_outcome,
        was_prediction_correct=case.was_correct,
        suggested_weights=case.suggested_weights,
        rationale=case.rationale,
        factor_analysis=tuple(case.factor_analysis),
        survey_response=survey_response,
        created_at=created_at or datetime.now(timezone.utc),
        weights_version=weights_version,
    )

def weight_change_summary(old: WeightSet, new: WeightSet, min_change: float = 0.01) -> List[str]:
    changes: List[str] = []
    for c in CATEGORIES:
        diff = new[c] - old[c]
        if abs(diff) > min_change:
            direction = "increased" if diff > 0 else "decreased"
            changes.append(f"{c.label} {direction} by {abs(diff):.3f}")
    return changes
