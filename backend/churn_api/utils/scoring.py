import math
import numbers
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Mapping, Optional

import numpy as np
import pandas as pd

from .normalizers import DEFAULT_NORMALIZERS, IMPACT_DIRECTION, Normalizer
from .weights import CATEGORIES, FactorCategory, WeightSet

NEUTRAL_SCORE = 0.5
NO_SESSIONS_EXPLANATION = (
    "No completed sessions available for this student. "
    "Risk assessment is neutral (0.5) pending session data."
)

class MissingFeatureError(ValueError):
    """A feature vector without exactly one numeric value per factor category."""

@dataclass(frozen=True)
class RiskThresholds:
    medium: float = 0.33
    high: float = 0.66

    def classify(self, score: float) -> str:
        if score >= self.high:
            return "high"
        if score >= self.medium:
            return "medium"
        return "low"

@dataclass(frozen=True)
class ChurnFactor:
    category: FactorCategory
    value: Optional[float]       # None when there is no session data
    normalized_score: float
    weight: float
    impact: str                  # "positive" | "negative"
    contribution_to_risk: float

    @property
    def effect(self) -> str:
        if self.normalized_score > NEUTRAL_SCORE:
            return "adverse"
        if self.normalized_score < NEUTRAL_SCORE:
            return "protective"
        return "neutral"

    def to_dict(self) -> Dict:
        out = asdict(self)
        out["category"] = self.category.value
        out["effect"] = self.effect
        return out

@dataclass(frozen=True)
class RiskAssessment:
    risk_score: float
    risk_level: str
    factors: List[ChurnFactor] = field(default_factory=list)
    explanation: Optional[str] = None

    def factor(self, category: FactorCategory) -> ChurnFactor:
        category = FactorCategory(category)
        for f in self.factors:
            if f.category == category:
                return f
        raise KeyError(category)

    def risk_factors(self) -> List[ChurnFactor]:
        """Adverse factors, largest contribution first. Callers cap the list."""
        adverse = [f for f in self.factors if f.effect == "adverse"]
        return sorted(adverse, key=lambda f: f.contribution_to_risk, reverse=True)

    def protective_factors(self) -> List[ChurnFactor]:
        protective = [f for f in self.factors if f.effect == "protective"]
        return sorted(protective, key=lambda f: f.contribution_to_risk)

def check_features(features: Mapping) -> Dict[FactorCategory, float]:
    out: Dict[FactorCategory, float] = {}
    for k, v in features.items():
        try:
            category = FactorCategory(k)
        except ValueError:
            raise MissingFeatureError(f"unknown factor category: {k!r}") from None
        if isinstance(v, bool) or not isinstance(v, numbers.Real) or math.isnan(v):
            raise MissingFeatureError(f"feature {category.value} must be a number (got {v!r})")
        out[category] = float(v)
    missing = [c.value for c in CATEGORIES if c not in out]
    if missing:
        raise MissingFeatureError(f"missing features: {missing}")
    return out

def score_student(
    features: Mapping,
    weights: WeightSet,
    normalizers: Optional[Mapping[FactorCategory, Normalizer]] = None,
    thresholds: RiskThresholds = RiskThresholds(),
) -> RiskAssessment:
    normalizers = normalizers or DEFAULT_NORMALIZERS
    values = check_features(features)

    factors: List[ChurnFactor] = []
    for c in CATEGORIES:
        normalized = float(normalizers[c](values[c]))
        factors.append(ChurnFactor(
            category=c,
            value=values[c],
            normalized_score=normalized,
            weight=weights[c],
            impact=IMPACT_DIRECTION[c],
            contribution_to_risk=normalized * weights[c],
        ))

    score = min(1.0, max(0.0, math.fsum(f.contribution_to_risk for f in factors)))
    return RiskAssessment(risk_score=score, risk_level=thresholds.classify(score), factors=factors)

def neutral_assessment(weights: WeightSet, thresholds: RiskThresholds = RiskThresholds()) -> RiskAssessment:
    factors = [
        ChurnFactor(
            category=c, value=None, normalized_score=NEUTRAL_SCORE, weight=weights[c],
            impact=IMPACT_DIRECTION[c], contribution_to_risk=weights[c] * NEUTRAL_SCORE,
        )
        for c in CATEGORIES
    ]
    score = min(1.0, max(0.0, math.fsum(f.contribution_to_risk for f in factors)))
    return RiskAssessment(
        risk_score=score, risk_level=thresholds.classify(score), factors=factors,
        explanation=NO_SESSIONS_EXPLANATION,
    )

def score_frame(
    frame: pd.DataFrame,
    weights: WeightSet,
    normalizers: Optional[Mapping[FactorCategory, Normalizer]] = None,
) -> pd.Series:
    """Vectorised risk scores for a frame with one numeric column per category."""
    normalizers = normalizers or DEFAULT_NORMALIZERS
    missing = [c.value for c in CATEGORIES if c.value not in frame.columns]
    if missing:
        raise MissingFeatureError(f"missing columns: {missing}")
    X = frame[[c.value for c in CATEGORIES]].apply(pd.to_numeric, errors="coerce")
    if X.isna().any().any():
        bad = [col for col in X.columns if X[col].isna().any()]
        raise MissingFeatureError(f"non-numeric or empty values in columns: {bad}")

    total = np.zeros(len(X))
    for c in CATEGORIES:
        total += np.asarray(normalizers[c](X[c.value].to_numpy()), dtype=float) * weights[c]
    return pd.Series(np.clip(total, 0.0, 1.0), index=frame.index, name="risk_score")
