import math
import numbers
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Union

DEFAULT_TOLERANCE = 0.001

class FactorCategory(str, Enum):
    FIRST_SESSION_SATISFACTION = "first_session_satisfaction"
    SESSIONS_COMPLETED = "sessions_completed"
    FOLLOW_UP_BOOKING_RATE = "follow_up_booking_rate"
    AVG_SESSION_SCORE = "avg_session_score"
    TUTOR_CONSISTENCY = "tutor_consistency"
    STUDENT_ENGAGEMENT = "student_engagement"
    TUTOR_SWITCH_FREQUENCY = "tutor_switch_frequency"
    SCHEDULING_FRICTION = "scheduling_friction"
    RESPONSE_RATE = "response_rate"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")

CATEGORIES: List[FactorCategory] = list(FactorCategory)

class WeightValidationError(ValueError):
    """Weight vector of the wrong shape, out of range, or (for persistence) not summing to 1.0."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))

def _shape_errors(raw: Mapping) -> List[str]:
    errors: List[str] = []
    known = {c.value for c in CATEGORIES}
    keys = {k.value if isinstance(k, FactorCategory) else k for k in raw}
    unknown = sorted(str(k) for k in keys - known)
    if unknown:
        errors.append(f"unknown factor categories: {unknown}")
    missing = [c.value for c in CATEGORIES if c.value not in keys]
    if missing:
        errors.append(f"missing required factors: {missing}")
    for k, w in raw.items():
        name = k.value if isinstance(k, FactorCategory) else k
        if isinstance(w, bool) or not isinstance(w, numbers.Real) or math.isnan(w):
            errors.append(f"invalid weight for {name}: must be a number (got {w!r})")
        elif w < 0 or w > 1:
            errors.append(f"invalid weight for {name}: must be between 0 and 1 (got {w})")
    return errors

@dataclass(frozen=True)
class WeightSet:
    """One weight per FactorCategory. The sum is not enforced here so drafts can be explored."""
    weights: Mapping[FactorCategory, float]

    def __post_init__(self):
        object.__setattr__(self, "weights", MappingProxyType(dict(self.weights)))

    @classmethod
    def from_mapping(cls, raw: Mapping) -> "WeightSet":
        errors = _shape_errors(raw)
        if errors:
            raise WeightValidationError(errors)
        return cls({FactorCategory(k): float(w) for k, w in raw.items()})

    def __getitem__(self, category: FactorCategory) -> float:
        return self.weights[FactorCategory(category)]

    def total(self) -> float:
        return math.fsum(self.weights[c] for c in CATEGORIES)

    def replace(self, **changes: float) -> "WeightSet":
        merged = {c.value: self.weights[c] for c in CATEGORIES}
        merged.update(changes)
        return WeightSet.from_mapping(merged)

    def normalized(self) -> "WeightSet":
        total = self.total()
        if total <= 0:
            raise WeightValidationError(["cannot renormalize a weight set whose weights are all zero"])
        return WeightSet({c: self.weights[c] / total for c in CATEGORIES})

    def to_dict(self) -> Dict[str, float]:
        return {c.value: self.weights[c] for c in CATEGORIES}

DEFAULT_WEIGHTS = WeightSet.from_mapping({
    "first_session_satisfaction": 0.25,
    "sessions_completed": 0.15,
    "follow_up_booking_rate": 0.20,
    "avg_session_score": 0.15,
    "tutor_consistency": 0.10,
    "student_engagement": 0.15,
    "tutor_switch_frequency": 0.0,
    "scheduling_friction": 0.0,
    "response_rate": 0.0,
})

@dataclass
class WeightValidation:
    is_valid: bool
    sum: float
    errors: List[str] = field(default_factory=list)

def validate_weights(weights: Union[WeightSet, Mapping], tolerance: float = DEFAULT_TOLERANCE) -> WeightValidation:
    if not isinstance(weights, WeightSet):
        errors = _shape_errors(weights)
        if errors:
            numeric = [w for w in weights.values() if isinstance(w, numbers.Real) and not isinstance(w, bool)]
            return WeightValidation(is_valid=False, sum=math.fsum(numeric), errors=errors)
        weights = WeightSet.from_mapping(weights)

    total = weights.total()
    errors = []
    if abs(total - 1.0) >= tolerance:
        errors.append(f"weights must sum to 1.0 (current sum: {total:.3f})")
    return WeightValidation(is_valid=not errors, sum=total, errors=errors)

def require_valid_weights(weights: Union[WeightSet, Mapping], tolerance: float = DEFAULT_TOLERANCE) -> WeightSet:
    result = validate_weights(weights, tolerance)
    if not result.is_valid:
        raise WeightValidationError(result.errors)
    return weights if isinstance(weights, WeightSet) else WeightSet.from_mapping(weights)
