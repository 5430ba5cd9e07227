from datetime import date, datetime
from pydantic import BaseModel, Field
from typing import List, Dict, Optional, Literal

class FeatureRow(BaseModel):
    first_session_satisfaction: float = Field(ge=0, le=10)
    sessions_completed: float = Field(ge=0)
    follow_up_booking_rate: float = Field(ge=0, le=1)
    avg_session_score: float = Field(ge=0, le=10)
    tutor_consistency: float = Field(ge=0)       # distinct tutors seen
    student_engagement: float = Field(ge=0, le=10)
    tutor_switch_frequency: float = Field(ge=0, le=1)
    scheduling_friction: float = Field(ge=0, le=1)
    response_rate: float = Field(ge=0, le=1)
    # optional identifier for the response
    student_id: Optional[str] = None

class ScoreRequest(BaseModel):
    rows: List[FeatureRow]
    weights: Optional[Dict[str, float]] = None   # current weights when omitted

class FactorOut(BaseModel):
    category: str
    value: Optional[float] = None
    normalized_score: float
    weight: float
    impact: str
    contribution_to_risk: float
    effect: str

class RiskOut(BaseModel):
    student_id: Optional[str] = None
    risk_score: float
    risk_level: str
    factors: List[FactorOut]
    risk_factors: List[FactorOut]        # adverse, largest contribution first
    protective_factors: List[FactorOut]  # protective, smallest contribution first
    explanation: Optional[str] = None

class ScoreResponse(BaseModel):
    items: List[RiskOut]

class WeightsIn(BaseModel):
    weights: Dict[str, float]

class WeightsOut(BaseModel):
    version: int
    weights: Dict[str, float]

class ValidationOut(BaseModel):
    is_valid: bool
    sum: float
    errors: List[str]

class WeightUpdateRequest(BaseModel):
    weights: Dict[str, float]
    changed_by: str
    change_reason: str

class WeightUpdateOut(BaseModel):
    version: int
    accuracy_before: float
    accuracy_after: float
    delta: float
    history_id: str

class HistoryEntryOut(BaseModel):
    id: str
    version: int
    changed_by: str
    change_reason: str
    case_study_student_id: Optional[str] = None
    accuracy_before: Optional[float] = None
    accuracy_after: Optional[float] = None
    delta: Optional[float] = None
    created_at: Optional[datetime] = None

class HistoryDetailOut(HistoryEntryOut):
    old_weights: Dict[str, float]
    new_weights: Dict[str, float]

class MetricsOut(BaseModel):
    accuracy: float
    precision: float
    recall: float
    f1_score: float
    true_positives: int
    false_positives: int
    true_negatives: int
    false_negatives: int
    total_predictions: int
    excluded_ineligible: int

class ComparisonOut(BaseModel):
    before: MetricsOut
    after: MetricsOut
    accuracy_delta: float
    false_negative_delta: int
    recommendation: Literal["apply", "hold"]
    validation: ValidationOut           # what-if sets may be invalid; saving them is refused

class CohortRow(FeatureRow):
    actual_outcome: Optional[Literal["churned", "active"]] = None
    tenure_days: Optional[int] = None

class BacktestRequest(BaseModel):
    cohort: List[CohortRow]
    weights: Dict[str, float]
    baseline_weights: Optional[Dict[str, float]] = None
    decision_threshold: Optional[float] = Field(default=None, ge=0, le=1)

class BacktestResponse(BaseModel):
    metrics: MetricsOut
    comparison: Optional[ComparisonOut] = None

class FactorAdjustmentOut(BaseModel):
    factor: str
    current_weight: float
    suggested_weight: float
    reason: str

class CaseStudyOut(BaseModel):
    student_id: str
    predicted_risk: RiskOut
    actual_outcome: str
    was_correct: bool
    suggested_weights: Dict[str, float]
    rationale: str
    factor_analysis: List[FactorAdjustmentOut]

class ApplyCaseStudyRequest(BaseModel):
    weights: Dict[str, float]
    changed_by: str
    change_reason: str

class LearningEventIn(BaseModel):
    survey_response: Optional[str] = None
    is_correction: bool = False

class LearningEventOut(BaseModel):
    id: int
    student_id: str
    churn_date: Optional[date] = None
    predicted_risk: float
    predicted_level: str
    actual_outcome: str
    was_prediction_correct: bool
    suggested_weights: Dict[str, float]
    rationale: str
    factor_analysis: List[FactorAdjustmentOut]
    survey_response: Optional[str] = None
    is_correction: bool
    weights_version: int
    created_at: datetime
    # filled from the student and the weight change this event led to, if any
    student_name: Optional[str] = None
    version: Optional[int] = None
    what_system_learned: Optional[str] = None
    weight_change_summary: List[str] = []

class ChurnedStudentOut(BaseModel):
    user_id: str
    name: str
    enrolled_since: date
    churned_date: Optional[date] = None
    churn_reasons: List[str]
    churn_survey_response: Optional[str] = None
    predicted_risk: RiskOut
    sessions_completed: int
