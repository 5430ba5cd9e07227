import io
import json
import logging
import pandas as pd
from fastapi import FastAPI, UploadFile, File, Form, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import List, Optional

from .config import get_settings
from .schemas import (
    ScoreRequest, ScoreResponse, RiskOut, FactorOut, WeightsIn, WeightsOut, ValidationOut,
    WeightUpdateRequest, WeightUpdateOut, HistoryEntryOut, HistoryDetailOut, MetricsOut, ComparisonOut,
    BacktestRequest, BacktestResponse, CaseStudyOut, FactorAdjustmentOut, ApplyCaseStudyRequest,
    LearningEventIn, LearningEventOut, ChurnedStudentOut,
)
from .database import SessionLocal, init_db
from .models_db import WeightHistory
from .services.churn_service import (
    ChurnService, ConcurrentWeightUpdateError, LearningFeedItem, OutcomeNotKnownError, StudentNotFoundError,
    default_cache,
)
from .services.learning_ledger import DuplicateLearningEventError
from .utils.backtest import (
    AccuracyMetrics, CohortMember, ProjectionComparison, compare_projections, project_accuracy, project_frame,
)
from .utils.scoring import ChurnFactor, MissingFeatureError, RiskAssessment, score_student
from .utils.weights import CATEGORIES, WeightSet, WeightValidationError, validate_weights

# ---------------- logging ----------------
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger("churn-api")

settings = get_settings()

app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION)
app.add_middleware(
    CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"]
)

# --------------- DB Session / service dependencies ---------------
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# one cache per process, handed to every service instance
cache = default_cache(settings)

def get_service(db: Session = Depends(get_db)) -> ChurnService:
    return ChurnService(db, cache=cache, settings=settings)

# --------------- Bootstrap: DB ---------------
init_db()

# --------------- Error mapping ---------------
@app.exception_handler(WeightValidationError)
def weight_validation_error(request: Request, exc: WeightValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.errors})

@app.exception_handler(MissingFeatureError)
def missing_feature_error(request: Request, exc: MissingFeatureError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

@app.exception_handler(StudentNotFoundError)
def student_not_found(request: Request, exc: StudentNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(OutcomeNotKnownError)
def outcome_not_known(request: Request, exc: OutcomeNotKnownError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(DuplicateLearningEventError)
def duplicate_learning_event(request: Request, exc: DuplicateLearningEventError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(ConcurrentWeightUpdateError)
def concurrent_weight_update(request: Request, exc: ConcurrentWeightUpdateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

# --------------- Output helpers ---------------
def factor_out(f: ChurnFactor) -> FactorOut:
    return FactorOut(**f.to_dict())

def risk_out(a: RiskAssessment, student_id: Optional[str] = None) -> RiskOut:
    return RiskOut(
        student_id=student_id,
        risk_score=a.risk_score,
        risk_level=a.risk_level,
        factors=[factor_out(f) for f in a.factors],
        risk_factors=[factor_out(f) for f in a.risk_factors()],
        protective_factors=[factor_out(f) for f in a.protective_factors()],
        explanation=a.explanation,
    )

def metrics_out(m: AccuracyMetrics) -> MetricsOut:
    return MetricsOut(**m.to_dict())

def comparison_out(c: ProjectionComparison, proposed) -> ComparisonOut:
    v = validate_weights(proposed, settings.WEIGHT_SUM_TOLERANCE)
    return ComparisonOut(
        before=metrics_out(c.before),
        after=metrics_out(c.after),
        accuracy_delta=c.accuracy_delta,
        false_negative_delta=c.false_negative_delta,
        recommendation=c.recommendation.value,
        validation=ValidationOut(is_valid=v.is_valid, sum=v.sum, errors=v.errors),
    )

def history_out(h: WeightHistory) -> HistoryEntryOut:
    delta = None
    if h.accuracy_before is not None and h.accuracy_after is not None:
        delta = h.accuracy_after - h.accuracy_before
    return HistoryEntryOut(
        id=h.id, version=h.version, changed_by=h.changed_by, change_reason=h.change_reason,
        case_study_student_id=h.case_study_student_id, accuracy_before=h.accuracy_before,
        accuracy_after=h.accuracy_after, delta=delta, created_at=h.created_at,
    )

def learning_event_out(item: LearningFeedItem) -> LearningEventOut:
    r = item.record
    return LearningEventOut(
        id=r.id, student_id=r.student_id, churn_date=r.churn_date, predicted_risk=r.predicted_risk,
        predicted_level=r.predicted_level, actual_outcome=r.actual_outcome,
        was_prediction_correct=r.was_prediction_correct, suggested_weights=r.suggested_weights,
        rationale=r.rationale, factor_analysis=[FactorAdjustmentOut(**fa) for fa in r.factor_analysis],
        survey_response=r.survey_response, is_correction=r.is_correction,
        weights_version=r.weights_version, created_at=r.created_at,
        student_name=item.student_name, version=item.version,
        what_system_learned=item.what_system_learned, weight_change_summary=item.weight_change_summary,
    )

def feature_dict(row) -> dict:
    return {c.value: getattr(row, c.value) for c in CATEGORIES}

@app.get("/health")
def health():
    return {"status": "ok", "version": settings.APP_VERSION}

# --------------- Weights ----------------
@app.get("/weights", response_model=WeightsOut)
def current_weights(svc: ChurnService = Depends(get_service)):
    return WeightsOut(version=svc.current_version(), weights=svc.get_current_weights().to_dict())

@app.post("/weights/validate", response_model=ValidationOut)
def validate(req: WeightsIn):
    v = validate_weights(req.weights, settings.WEIGHT_SUM_TOLERANCE)
    return ValidationOut(is_valid=v.is_valid, sum=v.sum, errors=v.errors)

@app.put("/weights", response_model=WeightUpdateOut)
def update_weights(req: WeightUpdateRequest, svc: ChurnService = Depends(get_service)):
    result = svc.update_weights(req.weights, req.changed_by, req.change_reason)
    return WeightUpdateOut(**result.__dict__)

@app.get("/weights/history", response_model=List[HistoryEntryOut])
def weight_history(limit: int = 10, svc: ChurnService = Depends(get_service)):
    return [history_out(h) for h in svc.get_weight_history(limit)]

@app.get("/weights/history/{history_id}", response_model=HistoryDetailOut)
def weight_history_entry(history_id: str, svc: ChurnService = Depends(get_service)):
    h = svc.get_weight_history_entry(history_id)
    if h is None:
        raise HTTPException(404, detail=f"history entry {history_id} not found")
    return HistoryDetailOut(**history_out(h).dict(), old_weights=h.old_weights, new_weights=h.new_weights)

# --------------- Scoring ----------------
@app.get("/students/{student_id}/risk", response_model=RiskOut)
def student_risk(student_id: str, svc: ChurnService = Depends(get_service)):
    return risk_out(svc.assess_student(student_id), student_id)

@app.post("/score", response_model=ScoreResponse)
def score(req: ScoreRequest, svc: ChurnService = Depends(get_service)):
    weights = svc.validate(req.weights) if req.weights is not None else svc.get_current_weights()
    items = [
        risk_out(score_student(feature_dict(r), weights, thresholds=svc.thresholds), r.student_id)
        for r in req.rows
    ]
    return ScoreResponse(items=items)

# --------------- Backtest / what-if ----------------
@app.post("/backtest", response_model=BacktestResponse)
def backtest(req: BacktestRequest):
    threshold = req.decision_threshold if req.decision_threshold is not None else settings.DECISION_THRESHOLD
    cohort = [
        CohortMember(student_id=r.student_id or str(i), features=feature_dict(r),
                     actual_outcome=r.actual_outcome, tenure_days=r.tenure_days)
        for i, r in enumerate(req.cohort)
    ]

    def run(weights) -> AccuracyMetrics:
        return project_accuracy(cohort, WeightSet.from_mapping(weights), threshold,
                                active_tenure_days=settings.ACTIVE_TENURE_DAYS)

    after = run(req.weights)
    comparison = None
    if req.baseline_weights is not None:
        c = compare_projections(run(req.baseline_weights), after, settings.MIN_ACCURACY_GAIN)
        comparison = comparison_out(c, req.weights)
    return BacktestResponse(metrics=metrics_out(after), comparison=comparison)

@app.post("/backtest_csv", response_model=MetricsOut)
async def backtest_csv(
    file: UploadFile = File(...),
    weights: Optional[str] = Form(None),
    svc: ChurnService = Depends(get_service),
):
    content = await file.read()
    df = pd.read_csv(io.BytesIO(content))
    missing = [c.value for c in CATEGORIES if c.value not in df.columns] + \
              (["actual_outcome"] if "actual_outcome" not in df.columns else [])
    if missing:
        raise HTTPException(400, detail=f"missing columns: {missing}")
    try:
        ws = WeightSet.from_mapping(json.loads(weights)) if weights else svc.get_current_weights()
    except json.JSONDecodeError as e:
        raise HTTPException(400, detail=f"weights is not valid JSON: {e}")
    metrics = project_frame(df, ws, settings.DECISION_THRESHOLD, active_tenure_days=settings.ACTIVE_TENURE_DAYS)
    log.info("csv backtest over %d rows (%d excluded)", len(df), metrics.excluded_ineligible)
    return metrics_out(metrics)

@app.post("/simulate", response_model=ComparisonOut)
def simulate(req: WeightsIn, svc: ChurnService = Depends(get_service)):
    return comparison_out(svc.simulate_weights(req.weights), req.weights)

# --------------- Case studies & learning events ----------------
@app.post("/case-studies/{student_id}", response_model=CaseStudyOut)
def create_case_study(student_id: str, svc: ChurnService = Depends(get_service)):
    cs = svc.create_case_study(student_id)
    return CaseStudyOut(
        student_id=cs.student_id,
        predicted_risk=risk_out(cs.predicted_risk, student_id),
        actual_outcome=cs.actual_outcome,
        was_correct=cs.was_correct,
        suggested_weights=cs.suggested_weights.to_dict(),
        rationale=cs.rationale,
        factor_analysis=[FactorAdjustmentOut(**fa.to_dict()) for fa in cs.factor_analysis],
    )

@app.post("/case-studies/{student_id}/apply", response_model=WeightUpdateOut)
def apply_case_study(student_id: str, req: ApplyCaseStudyRequest, svc: ChurnService = Depends(get_service)):
    result = svc.apply_case_study(student_id, req.weights, req.changed_by, req.change_reason)
    return WeightUpdateOut(**result.__dict__)

@app.get("/learning-events", response_model=List[LearningEventOut])
def learning_events(limit: int = 20, svc: ChurnService = Depends(get_service)):
    return [learning_event_out(i) for i in svc.get_learning_events(limit)]

@app.get("/learning-events/{student_id}", response_model=List[LearningEventOut])
def student_learning_events(student_id: str, svc: ChurnService = Depends(get_service)):
    return [learning_event_out(i) for i in svc.get_student_learning_events(student_id)]

@app.post("/learning-events/{student_id}", response_model=LearningEventOut, status_code=201)
def record_learning_event(student_id: str, req: LearningEventIn, svc: ChurnService = Depends(get_service)):
    item = svc.record_learning_event(student_id, req.survey_response, is_correction=req.is_correction)
    return learning_event_out(item)

@app.get("/churns/recent", response_model=List[ChurnedStudentOut])
def recent_churns(limit: int = 10, svc: ChurnService = Depends(get_service)):
    return [
        ChurnedStudentOut(
            user_id=s.user_id, name=s.name, enrolled_since=s.enrolled_since, churned_date=s.churned_date,
            churn_reasons=s.churn_reasons, churn_survey_response=s.churn_survey_response,
            predicted_risk=risk_out(s.predicted_risk, s.user_id), sessions_completed=s.sessions_completed,
        )
        for s in svc.get_recent_churns(limit)
    ]
