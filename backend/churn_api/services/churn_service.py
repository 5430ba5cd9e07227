"""
Churn Service

Ties the scoring engine to persistence: the versioned weight table, the weight
change history, the stored cohort of students with known outcomes and the
learning-event ledger.

The engine itself (utils/) is pure; everything here reads a snapshot, hands it
to the engine and writes at most one atomic change.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..models_db import AlgorithmWeight, LearningEventRecord, Student, StudentChurnReason, WeightHistory
from ..utils.backtest import AccuracyMetrics, CohortMember, ProjectionComparison, compare_projections, project_accuracy
from ..utils.cache import ACCURACY_PREFIX, CHURN_PREFIX, WEIGHTS_PREFIX, TTLCache, TTLPolicy, cache_key
from ..utils.learning import (
    CaseStudyRecommendation, LearningPolicy, derive_case_study, record_outcome, weight_change_summary,
)
from ..utils.scoring import RiskAssessment, RiskThresholds, neutral_assessment, score_student
from ..utils.weights import CATEGORIES, DEFAULT_WEIGHTS, WeightSet, require_valid_weights
from .feature_provider import SessionFeatureProvider
from .learning_ledger import LearningEventLedger

log = logging.getLogger(__name__)

WeightsInput = Union[WeightSet, Mapping]

class StudentNotFoundError(LookupError):
    def __init__(self, student_id: str):
        self.student_id = student_id
        super().__init__(f"student {student_id} not found")

class OutcomeNotKnownError(ValueError):
    """The student's outcome cannot be treated as ground truth yet."""

class ConcurrentWeightUpdateError(RuntimeError):
    def __init__(self, version: int):
        self.version = version
        super().__init__(f"weights v{version} was written by another update; reload and retry")

@dataclass(frozen=True)
class WeightUpdateResult:
    version: int
    accuracy_before: float
    accuracy_after: float
    delta: float
    history_id: str

@dataclass(frozen=True)
class ChurnedStudent:
    user_id: str
    name: str
    enrolled_since: date
    churned_date: Optional[date]
    churn_reasons: List[str]
    churn_survey_response: Optional[str]
    predicted_risk: RiskAssessment
    sessions_completed: int

@dataclass(frozen=True)
class LearningFeedItem:
    """A stored learning event plus what the system did about it."""
    record: LearningEventRecord
    student_name: Optional[str] = None
    version: Optional[int] = None               # weights version applied from this student's case study
    what_system_learned: Optional[str] = None
    weight_change_summary: List[str] = field(default_factory=list)

def default_cache(settings: Settings, clock: Callable[[], float] = time.monotonic) -> TTLCache:
    policy = TTLPolicy(
        {WEIGHTS_PREFIX: settings.CACHE_TTL_WEIGHTS, ACCURACY_PREFIX: settings.CACHE_TTL_ACCURACY},
        default=settings.CACHE_TTL_ACCURACY,
    )
    return TTLCache(policy, clock=clock)

class ChurnService:
    def __init__(self, db: Session, cache: Optional[TTLCache] = None, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.cache = cache if cache is not None else default_cache(self.settings)
        self.features = SessionFeatureProvider(db)
        self.ledger = LearningEventLedger(db)

    @property
    def thresholds(self) -> RiskThresholds:
        return RiskThresholds(medium=self.settings.RISK_MEDIUM_THRESHOLD, high=self.settings.RISK_HIGH_THRESHOLD)

    @property
    def learning_policy(self) -> LearningPolicy:
        return LearningPolicy.from_settings(self.settings)

    # ---------------- weights ----------------
    def current_version(self) -> int:
        return self.db.query(func.max(AlgorithmWeight.version)).scalar() or 0

    def get_current_weights(self) -> WeightSet:
        return self.cache.get_or_set(cache_key(WEIGHTS_PREFIX), self._load_current_weights)

    def _load_current_weights(self) -> WeightSet:
        return self._weights_for_version(self.current_version())

    def _weights_for_version(self, version: int) -> WeightSet:
        if not version:
            return DEFAULT_WEIGHTS
        rows = self.db.query(AlgorithmWeight).filter(AlgorithmWeight.version == version).all()
        stored = {r.factor_category: r.weight for r in rows}
        missing = [c.value for c in CATEGORIES if c.value not in stored]
        if missing:
            # versions saved before a category existed keep the default for it
            log.warning("weights v%d has no row for %s, using defaults", version, missing)
        merged = DEFAULT_WEIGHTS.to_dict()
        merged.update(stored)
        return WeightSet.from_mapping(merged)

    def weights_in_force(self, on: date) -> Tuple[int, WeightSet]:
        """The latest weights version that took effect on or before `on` (version 0 is the defaults)."""
        cutoff = datetime.combine(on + timedelta(days=1), dtime.min, tzinfo=timezone.utc)
        version = (
            self.db.query(func.max(AlgorithmWeight.version))
            .filter(AlgorithmWeight.effective_from < cutoff)
            .scalar()
        ) or 0
        return version, self._weights_for_version(version)

    def validate(self, weights: WeightsInput) -> WeightSet:
        return require_valid_weights(weights, self.settings.WEIGHT_SUM_TOLERANCE)

    def update_weights(
        self,
        new_weights: WeightsInput,
        changed_by: str,
        change_reason: str,
        case_study_student_id: Optional[str] = None,
    ) -> WeightUpdateResult:
        new = self.validate(new_weights)
        old = self.get_current_weights()
        before = self.retroactive_accuracy(old)
        after = self.retroactive_accuracy(new)

        version = self.current_version() + 1
        now = datetime.now(timezone.utc)
        history = WeightHistory(
            version=version,
            changed_by=changed_by,
            change_reason=change_reason,
            case_study_student_id=case_study_student_id,
            old_weights=old.to_dict(),
            new_weights=new.to_dict(),
            accuracy_before=before.accuracy,
            accuracy_after=after.accuracy,
        )
        try:
            for c in CATEGORIES:
                self.db.add(AlgorithmWeight(
                    version=version, factor_category=c.value, weight=new[c], notes=change_reason, effective_from=now,
                ))
            self.db.add(history)
            self.db.commit()
        except IntegrityError:
            # another writer took the same version number first
            self.db.rollback()
            raise ConcurrentWeightUpdateError(version) from None
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(history)
        self.cache.invalidate_prefix(CHURN_PREFIX)

        log.info("weights v%d saved by %s (accuracy %.3f -> %.3f)", version, changed_by, before.accuracy, after.accuracy)
        return WeightUpdateResult(
            version=version,
            accuracy_before=before.accuracy,
            accuracy_after=after.accuracy,
            delta=after.accuracy - before.accuracy,
            history_id=history.id,
        )

    def get_weight_history(self, limit: int = 10) -> List[WeightHistory]:
        return self.db.query(WeightHistory).order_by(WeightHistory.version.desc()).limit(limit).all()

    def get_weight_history_entry(self, history_id: str) -> Optional[WeightHistory]:
        return self.db.query(WeightHistory).filter(WeightHistory.id == history_id).first()

    # ---------------- scoring ----------------
    def get_student(self, student_id: str) -> Student:
        student = self.db.query(Student).filter(Student.user_id == student_id).first()
        if student is None:
            raise StudentNotFoundError(student_id)
        return student

    def assess_student(self, student_id: str, weights: Optional[WeightsInput] = None) -> RiskAssessment:
        self.get_student(student_id)
        applied = self.validate(weights) if weights is not None else self.validate(self.get_current_weights())
        features = self.features.features_for(student_id)
        if features is None:
            return neutral_assessment(applied, self.thresholds)
        return score_student(features, applied, thresholds=self.thresholds)

    # ---------------- backtest ----------------
    def tenure_days(self, student: Student, today: Optional[date] = None) -> int:
        return ((today or date.today()) - student.enrolled_since).days

    def build_cohort(self, today: Optional[date] = None) -> List[CohortMember]:
        """
        Every student as a cohort member.

        Students that are neither churned nor active, or that lack enough
        completed sessions, carry no outcome so the engine counts them as excluded.
        """
        students = self.db.query(Student).all()
        counts = self.features.completed_counts(s.user_id for s in students)

        members: List[CohortMember] = []
        for s in students:
            outcome: Optional[str] = s.status if s.status in ("churned", "active") else None
            features: Dict[str, float] = {}
            if counts.get(s.user_id, 0) < self.settings.MIN_COMPLETED_SESSIONS:
                outcome = None
            elif outcome is not None:
                features = self.features.features_for(s.user_id) or {}
            members.append(CohortMember(
                student_id=s.user_id,
                features=features,
                actual_outcome=outcome,
                tenure_days=self.tenure_days(s, today),
            ))
        return members

    def retroactive_accuracy(self, weights: WeightsInput) -> AccuracyMetrics:
        """Backtest against stored outcomes. Weights need a valid shape but may not sum to 1."""
        weights = weights if isinstance(weights, WeightSet) else WeightSet.from_mapping(weights)
        return self.cache.get_or_set(
            cache_key(ACCURACY_PREFIX, weights=weights.to_dict()),
            lambda: project_accuracy(
                self.build_cohort(),
                weights,
                self.settings.DECISION_THRESHOLD,
                active_tenure_days=self.settings.ACTIVE_TENURE_DAYS,
            ),
        )

    def simulate_weights(self, proposed: WeightsInput) -> ProjectionComparison:
        before = self.retroactive_accuracy(self.get_current_weights())
        after = self.retroactive_accuracy(proposed)
        return compare_projections(before, after, self.settings.MIN_ACCURACY_GAIN)

    # ---------------- case studies & learning ----------------
    def known_outcome(self, student: Student, today: Optional[date] = None) -> str:
        if student.status == "churned":
            return "churned"
        if student.status == "active" and self.tenure_days(student, today) >= self.settings.ACTIVE_TENURE_DAYS:
            return "active"
        raise OutcomeNotKnownError(
            f"student {student.user_id} has no confirmed outcome yet (status {student.status})"
        )

    def prediction_date(self, student: Student, today: Optional[date] = None) -> date:
        """When the prediction being judged was made: the churn date, or the day an active student became ground truth."""
        if student.status == "churned":
            return student.churned_date or today or date.today()
        return student.enrolled_since + timedelta(days=self.settings.ACTIVE_TENURE_DAYS)

    def create_case_study(self, student_id: str) -> CaseStudyRecommendation:
        student = self.get_student(student_id)
        actual = "churned" if student.status == "churned" else "active"
        assessment = self.assess_student(student_id)
        return derive_case_study(student_id, assessment, actual, self.learning_policy)

    def apply_case_study(
        self, student_id: str, weights: WeightsInput, changed_by: str, change_reason: str,
    ) -> WeightUpdateResult:
        self.get_student(student_id)
        return self.update_weights(weights, changed_by, change_reason, case_study_student_id=student_id)

    def record_learning_event(
        self,
        student_id: str,
        survey_response: Optional[str] = None,
        is_correction: bool = False,
        today: Optional[date] = None,
    ) -> LearningFeedItem:
        student = self.get_student(student_id)
        actual = self.known_outcome(student, today)
        # judge the prediction with the weights that made it, not today's
        version, weights = self.weights_in_force(self.prediction_date(student, today))
        assessment = self.assess_student(student_id, weights)
        event = record_outcome(
            student_id,
            assessment,
            actual,
            survey_response=survey_response if survey_response is not None else student.churn_survey_response,
            churn_date=student.churned_date,
            policy=self.learning_policy,
            weights_version=version,
        )
        record = self.ledger.append(event, is_correction=is_correction)
        return self._feed([record])[0]

    def get_learning_events(self, limit: int = 20) -> List[LearningFeedItem]:
        return self._feed(self.ledger.recent(limit))

    def get_student_learning_events(self, student_id: str) -> List[LearningFeedItem]:
        self.get_student(student_id)
        return self._feed(self.ledger.events_for(student_id))

    def _feed(self, records: List[LearningEventRecord]) -> List[LearningFeedItem]:
        ids = list({r.student_id for r in records})
        if not ids:
            return []
        names = dict(self.db.query(Student.user_id, Student.name).filter(Student.user_id.in_(ids)).all())
        applied: Dict[str, WeightHistory] = {}
        rows = (
            self.db.query(WeightHistory)
            .filter(WeightHistory.case_study_student_id.in_(ids))
            .order_by(WeightHistory.version.asc())
            .all()
        )
        for h in rows:
            applied[h.case_study_student_id] = h     # latest version wins

        items: List[LearningFeedItem] = []
        for r in records:
            h = applied.get(r.student_id)
            if h is None:
                items.append(LearningFeedItem(record=r, student_name=names.get(r.student_id)))
                continue
            items.append(LearningFeedItem(
                record=r,
                student_name=names.get(r.student_id),
                version=h.version,
                what_system_learned=h.change_reason,
                weight_change_summary=weight_change_summary(
                    WeightSet.from_mapping(h.old_weights), WeightSet.from_mapping(h.new_weights),
                ),
            ))
        return items

    def get_recent_churns(self, limit: int = 10) -> List[ChurnedStudent]:
        churned = (
            self.db.query(Student)
            .filter(Student.status == "churned")
            .order_by(Student.churned_date.desc())
            .limit(limit)
            .all()
        )
        counts = self.features.completed_counts(s.user_id for s in churned)
        reasons = self._churn_reasons([s.user_id for s in churned])

        return [
            ChurnedStudent(
                user_id=s.user_id,
                name=s.name,
                enrolled_since=s.enrolled_since,
                churned_date=s.churned_date,
                churn_reasons=reasons.get(s.user_id, []),
                churn_survey_response=s.churn_survey_response,
                predicted_risk=self.assess_student(s.user_id),
                sessions_completed=counts.get(s.user_id, 0),
            )
            for s in churned
        ]

    def _churn_reasons(self, student_ids: List[str]) -> Dict[str, List[str]]:
        if not student_ids:
            return {}
        out: Dict[str, List[str]] = {}
        rows = self.db.query(StudentChurnReason).filter(StudentChurnReason.student_id.in_(student_ids)).all()
        for r in rows:
            out.setdefault(r.student_id, []).append(r.reason)
        return out
