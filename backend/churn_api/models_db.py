import uuid
from sqlalchemy import (
    Column, Integer, String, Float, JSON, DateTime, Date, Boolean, Text, ForeignKey, CheckConstraint, Index,
    UniqueConstraint, event, text,
)
from sqlalchemy.sql import func
from .database import Base

def _uuid():
    return str(uuid.uuid4())

class Student(Base):
    __tablename__ = "students"
    user_id = Column(String(128), primary_key=True)
    name = Column(String, nullable=False, default="")
    enrolled_since = Column(Date, nullable=False, server_default=func.current_date())
    status = Column(String, nullable=False, default="active")   # active | churned | paused
    churned_date = Column(Date)
    churn_survey_response = Column(Text)

class StudentChurnReason(Base):
    __tablename__ = "student_churn_reasons"
    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String(128), ForeignKey("students.user_id", ondelete="CASCADE"), index=True, nullable=False)
    reason = Column(String, nullable=False)   # poor_first_session, tutor_mismatch, scheduling_difficulty, ...
    added_at = Column(DateTime(timezone=True), server_default=func.now())

class TutoringSession(Base):
    __tablename__ = "sessions"
    id = Column(String(36), primary_key=True, default=_uuid)
    student_id = Column(String(128), ForeignKey("students.user_id", ondelete="CASCADE"), index=True, nullable=False)
    tutor_id = Column(String(128), index=True, nullable=False)
    scheduled_start = Column(DateTime(timezone=True), nullable=False)
    # scheduled | completed | no_show_tutor | no_show_student | cancelled | rescheduled
    status = Column(String, nullable=False, default="scheduled")
    overall_session_score = Column(Float)          # 0-10
    student_engagement_score = Column(Float)       # 0-10, from audio analysis when available
    follow_up_booked = Column(Boolean, nullable=False, default=False)
    follow_up_responded = Column(Boolean)          # null when no follow-up message was sent

class AlgorithmWeight(Base):
    __tablename__ = "churn_algorithm_weights"
    __table_args__ = (
        CheckConstraint("weight >= 0 AND weight <= 1", name="weight_check"),
        UniqueConstraint("version", "factor_category", name="uq_weight_version_category"),
    )
    id = Column(Integer, primary_key=True, index=True)
    version = Column(Integer, index=True, nullable=False)
    factor_category = Column(String(50), nullable=False)
    weight = Column(Float, nullable=False)
    effective_from = Column(DateTime(timezone=True), server_default=func.now())
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class WeightHistory(Base):
    __tablename__ = "churn_weight_history"
    id = Column(String(36), primary_key=True, default=_uuid)
    version = Column(Integer, nullable=False)
    changed_by = Column(String(128), nullable=False)
    change_reason = Column(Text, nullable=False)
    case_study_student_id = Column(String(128), ForeignKey("students.user_id", ondelete="SET NULL"))
    old_weights = Column(JSON, nullable=False)
    new_weights = Column(JSON, nullable=False)
    accuracy_before = Column(Float)
    accuracy_after = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class LearningEventRecord(Base):
    __tablename__ = "learning_events"
    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String(128), index=True, nullable=False)
    churn_date = Column(Date)
    predicted_risk = Column(Float, nullable=False)
    predicted_level = Column(String, nullable=False)
    actual_outcome = Column(String, nullable=False)   # churned | active
    was_prediction_correct = Column(Boolean, nullable=False)
    suggested_weights = Column(JSON, nullable=False)
    rationale = Column(Text, nullable=False)
    factor_analysis = Column(JSON, nullable=False)   # [{"factor", "current_weight", "suggested_weight", "reason"}]
    weights_version = Column(Integer, nullable=False, default=0)   # weights in force when the prediction was made
    survey_response = Column(Text)
    is_correction = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), index=True, nullable=False)

    # one original event per student; corrections are extra rows
    __table_args__ = (
        Index(
            "uq_learning_event_student", "student_id", unique=True,
            sqlite_where=text("is_correction = 0"), postgresql_where=text("NOT is_correction"),
        ),
    )

class AppendOnlyViolation(Exception):
    pass

# learning events are an audit trail: corrections are new rows, never edits
@event.listens_for(LearningEventRecord, "before_update")
def _refuse_update(mapper, connection, target):
    raise AppendOnlyViolation(f"learning event for student {target.student_id} is immutable")

@event.listens_for(LearningEventRecord, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"learning event for student {target.student_id} cannot be deleted")
