"""
Learning Event Ledger

Append-only store of learning events. One event is recorded when a student's
real outcome becomes known; it is never edited or deleted afterwards. A later
re-analysis is written as a new event flagged as a correction.

Uniqueness of the original event is enforced by a partial unique index, so two
writers racing for the same student cannot both succeed.
"""
import logging
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models_db import LearningEventRecord
from ..utils.learning import LearningEvent

log = logging.getLogger(__name__)

class DuplicateLearningEventError(Exception):
    def __init__(self, student_id: str):
        self.student_id = student_id
        super().__init__(f"a learning event already exists for student {student_id}")

class LearningEventLedger:
    def __init__(self, db: Session):
        self.db = db

    def has_event(self, student_id: str) -> bool:
        return (
            self.db.query(LearningEventRecord.id)
            .filter(LearningEventRecord.student_id == student_id)
            .first()
        ) is not None

    def append(self, event: LearningEvent, is_correction: bool = False) -> LearningEventRecord:
        """
        Write one event in a single commit.

        Raises DuplicateLearningEventError when the student already has an
        event and this one is not a correction.
        """
        if not is_correction and self.has_event(event.student_id):
            raise DuplicateLearningEventError(event.student_id)

        record = LearningEventRecord(
            student_id=event.student_id,
            churn_date=event.churn_date,
            predicted_risk=event.predicted_risk,
            predicted_level=event.predicted_level,
            actual_outcome=event.actual_outcome,
            was_prediction_correct=event.was_prediction_correct,
            suggested_weights=event.suggested_weights.to_dict(),
            rationale=event.rationale,
            factor_analysis=[fa.to_dict() for fa in event.factor_analysis],
            weights_version=event.weights_version,
            survey_response=event.survey_response,
            is_correction=is_correction,
            created_at=event.created_at,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            # lost the race to another writer between has_event and commit
            self.db.rollback()
            raise DuplicateLearningEventError(event.student_id) from None
        self.db.refresh(record)
        log.info(
            "learning event recorded for student %s (correct=%s, correction=%s)",
            event.student_id, event.was_prediction_correct, is_correction,
        )
        return record

    def events_for(self, student_id: str) -> List[LearningEventRecord]:
        return (
            self.db.query(LearningEventRecord)
            .filter(LearningEventRecord.student_id == student_id)
            .order_by(LearningEventRecord.created_at.asc(), LearningEventRecord.id.asc())
            .all()
        )

    def recent(self, limit: int = 20) -> List[LearningEventRecord]:
        return (
            self.db.query(LearningEventRecord)
            .order_by(LearningEventRecord.created_at.desc(), LearningEventRecord.id.desc())
            .limit(limit)
            .all()
        )
