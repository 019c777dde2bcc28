import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base_class import Base, JSONDocument
from app.models.catalog import Assessment
from app.models.constants import (
    ATTEMPT_STATUS_GRADED,
    ATTEMPT_STATUS_IN_PROGRESS,
    FINALIZE_REASON_TIMED_OUT,
)
from app.models.mixins import TimestampMixin, UUIDPrimaryKeyMixin


class Attempt(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = 'attempts'
    __table_args__ = (
        UniqueConstraint(
            'assessment_id', 'learner_id', 'attempt_number', name='uq_attempts_assessment_learner_number'
        ),
        CheckConstraint(
            "status in ('in_progress', 'finalized', 'graded')",
            name='attempt_status_values',
        ),
        CheckConstraint(
            "finalize_reason is null or finalize_reason in ('submitted', 'timed_out')",
            name='attempt_finalize_reason_values',
        ),
    )

    assessment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey('assessments.id', ondelete='CASCADE'), nullable=False
    )
    learner_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default='in_progress')
    finalize_reason: Mapped[str | None] = mapped_column(String(30), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    time_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    # [{section_id, section_name, total_marks_awarded, answers: [{question_id, question_type, max_marks, ...}]}]
    sections: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument, nullable=False, default=list)
    total_marks: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total_marks_awarded: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    is_passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_graded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    assessment: Mapped['Assessment'] = relationship()

    __mapper_args__ = {'version_id_col': version}

    @property
    def kind(self) -> str:
        return self.assessment.kind

    @property
    def state(self) -> str:
        return self.status

    @property
    def is_in_progress(self) -> bool:
        return self.status == ATTEMPT_STATUS_IN_PROGRESS

    @property
    def display_status(self) -> str:
        """Status label used by existing clients (`completed` is the quiz spelling of `submitted`)."""
        if self.status == ATTEMPT_STATUS_IN_PROGRESS:
            return 'in-progress'
        if self.status == ATTEMPT_STATUS_GRADED:
            return 'graded'
        if self.finalize_reason == FINALIZE_REASON_TIMED_OUT:
            return 'timed-out'
        return 'completed' if self.kind == 'quiz' else 'submitted'

    @property
    def display_time_remaining(self) -> int | None:
        return self.time_remaining if self.is_in_progress else None


Index('ix_attempts_learner_id', Attempt.learner_id)
Index('ix_attempts_assessment_id', Attempt.assessment_id)
Index(
    'uq_attempts_one_in_progress',
    Attempt.assessment_id,
    Attempt.learner_id,
    unique=True,
    postgresql_where=Attempt.status == ATTEMPT_STATUS_IN_PROGRESS,
    sqlite_where=Attempt.status == ATTEMPT_STATUS_IN_PROGRESS,
)
