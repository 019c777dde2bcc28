import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base_class import Base, JSONDocument
from app.models.attempt import Attempt
from app.models.mixins import TimestampMixin, UUIDPrimaryKeyMixin


class Grade(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = 'grades'
    __table_args__ = (
        UniqueConstraint('attempt_id', name='uq_grades_attempt'),
        CheckConstraint("status in ('pass', 'fail')", name='grade_status_values'),
        CheckConstraint("kind in ('exam', 'quiz')", name='grade_kind_values'),
    )

    attempt_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey('attempts.id', ondelete='CASCADE'), nullable=False
    )
    assessment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey('assessments.id', ondelete='CASCADE'), nullable=False
    )
    learner_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    # [{section_id, section_name, questions: [...], total_marks_awarded, max_section_marks}]
    sections: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument, nullable=False, default=list)
    total_marks_awarded: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    max_marks: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    graded_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    graded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    attempt: Mapped['Attempt'] = relationship()


Index('ix_grades_learner_id', Grade.learner_id)
Index('ix_grades_assessment_id', Grade.assessment_id)
