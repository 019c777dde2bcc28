import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base_class import Base, JSONDocument
from app.models.mixins import TimestampMixin, UUIDPrimaryKeyMixin


class Assessment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Exam or quiz definition, owned by course authoring and read-only here."""

    __tablename__ = 'assessments'
    __table_args__ = (
        CheckConstraint("kind in ('exam', 'quiz')", name='assessment_kind_values'),
    )

    kind: Mapped[str] = mapped_column(String(20), nullable=False, default='exam', index=True)
    course_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # [{id, title, questions: [{id, type, prompt, options, marks, positive_marks, negative_marks, file_type}]}]
    sections: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument, nullable=False, default=list)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    passing_marks: Mapped[float | None] = mapped_column(Float, nullable=True)
    passing_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    negative_marking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Enrollment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = 'enrollments'
    __table_args__ = (
        UniqueConstraint('course_id', 'user_id', name='uq_enrollments_course_user'),
    )

    course_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    is_enrolled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


Index('ix_assessments_course_id', Assessment.course_id)
Index('ix_enrollments_user_id', Enrollment.user_id)
