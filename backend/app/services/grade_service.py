from datetime import UTC, datetime
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from app.core.errors import AlreadyGradedError, ForbiddenError, NotFoundError
from app.core.security import Principal
from app.models.attempt import Attempt
from app.models.grade import Grade
from app.schemas.attempt import ManualGradeEntry
from app.services import catalog_service, scoring_service


logger = logging.getLogger(__name__)


def get_grade_for_attempt(db: Session, attempt_id: UUID) -> Grade | None:
    return db.scalar(select(Grade).where(Grade.attempt_id == attempt_id))


def _grade_sections(attempt: Attempt) -> list[dict[str, Any]]:
    payload = []
    for section in scoring_service.load_sections(attempt):
        payload.append(
            {
                'section_id': section.section_id,
                'section_name': section.section_name,
                'questions': [
                    {
                        'question_id': answer.question_id,
                        'marks_awarded': answer.marks_awarded,
                        'max_marks': answer.max_marks,
                        'feedback': answer.feedback,
                    }
                    for answer in section.answers
                ],
                'total_marks_awarded': section.total_marks_awarded,
                'max_section_marks': sum(answer.max_marks for answer in section.answers),
            }
        )
    return payload


def _fill_grade(grade: Grade, attempt: Attempt, *, graded_by: UUID | None) -> None:
    threshold = scoring_service.passing_percentage(attempt.assessment, attempt.total_marks)
    grade.sections = _grade_sections(attempt)
    grade.total_marks_awarded = attempt.total_marks_awarded
    grade.max_marks = attempt.total_marks
    grade.percentage = attempt.percentage
    grade.status = 'pass' if attempt.percentage >= threshold else 'fail'
    grade.graded_by = graded_by
    grade.graded_at = datetime.now(UTC)


def project_grade(db: Session, attempt: Attempt, *, graded_by: UUID | None) -> Grade:
    """Materialize the reporting record for a fully graded attempt. At most one per attempt."""
    if get_grade_for_attempt(db, attempt.id):
        raise AlreadyGradedError('Grade already exists for this attempt', attempt_id=str(attempt.id))

    grade = Grade(
        attempt_id=attempt.id,
        assessment_id=attempt.assessment_id,
        learner_id=attempt.learner_id,
        kind=attempt.kind,
    )
    _fill_grade(grade, attempt, graded_by=graded_by)
    try:
        with db.begin_nested():
            db.add(grade)
            db.flush()
    except IntegrityError as exc:
        raise AlreadyGradedError('Grade already exists for this attempt', attempt_id=str(attempt.id)) from exc

    logger.info('Grade %s projected for attempt %s (%s)', grade.id, attempt.id, grade.status)
    return grade


def get_grade(db: Session, *, grade_id: UUID, principal: Principal) -> Grade:
    grade = db.scalar(
        select(Grade).where(Grade.id == grade_id).options(joinedload(Grade.attempt).joinedload(Attempt.assessment))
    )
    if not grade:
        raise NotFoundError('Grade not found', error_code='GRADE_NOT_FOUND')
    if grade.learner_id != principal.id and not catalog_service.can_manage(principal, grade.attempt.assessment):
        raise ForbiddenError('You do not have permission to view this grade')
    return grade


def list_grades(db: Session, *, principal: Principal) -> list[Grade]:
    if not principal.is_staff:
        raise ForbiddenError('Only tutors and admins can list all grades')
    return db.scalars(select(Grade).order_by(Grade.graded_at.desc())).all()


def list_grades_for_user(db: Session, *, user_id: UUID, principal: Principal) -> list[Grade]:
    if user_id != principal.id and not principal.is_staff:
        raise ForbiddenError('You do not have permission to view these grades')
    return db.scalars(select(Grade).where(Grade.learner_id == user_id).order_by(Grade.graded_at.desc())).all()


def update_grade(
    db: Session,
    *,
    grade_id: UUID,
    principal: Principal,
    grades: dict[str, dict[str, ManualGradeEntry]],
) -> Grade:
    """Regrade: push the new marks into the attempt, then rebuild this grade from it."""
    grade = get_grade(db, grade_id=grade_id, principal=principal)
    attempt = grade.attempt
    if not catalog_service.can_manage(principal, attempt.assessment):
        raise ForbiddenError('You do not have permission to update this grade')

    sections, applied = scoring_service.apply_manual_grades(scoring_service.load_sections(attempt), grades)
    scoring_service.store_sections(attempt, attempt.assessment, sections)
    _fill_grade(grade, attempt, graded_by=principal.id)
    db.flush()
    logger.info('Grade %s updated by %s (%s answers changed)', grade.id, principal.id, applied)
    return grade
