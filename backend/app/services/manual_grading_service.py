from datetime import datetime
import logging
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.errors import AlreadyGradedError, ForbiddenError, NotEligibleError
from app.core.security import Principal
from app.models.attempt import Attempt
from app.models.constants import ATTEMPT_STATUS_GRADED
from app.models.grade import Grade
from app.schemas.attempt import ManualGradeEntry
from app.services import attempt_service, catalog_service, grade_service, scoring_service


logger = logging.getLogger(__name__)


def grade_attempt(
    db: Session,
    *,
    attempt_id: UUID,
    principal: Principal,
    grades: dict[str, dict[str, ManualGradeEntry]],
    now: datetime | None = None,
) -> tuple[Attempt, Grade | None]:
    """
    Record human marks for subjective and file answers.

    Grading may be done in several passes. The Grade record is only projected once
    every answer on the attempt carries a mark; before that the attempt stays
    finalized and the returned grade is None.
    """
    attempt = attempt_service.get_attempt_by_id(db, attempt_id)
    if not catalog_service.can_manage(principal, attempt.assessment):
        raise ForbiddenError('You do not have permission to grade this attempt')

    attempt_service.sweep_expiry(db, attempt, now=now)
    if attempt.is_in_progress:
        raise NotEligibleError(
            'This attempt has not been submitted yet',
            error_code='ATTEMPT_NOT_FINALIZED',
            attempt_id=str(attempt.id),
        )
    if attempt.status == ATTEMPT_STATUS_GRADED or grade_service.get_grade_for_attempt(db, attempt.id):
        raise AlreadyGradedError(
            'Grade already exists for this attempt, update the grade instead',
            attempt_id=str(attempt.id),
        )

    sections, applied = scoring_service.apply_manual_grades(scoring_service.load_sections(attempt), grades)
    scoring_service.store_sections(attempt, attempt.assessment, sections)

    grade = None
    if scoring_service.all_answers_graded(sections):
        attempt.is_graded = True
        attempt.status = ATTEMPT_STATUS_GRADED
        db.flush()
        grade = grade_service.project_grade(db, attempt, graded_by=principal.id)
    else:
        db.flush()

    logger.info(
        'Attempt %s manually graded by %s: %s answers marked, complete=%s',
        attempt.id,
        principal.id,
        applied,
        grade is not None,
    )
    return attempt, grade
