from uuid import UUID

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import NotFoundError, PayloadValidationError
from app.core.security import Principal
from app.models.catalog import Assessment, Enrollment
from app.schemas.assessment import CatalogSection, DisplayQuestion, McqQuestion, FileUploadQuestion, Question


_sections_adapter = TypeAdapter(list[CatalogSection])


def get_assessment(db: Session, assessment_id: UUID) -> Assessment:
    assessment = db.scalar(select(Assessment).where(Assessment.id == assessment_id))
    if not assessment:
        raise NotFoundError('Assessment not found', error_code='EXAM_NOT_FOUND')
    return assessment


def parse_sections(assessment: Assessment) -> list[CatalogSection]:
    try:
        return _sections_adapter.validate_python(assessment.sections or [])
    except ValidationError as exc:
        raise PayloadValidationError(
            'Assessment definition is malformed',
            error_code='INVALID_ASSESSMENT',
            assessment_id=str(assessment.id),
        ) from exc


def questions_by_id(sections: list[CatalogSection]) -> dict[str, Question]:
    return {question.id: question for section in sections for question in section.questions}


def find_question(sections: list[CatalogSection], section_id: str, question_id: str) -> Question | None:
    for section in sections:
        if section.id != section_id:
            continue
        for question in section.questions:
            if question.id == question_id:
                return question
    return None


def total_marks(sections: list[CatalogSection]) -> float:
    return float(sum(section.max_marks for section in sections))


def question_count(sections: list[CatalogSection]) -> int:
    return sum(len(section.questions) for section in sections)


def effective_duration_minutes(assessment: Assessment, sections: list[CatalogSection]) -> int:
    if assessment.duration_minutes:
        return int(assessment.duration_minutes)
    if assessment.kind == 'quiz':
        return question_count(sections) * settings.QUIZ_MINUTES_PER_QUESTION
    raise PayloadValidationError(
        'Exam has no duration configured',
        error_code='INVALID_ASSESSMENT',
        assessment_id=str(assessment.id),
    )


def display_questions(sections: list[CatalogSection]) -> list[DisplayQuestion]:
    """Questions in catalog order with every correct-answer field stripped."""
    payload = []
    for section in sections:
        for question in section.questions:
            payload.append(
                DisplayQuestion(
                    id=question.id,
                    section_id=section.id,
                    section_title=section.title,
                    type=question.type,
                    prompt=question.prompt,
                    marks=question.max_marks,
                    options=[option.text for option in question.options] if isinstance(question, McqQuestion) else None,
                    file_type=question.file_type if isinstance(question, FileUploadQuestion) else None,
                )
            )
    return payload


def is_eligible(db: Session, *, learner_id: UUID, assessment: Assessment) -> bool:
    enrollment_id = db.scalar(
        select(Enrollment.id).where(
            Enrollment.course_id == assessment.course_id,
            Enrollment.user_id == learner_id,
            Enrollment.is_enrolled.is_(True),
        )
    )
    return enrollment_id is not None


def can_manage(principal: Principal, assessment: Assessment) -> bool:
    """Admins, tutors and the assessment's owner may review and grade its attempts."""
    return principal.is_staff or assessment.owner_id == principal.id
