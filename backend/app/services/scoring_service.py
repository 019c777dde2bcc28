from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import assert_never

from app.core.config import settings
from app.core.errors import PayloadValidationError
from app.models.attempt import Attempt
from app.models.catalog import Assessment
from app.schemas.assessment import FileUploadQuestion, McqQuestion, Question, SubjectiveQuestion
from app.schemas.attempt import (
    AttemptAnswer,
    AttemptSection,
    FileUploadAnswer,
    ManualGradeEntry,
    McqAnswer,
    SubjectiveAnswer,
)


logger = logging.getLogger(__name__)


class MalformedAnswerError(ValueError):
    pass


@dataclass(frozen=True)
class GradeOutcome:
    marks_awarded: float
    is_graded: bool


def grade_answer(question: Question, answer: AttemptAnswer, *, negative_marking: bool = False) -> GradeOutcome:
    """Marks for one answer. Subjective and file answers keep whatever a human last set."""
    if isinstance(question, McqQuestion):
        if not isinstance(answer, McqAnswer):
            raise MalformedAnswerError(f'Question {question.id} expects an mcq answer')
        if answer.selected_option is None:
            return GradeOutcome(marks_awarded=0.0, is_graded=True)
        if answer.selected_option < 0 or answer.selected_option >= len(question.options):
            raise MalformedAnswerError(f'Option {answer.selected_option} is out of range for question {question.id}')
        correct_index = question.correct_option_index
        if correct_index is None:
            raise MalformedAnswerError(f'Question {question.id} has no correct option')
        if answer.selected_option == correct_index:
            return GradeOutcome(marks_awarded=float(question.positive_marks), is_graded=True)
        if negative_marking and question.negative_marks:
            return GradeOutcome(marks_awarded=-float(question.negative_marks), is_graded=True)
        return GradeOutcome(marks_awarded=0.0, is_graded=True)

    if isinstance(question, SubjectiveQuestion):
        if not isinstance(answer, SubjectiveAnswer):
            raise MalformedAnswerError(f'Question {question.id} expects a subjective answer')
        return GradeOutcome(marks_awarded=answer.marks_awarded, is_graded=answer.is_graded)

    if isinstance(question, FileUploadQuestion):
        if not isinstance(answer, FileUploadAnswer):
            raise MalformedAnswerError(f'Question {question.id} expects a file answer')
        return GradeOutcome(marks_awarded=answer.marks_awarded, is_graded=answer.is_graded)

    assert_never(question)


def auto_grade_sections(
    sections: list[AttemptSection],
    questions_by_id: dict[str, Question],
    *,
    negative_marking: bool = False,
) -> list[AttemptSection]:
    graded: list[AttemptSection] = []
    for section in sections:
        answers: list[AttemptAnswer] = []
        for answer in section.answers:
            question = questions_by_id.get(answer.question_id)
            try:
                if question is None:
                    raise MalformedAnswerError(f'Question {answer.question_id} is no longer in the catalog')
                outcome = grade_answer(question, answer, negative_marking=negative_marking)
            except MalformedAnswerError as exc:
                logger.warning('Scoring answer %s as zero: %s', answer.question_id, exc)
                outcome = GradeOutcome(marks_awarded=0.0, is_graded=isinstance(answer, McqAnswer))
            answers.append(
                answer.model_copy(update={'marks_awarded': outcome.marks_awarded, 'is_graded': outcome.is_graded})
            )
        graded.append(section.model_copy(update={'answers': answers}))
    return graded


def with_section_totals(sections: list[AttemptSection]) -> tuple[list[AttemptSection], float]:
    total = 0.0
    updated: list[AttemptSection] = []
    for section in sections:
        section_total = sum(answer.marks_awarded for answer in section.answers)
        total += section_total
        updated.append(section.model_copy(update={'total_marks_awarded': section_total}))
    return updated, total


def compute_percentage(total_marks_awarded: float, total_marks: float) -> float:
    if total_marks <= 0:
        return 0.0
    percentage = (total_marks_awarded / total_marks) * 100
    return min(100.0, max(0.0, percentage))


def passing_percentage(assessment: Assessment, total_marks: float) -> float:
    if assessment.passing_percentage is not None:
        return float(assessment.passing_percentage)
    if assessment.passing_marks is not None and total_marks > 0:
        return (float(assessment.passing_marks) / total_marks) * 100
    if assessment.kind == 'quiz':
        return settings.DEFAULT_QUIZ_PASSING_PERCENTAGE
    return settings.DEFAULT_EXAM_PASSING_PERCENTAGE


def all_answers_graded(sections: list[AttemptSection]) -> bool:
    return all(answer.is_graded for section in sections for answer in section.answers)


def apply_manual_grades(
    sections: list[AttemptSection],
    grades: dict[str, dict[str, ManualGradeEntry]],
) -> tuple[list[AttemptSection], int]:
    """
    Overwrite grading fields of the addressed answers. Learner-entered fields are
    never touched. Unknown section or question ids are skipped.
    """
    applied = 0
    updated: list[AttemptSection] = []
    for section in sections:
        section_grades = grades.get(section.section_id) or {}
        answers: list[AttemptAnswer] = []
        for answer in section.answers:
            entry = section_grades.get(answer.question_id)
            if entry is None:
                answers.append(answer)
                continue
            marks = entry.marks_awarded
            if not math.isfinite(marks) or marks < 0 or marks > answer.max_marks:
                raise PayloadValidationError(
                    f'Marks for question {answer.question_id} must be between 0 and {answer.max_marks:g}',
                    section_id=section.section_id,
                    question_id=answer.question_id,
                )
            answers.append(
                answer.model_copy(
                    update={'marks_awarded': float(marks), 'feedback': entry.feedback, 'is_graded': True}
                )
            )
            applied += 1
        updated.append(section.model_copy(update={'answers': answers}))
    return updated, applied


def load_sections(attempt: Attempt) -> list[AttemptSection]:
    return [AttemptSection.model_validate(item) for item in attempt.sections or []]


def store_sections(attempt: Attempt, assessment: Assessment, sections: list[AttemptSection]) -> None:
    """
    Write answer state back onto the attempt and recompute every derived field.

    This is the only place that sets `total_marks_awarded`, so the stored total is
    always the sum of the stored per-answer marks.
    """
    sections, total = with_section_totals(sections)
    attempt.sections = [section.model_dump(mode='json') for section in sections]
    attempt.total_marks_awarded = total
    attempt.percentage = compute_percentage(total, attempt.total_marks)
    attempt.is_passed = attempt.percentage >= passing_percentage(assessment, attempt.total_marks)
