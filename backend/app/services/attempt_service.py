from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from app.core.config import settings
from app.core.errors import (
    AttemptFinalizedError,
    ConcurrentModificationError,
    ForbiddenError,
    NotEligibleError,
    NotFoundError,
    PayloadValidationError,
)
from app.core.security import Principal
from app.models.attempt import Attempt
from app.models.catalog import Assessment
from app.models.constants import (
    ATTEMPT_STATUS_FINALIZED,
    ATTEMPT_STATUS_IN_PROGRESS,
    FINALIZE_REASON_SUBMITTED,
    FINALIZE_REASON_TIMED_OUT,
)
from app.schemas.assessment import (
    AssessmentInfoOut,
    CatalogSection,
    DisplayQuestion,
    FileUploadQuestion,
    McqQuestion,
    Question,
    SubjectiveQuestion,
)
from app.schemas.attempt import (
    AnswerPatch,
    AttemptAnswer,
    AttemptSection,
    FileUploadAnswer,
    McqAnswer,
    SubjectiveAnswer,
)
from app.services import catalog_service, grade_service, scoring_service, timer_service
from app.services.storage_service import BlobMetadata, BlobStorage, StoredBlob


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptHandle:
    """Identifies the attempt a learner is acting on, optionally pinned to a known version."""

    attempt_id: UUID
    learner_id: UUID
    expected_version: int | None = None


@dataclass
class StartResult:
    attempt: Attempt
    resumed: bool
    questions: list[DisplayQuestion]


def _now(now: datetime | None) -> datetime:
    return timer_service.as_utc(now) if now else datetime.now(UTC)


def _result_url(attempt: Attempt) -> str:
    return f'/exams/result/{attempt.id}' if attempt.kind == 'exam' else f'/quizzes/result/{attempt.id}'


def build_skeleton(sections: list[CatalogSection]) -> list[AttemptSection]:
    """Empty answer slots for every question, fixed for the lifetime of the attempt."""
    skeleton = []
    for section in sections:
        answers: list[AttemptAnswer] = []
        for question in section.questions:
            if isinstance(question, McqQuestion):
                answers.append(McqAnswer(question_id=question.id, max_marks=question.max_marks))
            elif isinstance(question, SubjectiveQuestion):
                answers.append(SubjectiveAnswer(question_id=question.id, max_marks=question.max_marks))
            elif isinstance(question, FileUploadQuestion):
                answers.append(FileUploadAnswer(question_id=question.id, max_marks=question.max_marks))
        skeleton.append(AttemptSection(section_id=section.id, section_name=section.title, answers=answers))
    return skeleton


def get_attempt_by_id(db: Session, attempt_id: UUID) -> Attempt:
    attempt = db.scalar(
        select(Attempt).where(Attempt.id == attempt_id).options(joinedload(Attempt.assessment))
    )
    if not attempt:
        raise NotFoundError('Attempt not found', error_code='ATTEMPT_NOT_FOUND')
    return attempt


def _owned_attempt(db: Session, handle: AttemptHandle) -> Attempt:
    attempt = get_attempt_by_id(db, handle.attempt_id)
    if attempt.learner_id != handle.learner_id:
        raise ForbiddenError('You do not have permission to modify this attempt')
    if handle.expected_version is not None and handle.expected_version != attempt.version:
        raise ConcurrentModificationError(
            'The attempt has changed since it was last read',
            attempt_id=str(attempt.id),
            current_version=attempt.version,
        )
    return attempt


def _in_progress_attempt(db: Session, *, learner_id: UUID, assessment_id: UUID) -> Attempt | None:
    return db.scalar(
        select(Attempt)
        .where(
            Attempt.assessment_id == assessment_id,
            Attempt.learner_id == learner_id,
            Attempt.status == ATTEMPT_STATUS_IN_PROGRESS,
        )
        .order_by(Attempt.started_at.desc())
        .options(joinedload(Attempt.assessment))
    )


def _finalize(db: Session, attempt: Attempt, *, reason: str, now: datetime) -> None:
    assessment = attempt.assessment
    catalog = catalog_service.parse_sections(assessment)
    sections = scoring_service.auto_grade_sections(
        scoring_service.load_sections(attempt),
        catalog_service.questions_by_id(catalog),
        negative_marking=assessment.negative_marking,
    )
    scoring_service.store_sections(attempt, assessment, sections)

    if reason == FINALIZE_REASON_TIMED_OUT:
        attempt.time_remaining = 0
    else:
        attempt.time_remaining = timer_service.reconcile_cached_remaining(
            attempt.time_remaining, attempt.started_at, attempt.duration_minutes, now=now
        )
    attempt.status = ATTEMPT_STATUS_FINALIZED
    attempt.finalize_reason = reason
    attempt.submitted_at = now
    attempt.is_graded = scoring_service.all_answers_graded(sections)
    db.flush()

    logger.info(
        'Attempt %s finalized (%s): %s/%s marks, graded=%s',
        attempt.id,
        reason,
        attempt.total_marks_awarded,
        attempt.total_marks,
        attempt.is_graded,
    )
    if attempt.is_graded:
        grade_service.project_grade(db, attempt, graded_by=None)


def sweep_expiry(db: Session, attempt: Attempt, *, now: datetime | None = None) -> bool:
    """
    Reconcile an attempt's timer against the server clock. Returns True when this
    call moved the attempt to timed-out.
    """
    if not attempt.is_in_progress:
        return False
    current = _now(now)
    if timer_service.is_expired(attempt.started_at, attempt.duration_minutes, now=current):
        _finalize(db, attempt, reason=FINALIZE_REASON_TIMED_OUT, now=current)
        return True

    cached = timer_service.reconcile_cached_remaining(
        attempt.time_remaining, attempt.started_at, attempt.duration_minutes, now=current
    )
    if cached != attempt.time_remaining:
        attempt.time_remaining = cached
        db.flush()
    return False


def _ensure_mutable(db: Session, attempt: Attempt, *, now: datetime) -> None:
    if not attempt.is_in_progress:
        raise AttemptFinalizedError(
            'This attempt has already been submitted',
            error_code='ALREADY_SUBMITTED',
            attempt_id=str(attempt.id),
            status=attempt.display_status,
        )
    if sweep_expiry(db, attempt, now=now):
        raise AttemptFinalizedError(
            'Your time for this attempt has expired',
            error_code='TIME_EXPIRED',
            attempt_id=str(attempt.id),
            status=attempt.display_status,
        )


def _attempt_counts(db: Session, *, learner_id: UUID, assessment_id: UUID) -> tuple[int, int]:
    rows = db.execute(
        select(Attempt.status, func.count())
        .where(Attempt.assessment_id == assessment_id, Attempt.learner_id == learner_id)
        .group_by(Attempt.status)
    ).all()
    total = sum(int(count or 0) for _, count in rows)
    finished = sum(int(count or 0) for status_value, count in rows if status_value != ATTEMPT_STATUS_IN_PROGRESS)
    return total, finished


def _check_window(assessment: Assessment, *, now: datetime) -> None:
    if assessment.starts_at and now < timer_service.as_utc(assessment.starts_at):
        raise NotEligibleError(
            'This exam has not started yet',
            error_code='EXAM_NOT_STARTED',
            exam_start_time=timer_service.as_utc(assessment.starts_at).isoformat(),
        )
    if assessment.ends_at and now > timer_service.as_utc(assessment.ends_at):
        raise NotEligibleError('This exam has already ended', error_code='EXAM_ENDED')
    if assessment.deadline and now > timer_service.as_utc(assessment.deadline):
        raise NotEligibleError('The deadline for this quiz has passed', error_code='DEADLINE_PASSED')


def start_attempt(
    db: Session,
    *,
    learner_id: UUID,
    assessment_id: UUID,
    now: datetime | None = None,
) -> StartResult:
    current = _now(now)
    assessment = catalog_service.get_assessment(db, assessment_id)
    if not assessment.is_published:
        raise NotEligibleError('This exam is not available yet', error_code='EXAM_NOT_PUBLISHED')
    if not catalog_service.is_eligible(db, learner_id=learner_id, assessment=assessment):
        raise NotEligibleError('You are not enrolled in this course', error_code='NOT_ENROLLED')

    catalog = catalog_service.parse_sections(assessment)

    existing = _in_progress_attempt(db, learner_id=learner_id, assessment_id=assessment.id)
    if existing:
        if sweep_expiry(db, existing, now=current):
            raise AttemptFinalizedError(
                'Your time for this exam has expired',
                error_code='TIME_EXPIRED',
                attempt_id=str(existing.id),
                status=existing.display_status,
                total_marks_awarded=existing.total_marks_awarded,
                percentage=existing.percentage,
                redirect_url=_result_url(existing),
            )
        logger.info('Resuming attempt %s for learner %s', existing.id, learner_id)
        return StartResult(attempt=existing, resumed=True, questions=catalog_service.display_questions(catalog))

    total_attempts, finished_attempts = _attempt_counts(db, learner_id=learner_id, assessment_id=assessment.id)
    if assessment.kind == 'exam' and finished_attempts > 0:
        completed = db.scalar(
            select(Attempt)
            .where(
                Attempt.assessment_id == assessment.id,
                Attempt.learner_id == learner_id,
                Attempt.status != ATTEMPT_STATUS_IN_PROGRESS,
            )
            .order_by(Attempt.started_at.desc())
        )
        raise AttemptFinalizedError(
            'You have already completed this exam',
            error_code='ALREADY_COMPLETED',
            attempt_id=str(completed.id),
            status=completed.display_status,
            submitted_at=completed.submitted_at.isoformat() if completed.submitted_at else None,
            total_marks_awarded=completed.total_marks_awarded,
            percentage=completed.percentage,
            redirect_url=_result_url(completed),
        )
    if assessment.kind == 'quiz' and assessment.max_attempts and finished_attempts >= assessment.max_attempts:
        raise NotEligibleError(
            f'You have reached the maximum number of attempts ({assessment.max_attempts})',
            error_code='MAX_ATTEMPTS_REACHED',
            max_attempts=assessment.max_attempts,
            attempts_used=finished_attempts,
        )
    _check_window(assessment, now=current)

    duration = catalog_service.effective_duration_minutes(assessment, catalog)
    attempt = Attempt(
        assessment_id=assessment.id,
        learner_id=learner_id,
        attempt_number=total_attempts + 1,
        status=ATTEMPT_STATUS_IN_PROGRESS,
        started_at=current,
        duration_minutes=duration,
        time_remaining=timer_service.duration_seconds(duration),
        total_marks=catalog_service.total_marks(catalog),
    )
    attempt.assessment = assessment
    scoring_service.store_sections(attempt, assessment, build_skeleton(catalog))

    try:
        with db.begin_nested():
            db.add(attempt)
            db.flush()
    except IntegrityError as exc:
        # A concurrent start won the insert; hand back its attempt instead.
        winner = _in_progress_attempt(db, learner_id=learner_id, assessment_id=assessment.id)
        if winner is None:
            raise ConcurrentModificationError('Another attempt was started concurrently, please retry') from exc
        logger.info('Concurrent start for learner %s resolved to attempt %s', learner_id, winner.id)
        return StartResult(attempt=winner, resumed=True, questions=catalog_service.display_questions(catalog))

    logger.info(
        'Started attempt %s (#%s) on %s %s for learner %s',
        attempt.id,
        attempt.attempt_number,
        assessment.kind,
        assessment.id,
        learner_id,
    )
    return StartResult(attempt=attempt, resumed=False, questions=catalog_service.display_questions(catalog))


def get_questions_for_display(
    db: Session, *, handle: AttemptHandle, now: datetime | None = None
) -> tuple[Attempt, list[DisplayQuestion]]:
    attempt = _owned_attempt(db, handle)
    _ensure_mutable(db, attempt, now=_now(now))
    catalog = catalog_service.parse_sections(attempt.assessment)
    return attempt, catalog_service.display_questions(catalog)


def _merge_patch(answer: AttemptAnswer, patch: AnswerPatch, question: Question | None) -> AttemptAnswer:
    sent = patch.model_fields_set
    if isinstance(answer, McqAnswer):
        option_count = len(question.options) if isinstance(question, McqQuestion) else None
        if 'selected_option' in sent:
            selected = patch.selected_option
        elif 'answer' in sent and option_count is not None:
            # Clients may send the option text instead of its index.
            texts = [option.text for option in question.options]
            if patch.answer not in texts:
                return answer
            selected = texts.index(patch.answer)
        else:
            return answer
        if selected is not None and option_count is not None and selected >= option_count:
            raise PayloadValidationError(
                f'Option {selected} does not exist for question {answer.question_id}',
                question_id=answer.question_id,
            )
        return answer.model_copy(update={'selected_option': selected})

    if isinstance(answer, (SubjectiveAnswer, FileUploadAnswer)):
        if 'answer' in sent:
            return answer.model_copy(update={'answer': patch.answer})
        return answer

    raise PayloadValidationError(f'Unsupported answer type for question {answer.question_id}')


def save_answers(
    db: Session,
    *,
    handle: AttemptHandle,
    answers: list[AnswerPatch],
    client_time_remaining: int | None = None,
    now: datetime | None = None,
) -> Attempt:
    current = _now(now)
    attempt = _owned_attempt(db, handle)
    _ensure_mutable(db, attempt, now=current)

    questions = catalog_service.questions_by_id(catalog_service.parse_sections(attempt.assessment))
    patches = {patch.question_id: patch for patch in answers}
    sections = scoring_service.load_sections(attempt)
    merged = 0
    updated_sections = []
    for section in sections:
        updated_answers = []
        for answer in section.answers:
            patch = patches.get(answer.question_id)
            if patch is None:
                updated_answers.append(answer)
                continue
            updated_answers.append(_merge_patch(answer, patch, questions.get(answer.question_id)))
            merged += 1
        updated_sections.append(section.model_copy(update={'answers': updated_answers}))

    if merged < len(patches):
        logger.debug('Ignored %s answers for unknown questions on attempt %s', len(patches) - merged, attempt.id)

    scoring_service.store_sections(attempt, attempt.assessment, updated_sections)
    attempt.time_remaining = timer_service.reconcile_cached_remaining(
        attempt.time_remaining,
        attempt.started_at,
        attempt.duration_minutes,
        client_value=client_time_remaining,
        now=current,
    )
    db.flush()
    return attempt


def update_time_remaining(
    db: Session,
    *,
    handle: AttemptHandle,
    client_time_remaining: int,
    now: datetime | None = None,
) -> Attempt:
    current = _now(now)
    attempt = _owned_attempt(db, handle)
    _ensure_mutable(db, attempt, now=current)
    cached = timer_service.reconcile_cached_remaining(
        attempt.time_remaining,
        attempt.started_at,
        attempt.duration_minutes,
        client_value=client_time_remaining,
        now=current,
    )
    if cached != attempt.time_remaining:
        attempt.time_remaining = cached
        db.flush()
    return attempt


def upload_file(
    db: Session,
    *,
    handle: AttemptHandle,
    section_id: str,
    question_id: str,
    data: bytes,
    file_name: str,
    content_type: str | None,
    storage: BlobStorage,
    now: datetime | None = None,
) -> tuple[Attempt, StoredBlob]:
    attempt = _owned_attempt(db, handle)
    _ensure_mutable(db, attempt, now=_now(now))

    catalog = catalog_service.parse_sections(attempt.assessment)
    question = catalog_service.find_question(catalog, section_id, question_id)
    if question is None:
        raise NotFoundError('Question not found in this section', error_code='QUESTION_NOT_FOUND')
    if not isinstance(question, FileUploadQuestion):
        raise PayloadValidationError(
            'This question does not accept file uploads',
            error_code='INVALID_QUESTION_TYPE',
            question_id=question_id,
        )
    if not data:
        raise PayloadValidationError('No file uploaded', error_code='NO_FILE')
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise PayloadValidationError(
            'Uploaded file is too large',
            error_code='FILE_TOO_LARGE',
            max_bytes=settings.MAX_UPLOAD_BYTES,
        )

    sections = scoring_service.load_sections(attempt)
    target = None
    for section in sections:
        if section.section_id != section_id:
            continue
        for answer in section.answers:
            if answer.question_id == question_id and isinstance(answer, FileUploadAnswer):
                target = answer
    if target is None:
        raise NotFoundError('Question is not part of this attempt', error_code='QUESTION_NOT_FOUND')

    stored = storage.store(
        data,
        BlobMetadata(
            attempt_id=attempt.id,
            section_id=section_id,
            question_id=question_id,
            file_name=file_name,
            content_type=content_type,
        ),
    )

    updated_sections = []
    for section in sections:
        if section.section_id == section_id:
            section = section.model_copy(
                update={
                    'answers': [
                        answer.model_copy(update={'file_path': stored.path, 'file_name': stored.file_name})
                        if answer is target
                        else answer
                        for answer in section.answers
                    ]
                }
            )
        updated_sections.append(section)
    # Version conflicts surface on flush; a rolled back write must not leave its blob behind.
    try:
        scoring_service.store_sections(attempt, attempt.assessment, updated_sections)
        db.flush()
    except Exception:
        storage.delete(stored.path)
        raise
    logger.info('Stored %s bytes for question %s on attempt %s', stored.size, question_id, attempt.id)
    return attempt, stored


def submit_attempt(db: Session, *, handle: AttemptHandle, now: datetime | None = None) -> Attempt:
    """
    Finalize and auto-grade. Submitting an already finalized attempt returns it
    unchanged so that a client retrying a lost response never gets re-graded.
    """
    current = _now(now)
    attempt = _owned_attempt(db, handle)
    if not attempt.is_in_progress:
        return attempt

    if timer_service.is_expired(attempt.started_at, attempt.duration_minutes, now=current):
        _finalize(db, attempt, reason=FINALIZE_REASON_TIMED_OUT, now=current)
        raise AttemptFinalizedError(
            'Your time for this attempt has expired',
            error_code='TIME_EXPIRED',
            attempt_id=str(attempt.id),
            status=attempt.display_status,
            total_marks_awarded=attempt.total_marks_awarded,
            percentage=attempt.percentage,
        )

    _finalize(db, attempt, reason=FINALIZE_REASON_SUBMITTED, now=current)
    return attempt


def get_attempt(
    db: Session,
    *,
    attempt_id: UUID,
    principal: Principal,
    now: datetime | None = None,
) -> Attempt:
    attempt = get_attempt_by_id(db, attempt_id)
    if attempt.learner_id != principal.id and not catalog_service.can_manage(principal, attempt.assessment):
        raise ForbiddenError('You do not have permission to view this attempt')
    sweep_expiry(db, attempt, now=now)
    return attempt


def list_my_attempts(
    db: Session,
    *,
    learner_id: UUID,
    kind: str | None = None,
    assessment_id: UUID | None = None,
    now: datetime | None = None,
) -> list[Attempt]:
    base = select(Attempt).join(Attempt.assessment).where(Attempt.learner_id == learner_id)
    if kind:
        base = base.where(Assessment.kind == kind)
    if assessment_id:
        base = base.where(Attempt.assessment_id == assessment_id)
    attempts = db.scalars(
        base.options(joinedload(Attempt.assessment)).order_by(Attempt.started_at.desc())
    ).all()
    for attempt in attempts:
        sweep_expiry(db, attempt, now=now)
    return list(attempts)


def list_assessment_attempts(
    db: Session,
    *,
    assessment_id: UUID,
    principal: Principal,
    now: datetime | None = None,
) -> list[Attempt]:
    assessment = catalog_service.get_assessment(db, assessment_id)
    if not catalog_service.can_manage(principal, assessment):
        raise ForbiddenError('You do not have permission to view exam attempts')
    attempts = db.scalars(
        select(Attempt)
        .where(Attempt.assessment_id == assessment.id)
        .options(joinedload(Attempt.assessment))
        .order_by(Attempt.started_at.desc())
    ).all()
    for attempt in attempts:
        sweep_expiry(db, attempt, now=now)
    return list(attempts)


def get_assessment_info(
    db: Session,
    *,
    learner_id: UUID,
    assessment_id: UUID,
    now: datetime | None = None,
) -> AssessmentInfoOut:
    current = _now(now)
    assessment = catalog_service.get_assessment(db, assessment_id)
    catalog = catalog_service.parse_sections(assessment)
    total = catalog_service.total_marks(catalog)
    _, finished = _attempt_counts(db, learner_id=learner_id, assessment_id=assessment.id)
    max_attempts = 1 if assessment.kind == 'exam' else assessment.max_attempts
    return AssessmentInfoOut(
        assessment_id=assessment.id,
        kind=assessment.kind,
        title=assessment.title,
        description=assessment.description,
        total_questions=catalog_service.question_count(catalog),
        total_marks=total,
        passing_percentage=scoring_service.passing_percentage(assessment, total),
        duration_minutes=catalog_service.effective_duration_minutes(assessment, catalog),
        starts_at=assessment.starts_at,
        ends_at=assessment.ends_at,
        deadline=assessment.deadline,
        max_attempts=max_attempts,
        previous_attempts=finished,
        is_deadline_passed=bool(assessment.deadline and current > timer_service.as_utc(assessment.deadline)),
        max_attempts_reached=bool(max_attempts and finished >= max_attempts),
    )
