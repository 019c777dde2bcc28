from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.errors import (
    AttemptFinalizedError,
    ConcurrentModificationError,
    ForbiddenError,
    NotEligibleError,
    PayloadValidationError,
)
from app.db.unit_of_work import run_in_transaction
from app.models.attempt import Attempt
from app.models.grade import Grade
from app.schemas.attempt import AnswerPatch
from app.services import attempt_service
from app.services.attempt_service import AttemptHandle
from tests.conftest import (
    LEARNER_ID,
    OTHER_LEARNER_ID,
    TestingSessionLocal,
    create_assessment,
    mcq_question,
    subjective_question,
)


T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def _start(db: Session, assessment, *, learner_id=LEARNER_ID, now=None):
    return run_in_transaction(
        db, lambda: attempt_service.start_attempt(db, learner_id=learner_id, assessment_id=assessment.id, now=now)
    )


def _handle(attempt: Attempt, **kwargs) -> AttemptHandle:
    return AttemptHandle(attempt_id=attempt.id, learner_id=attempt.learner_id, **kwargs)


def test_start_creates_skeleton_and_full_timer(db_session: Session) -> None:
    assessment = create_assessment(db_session, questions=[mcq_question('q1'), subjective_question('s1')])

    result = _start(db_session, assessment, now=T0)

    attempt = result.attempt
    assert not result.resumed
    assert attempt.status == 'in_progress'
    assert attempt.display_status == 'in-progress'
    assert attempt.attempt_number == 1
    assert attempt.time_remaining == 30 * 60
    assert attempt.total_marks == 20
    answers = attempt.sections[0]['answers']
    assert [answer['question_id'] for answer in answers] == ['q1', 's1']
    assert [answer['question_type'] for answer in answers] == ['mcq', 'subjective']
    assert all(answer['marks_awarded'] == 0 for answer in answers)
    assert [question.id for question in result.questions] == ['q1', 's1']


def test_display_questions_hide_correct_answers(db_session: Session) -> None:
    assessment = create_assessment(db_session)
    result = _start(db_session, assessment)

    payload = result.questions[0].model_dump()
    assert payload['options'] == ['Option 0', 'Option 1', 'Option 2', 'Option 3']
    assert 'is_correct' not in str(payload)


def test_start_twice_resumes_the_same_attempt(db_session: Session) -> None:
    assessment = create_assessment(db_session)

    first = _start(db_session, assessment, now=T0)
    second = _start(db_session, assessment, now=T0 + timedelta(minutes=2))

    assert second.resumed
    assert second.attempt.id == first.attempt.id
    assert second.attempt.time_remaining == 28 * 60
    count = db_session.scalar(select(func.count()).select_from(Attempt))
    assert count == 1


def test_concurrent_start_resolves_to_existing_attempt(db_session: Session, monkeypatch) -> None:
    assessment = create_assessment(db_session)
    existing = _start(db_session, assessment).attempt

    lookup = attempt_service._in_progress_attempt
    calls = {'count': 0}

    def _racing_lookup(db, **kwargs):
        calls['count'] += 1
        # The first lookup misses the row, as if another request inserted it in the meantime.
        if calls['count'] == 1:
            return None
        return lookup(db, **kwargs)

    monkeypatch.setattr(attempt_service, '_in_progress_attempt', _racing_lookup)

    result = _start(db_session, assessment)

    assert result.resumed
    assert result.attempt.id == existing.id
    assert db_session.scalar(select(func.count()).select_from(Attempt)) == 1


def test_start_requires_enrollment(db_session: Session) -> None:
    assessment = create_assessment(db_session, enroll=())

    with pytest.raises(NotEligibleError) as exc_info:
        _start(db_session, assessment)
    assert exc_info.value.error_code == 'NOT_ENROLLED'


def test_start_requires_published_assessment(db_session: Session) -> None:
    assessment = create_assessment(db_session, is_published=False)

    with pytest.raises(NotEligibleError) as exc_info:
        _start(db_session, assessment)
    assert exc_info.value.error_code == 'EXAM_NOT_PUBLISHED'


def test_start_respects_exam_window(db_session: Session) -> None:
    assessment = create_assessment(db_session, starts_at=T0 + timedelta(hours=1), ends_at=T0 + timedelta(hours=3))

    with pytest.raises(NotEligibleError) as early:
        _start(db_session, assessment, now=T0)
    assert early.value.error_code == 'EXAM_NOT_STARTED'

    with pytest.raises(NotEligibleError) as late:
        _start(db_session, assessment, now=T0 + timedelta(hours=4))
    assert late.value.error_code == 'EXAM_ENDED'


def test_quiz_deadline_blocks_new_attempts(db_session: Session) -> None:
    assessment = create_assessment(db_session, kind='quiz', deadline=T0)

    with pytest.raises(NotEligibleError) as exc_info:
        _start(db_session, assessment, now=T0 + timedelta(minutes=1))
    assert exc_info.value.error_code == 'DEADLINE_PASSED'


def test_exam_cannot_be_retaken_after_submission(db_session: Session) -> None:
    assessment = create_assessment(db_session)
    attempt = _start(db_session, assessment).attempt
    run_in_transaction(db_session, lambda: attempt_service.submit_attempt(db_session, handle=_handle(attempt)))

    with pytest.raises(AttemptFinalizedError) as exc_info:
        _start(db_session, assessment)

    error = exc_info.value
    assert error.error_code == 'ALREADY_COMPLETED'
    assert error.context['attempt_id'] == str(attempt.id)
    assert error.context['status'] == 'submitted'
    assert error.context['redirect_url'] == f'/exams/result/{attempt.id}'


def test_quiz_attempt_cap(db_session: Session) -> None:
    assessment = create_assessment(db_session, kind='quiz', max_attempts=2)

    numbers = []
    for _ in range(2):
        attempt = _start(db_session, assessment).attempt
        numbers.append(attempt.attempt_number)
        run_in_transaction(db_session, lambda: attempt_service.submit_attempt(db_session, handle=_handle(attempt)))

    assert numbers == [1, 2]
    with pytest.raises(NotEligibleError) as exc_info:
        _start(db_session, assessment)
    assert exc_info.value.error_code == 'MAX_ATTEMPTS_REACHED'
    assert exc_info.value.context == {'max_attempts': 2, 'attempts_used': 2}


def test_quiz_duration_defaults_to_minutes_per_question(db_session: Session) -> None:
    assessment = create_assessment(
        db_session,
        kind='quiz',
        duration_minutes=None,
        questions=[mcq_question('q1'), mcq_question('q2'), mcq_question('q3')],
    )
    attempt = _start(db_session, assessment).attempt
    assert attempt.duration_minutes == 6
    assert attempt.time_remaining == 6 * 60


def test_save_merges_only_sent_fields(db_session: Session) -> None:
    assessment = create_assessment(db_session, questions=[mcq_question('q1'), subjective_question('s1')])
    attempt = _start(db_session, assessment).attempt

    run_in_transaction(
        db_session,
        lambda: attempt_service.save_answers(
            db_session,
            handle=_handle(attempt),
            answers=[
                AnswerPatch(question_id='q1', selected_option=1),
                AnswerPatch(question_id='s1', answer='first draft'),
                AnswerPatch(question_id='unknown', answer='ignored'),
            ],
        ),
    )
    run_in_transaction(
        db_session,
        lambda: attempt_service.save_answers(
            db_session, handle=_handle(attempt), answers=[AnswerPatch(question_id='s1')]
        ),
    )

    answers = {answer['question_id']: answer for answer in attempt.sections[0]['answers']}
    assert answers['q1']['selected_option'] == 1
    assert answers['s1']['answer'] == 'first draft'
    assert len(answers) == 2
    assert attempt.status == 'in_progress'


def test_save_accepts_option_text_for_mcq(db_session: Session) -> None:
    assessment = create_assessment(db_session)
    attempt = _start(db_session, assessment).attempt

    run_in_transaction(
        db_session,
        lambda: attempt_service.save_answers(
            db_session, handle=_handle(attempt), answers=[AnswerPatch(question_id='q1', answer='Option 3')]
        ),
    )
    assert attempt.sections[0]['answers'][0]['selected_option'] == 3


def test_save_rejects_out_of_range_option(db_session: Session) -> None:
    assessment = create_assessment(db_session)
    attempt = _start(db_session, assessment).attempt

    with pytest.raises(PayloadValidationError):
        run_in_transaction(
            db_session,
            lambda: attempt_service.save_answers(
                db_session, handle=_handle(attempt), answers=[AnswerPatch(question_id='q1', selected_option=9)]
            ),
        )


def test_save_by_another_learner_is_forbidden(db_session: Session) -> None:
    assessment = create_assessment(db_session, enroll=(LEARNER_ID, OTHER_LEARNER_ID))
    attempt = _start(db_session, assessment).attempt

    with pytest.raises(ForbiddenError):
        attempt_service.save_answers(
            db_session,
            handle=AttemptHandle(attempt_id=attempt.id, learner_id=OTHER_LEARNER_ID),
            answers=[AnswerPatch(question_id='q1', selected_option=1)],
        )


def test_stale_expected_version_is_rejected(db_session: Session) -> None:
    assessment = create_assessment(db_session)
    attempt = _start(db_session, assessment).attempt
    stale_version = attempt.version
    run_in_transaction(
        db_session,
        lambda: attempt_service.save_answers(
            db_session, handle=_handle(attempt), answers=[AnswerPatch(question_id='q1', selected_option=0)]
        ),
    )

    with pytest.raises(ConcurrentModificationError):
        attempt_service.save_answers(
            db_session,
            handle=_handle(attempt, expected_version=stale_version),
            answers=[AnswerPatch(question_id='q1', selected_option=1)],
        )


def _bump_version(db: Session, attempt_id) -> None:
    db.execute(
        update(Attempt)
        .where(Attempt.id == attempt_id)
        .values(version=Attempt.version + 1)
        .execution_options(synchronize_session=False)
    )


def test_lost_update_is_retried_against_fresh_state(db_session: Session) -> None:
    assessment = create_assessment(db_session, questions=[mcq_question('q1'), subjective_question('s1')])
    attempt = _start(db_session, assessment).attempt

    other = TestingSessionLocal()
    try:
        run_in_transaction(
            other,
            lambda: attempt_service.save_answers(
                other, handle=_handle(attempt), answers=[AnswerPatch(question_id='q1', selected_option=2)]
            ),
        )
    finally:
        other.close()

    # db_session still holds the version it read before the other writer committed.
    run_in_transaction(
        db_session,
        lambda: attempt_service.save_answers(
            db_session, handle=_handle(attempt), answers=[AnswerPatch(question_id='s1', answer='late draft')]
        ),
    )

    answers = {answer['question_id']: answer for answer in attempt.sections[0]['answers']}
    assert answers['q1']['selected_option'] == 2
    assert answers['s1']['answer'] == 'late draft'


def test_lost_update_is_reported_once_retry_is_exhausted(db_session: Session) -> None:
    assessment = create_assessment(db_session)
    attempt = _start(db_session, assessment).attempt
    version_before = attempt.version
    runs: list[int] = []

    def save_against_concurrent_writer():
        runs.append(len(runs) + 1)
        attempt_service.get_attempt_by_id(db_session, attempt.id)
        _bump_version(db_session, attempt.id)
        return attempt_service.save_answers(
            db_session, handle=_handle(attempt), answers=[AnswerPatch(question_id='q1', selected_option=1)]
        )

    with pytest.raises(ConcurrentModificationError) as exc_info:
        run_in_transaction(db_session, save_against_concurrent_writer)

    assert runs == [1, 2]
    assert exc_info.value.status_code == 409
    assert exc_info.value.error_code == 'CONCURRENT_MODIFICATION'
    assert attempt.version == version_before
    assert attempt.sections[0]['answers'][0].get('selected_option') is None


def test_stale_finalization_still_reports_the_rejection(db_session: Session) -> None:
    assessment = create_assessment(db_session)
    attempt = _start(db_session, assessment).attempt
    version_before = attempt.version

    def finalize_then_reject():
        current = attempt_service.get_attempt_by_id(db_session, attempt.id)
        _bump_version(db_session, attempt.id)
        current.status = 'finalized'
        current.finalize_reason = 'timed_out'
        raise AttemptFinalizedError('Time has expired for this attempt', error_code='TIME_EXPIRED')

    with pytest.raises(AttemptFinalizedError) as exc_info:
        run_in_transaction(db_session, finalize_then_reject)

    assert exc_info.value.error_code == 'TIME_EXPIRED'
    assert attempt.status == 'in_progress'
    assert attempt.finalize_reason is None
    assert attempt.version == version_before


def test_heartbeat_caches_lowest_value(db_session: Session) -> None:
    assessment = create_assessment(db_session)
    attempt = _start(db_session, assessment, now=T0).attempt

    attempt_service.update_time_remaining(
        db_session, handle=_handle(attempt), client_time_remaining=1700, now=T0 + timedelta(minutes=1)
    )
    assert attempt.time_remaining == 1700

    attempt_service.update_time_remaining(
        db_session, handle=_handle(attempt), client_time_remaining=1790, now=T0 + timedelta(minutes=2)
    )
    assert attempt.time_remaining == 1680
    assert attempt.status == 'in_progress'


def test_submit_correct_mcq_scores_full_marks(db_session: Session) -> None:
    assessment = create_assessment(db_session, questions=[mcq_question('q1', correct=1, marks=10)])
    attempt = _start(db_session, assessment).attempt
    run_in_transaction(
        db_session,
        lambda: attempt_service.save_answers(
            db_session, handle=_handle(attempt), answers=[AnswerPatch(question_id='q1', selected_option=1)]
        ),
    )

    submitted = run_in_transaction(
        db_session, lambda: attempt_service.submit_attempt(db_session, handle=_handle(attempt))
    )

    assert submitted.display_status == 'submitted'
    assert submitted.finalize_reason == 'submitted'
    assert submitted.total_marks_awarded == 10
    assert submitted.percentage == 100
    assert submitted.is_graded
    assert submitted.is_passed
    assert submitted.display_time_remaining is None
    assert db_session.scalar(select(func.count()).select_from(Grade)) == 1


def test_submit_is_idempotent(db_session: Session) -> None:
    assessment = create_assessment(db_session, questions=[mcq_question('q1', correct=2, marks=5)])
    attempt = _start(db_session, assessment).attempt
    run_in_transaction(
        db_session,
        lambda: attempt_service.save_answers(
            db_session, handle=_handle(attempt), answers=[AnswerPatch(question_id='q1', selected_option=2)]
        ),
    )

    first = run_in_transaction(db_session, lambda: attempt_service.submit_attempt(db_session, handle=_handle(attempt)))
    submitted_at = first.submitted_at
    second = run_in_transaction(db_session, lambda: attempt_service.submit_attempt(db_session, handle=_handle(attempt)))

    assert second.id == first.id
    assert second.submitted_at == submitted_at
    assert second.total_marks_awarded == 5
    assert db_session.scalar(select(func.count()).select_from(Grade)) == 1


def test_save_after_submit_is_rejected(db_session: Session) -> None:
    assessment = create_assessment(db_session)
    attempt = _start(db_session, assessment).attempt
    run_in_transaction(db_session, lambda: attempt_service.submit_attempt(db_session, handle=_handle(attempt)))

    with pytest.raises(AttemptFinalizedError) as exc_info:
        attempt_service.save_answers(
            db_session, handle=_handle(attempt), answers=[AnswerPatch(question_id='q1', selected_option=1)]
        )
    assert exc_info.value.error_code == 'ALREADY_SUBMITTED'


def test_idle_attempt_times_out_on_next_save(db_session: Session) -> None:
    assessment = create_assessment(db_session, questions=[mcq_question('q1', correct=1, marks=10)])
    attempt = _start(db_session, assessment, now=T0).attempt

    with pytest.raises(AttemptFinalizedError) as exc_info:
        run_in_transaction(
            db_session,
            lambda: attempt_service.save_answers(
                db_session,
                handle=_handle(attempt),
                answers=[AnswerPatch(question_id='q1', selected_option=1)],
                now=T0 + timedelta(minutes=31),
            ),
        )
    assert exc_info.value.error_code == 'TIME_EXPIRED'

    # The forced finalization is committed even though the save was rejected.
    fresh = TestingSessionLocal()
    try:
        stored = fresh.get(Attempt, attempt.id)
        assert stored.status == 'finalized'
        assert stored.finalize_reason == 'timed_out'
        assert stored.time_remaining == 0
        assert stored.total_marks_awarded == 0
        assert stored.submitted_at is not None
    finally:
        fresh.close()


def test_expired_attempt_is_finalized_when_resumed(db_session: Session) -> None:
    assessment = create_assessment(db_session)
    attempt = _start(db_session, assessment, now=T0).attempt

    with pytest.raises(AttemptFinalizedError) as exc_info:
        _start(db_session, assessment, now=T0 + timedelta(minutes=45))

    assert exc_info.value.error_code == 'TIME_EXPIRED'
    assert exc_info.value.context['attempt_id'] == str(attempt.id)
    assert attempt.display_status == 'timed-out'


def test_submit_after_expiry_takes_timeout_path(db_session: Session) -> None:
    assessment = create_assessment(db_session, questions=[mcq_question('q1', correct=0, marks=4)])
    attempt = _start(db_session, assessment, now=T0).attempt
    run_in_transaction(
        db_session,
        lambda: attempt_service.save_answers(
            db_session,
            handle=_handle(attempt),
            answers=[AnswerPatch(question_id='q1', selected_option=0)],
            now=T0 + timedelta(minutes=5),
        ),
    )

    with pytest.raises(AttemptFinalizedError) as exc_info:
        run_in_transaction(
            db_session,
            lambda: attempt_service.submit_attempt(
                db_session, handle=_handle(attempt), now=T0 + timedelta(minutes=30, seconds=1)
            ),
        )

    assert exc_info.value.error_code == 'TIME_EXPIRED'
    assert attempt.finalize_reason == 'timed_out'
    # Answers saved before the deadline still count.
    assert attempt.total_marks_awarded == 4


def test_total_marks_awarded_is_sum_of_answer_marks(db_session: Session) -> None:
    assessment = create_assessment(
        db_session,
        questions=[mcq_question('q1', correct=1, marks=3), mcq_question('q2', correct=0, marks=7), subjective_question('s1')],
    )
    attempt = _start(db_session, assessment).attempt
    run_in_transaction(
        db_session,
        lambda: attempt_service.save_answers(
            db_session,
            handle=_handle(attempt),
            answers=[AnswerPatch(question_id='q1', selected_option=1), AnswerPatch(question_id='q2', selected_option=2)],
        ),
    )
    run_in_transaction(db_session, lambda: attempt_service.submit_attempt(db_session, handle=_handle(attempt)))

    marks = [answer['marks_awarded'] for section in attempt.sections for answer in section['answers']]
    assert attempt.total_marks_awarded == sum(marks) == 3
    assert attempt.sections[0]['total_marks_awarded'] == 3
    assert not attempt.is_graded


def test_my_attempts_are_swept_and_newest_first(db_session: Session) -> None:
    exam = create_assessment(db_session)
    quiz = create_assessment(db_session, kind='quiz')
    old = _start(db_session, exam, now=T0).attempt
    recent = _start(db_session, quiz, now=datetime.now(UTC)).attempt

    attempts = run_in_transaction(
        db_session, lambda: attempt_service.list_my_attempts(db_session, learner_id=LEARNER_ID)
    )

    assert [attempt.id for attempt in attempts] == [recent.id, old.id]
    assert old.display_status == 'timed-out'
    assert recent.is_in_progress

    quizzes = attempt_service.list_my_attempts(db_session, learner_id=LEARNER_ID, kind='quiz')
    assert [attempt.id for attempt in quizzes] == [recent.id]


def test_assessment_info_reports_attempt_usage(db_session: Session) -> None:
    assessment = create_assessment(db_session, kind='quiz', max_attempts=1, passing_marks=5)
    attempt = _start(db_session, assessment).attempt
    run_in_transaction(db_session, lambda: attempt_service.submit_attempt(db_session, handle=_handle(attempt)))

    info = attempt_service.get_assessment_info(db_session, learner_id=LEARNER_ID, assessment_id=assessment.id)

    assert info.total_questions == 1
    assert info.total_marks == 10
    assert info.passing_percentage == 50
    assert info.previous_attempts == 1
    assert info.max_attempts_reached
    assert not info.is_deadline_passed
