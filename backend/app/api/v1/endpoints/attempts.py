from uuid import UUID

from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.orm import Session

from app.api.deps import get_current_principal
from app.core.config import settings
from app.core.security import Principal
from app.db.session import get_db
from app.db.unit_of_work import run_in_transaction
from app.schemas.assessment import AssessmentInfoOut
from app.schemas.attempt import (
    AttemptAnswersUpdate,
    AttemptGradeRequest,
    AttemptListResponse,
    AttemptOut,
    AttemptQuestionsOut,
    AttemptStartOut,
    AttemptSubmitOut,
    AttemptSummaryOut,
    FileUploadOut,
    TimeRemainingUpdate,
)
from app.services import attempt_service, grade_service, manual_grading_service, timer_service
from app.services.attempt_service import AttemptHandle
from app.services.storage_service import BlobStorage, get_blob_storage


router = APIRouter(tags=['attempts'])


@router.get('/assessments/{assessment_id}/info', response_model=AssessmentInfoOut)
def assessment_info(
    assessment_id: UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> AssessmentInfoOut:
    return attempt_service.get_assessment_info(db, learner_id=principal.id, assessment_id=assessment_id)


@router.post('/assessments/{assessment_id}/attempts/start', response_model=AttemptStartOut)
def start_attempt(
    assessment_id: UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> AttemptStartOut:
    result = run_in_transaction(
        db, lambda: attempt_service.start_attempt(db, learner_id=principal.id, assessment_id=assessment_id)
    )
    return AttemptStartOut(
        message='Resuming existing attempt' if result.resumed else 'Attempt started successfully',
        resumed=result.resumed,
        attempt=AttemptOut.model_validate(result.attempt),
        questions=result.questions,
    )


@router.get('/assessments/{assessment_id}/attempts', response_model=AttemptListResponse)
def list_assessment_attempts(
    assessment_id: UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> AttemptListResponse:
    attempts = run_in_transaction(
        db,
        lambda: attempt_service.list_assessment_attempts(db, assessment_id=assessment_id, principal=principal),
    )
    return AttemptListResponse(items=[AttemptSummaryOut.model_validate(item) for item in attempts], total=len(attempts))


@router.get('/attempts/me', response_model=AttemptListResponse)
def list_my_attempts(
    kind: str | None = Query(default=None, pattern='^(exam|quiz)$'),
    assessment_id: UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> AttemptListResponse:
    attempts = run_in_transaction(
        db,
        lambda: attempt_service.list_my_attempts(
            db, learner_id=principal.id, kind=kind, assessment_id=assessment_id
        ),
    )
    return AttemptListResponse(items=[AttemptSummaryOut.model_validate(item) for item in attempts], total=len(attempts))


@router.get('/attempts/{attempt_id}', response_model=AttemptOut)
def get_attempt(
    attempt_id: UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> AttemptOut:
    attempt = run_in_transaction(
        db, lambda: attempt_service.get_attempt(db, attempt_id=attempt_id, principal=principal)
    )
    return AttemptOut.model_validate(attempt)


@router.get('/attempts/{attempt_id}/questions', response_model=AttemptQuestionsOut)
def get_attempt_questions(
    attempt_id: UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> AttemptQuestionsOut:
    handle = AttemptHandle(attempt_id=attempt_id, learner_id=principal.id)
    attempt, questions = run_in_transaction(
        db, lambda: attempt_service.get_questions_for_display(db, handle=handle)
    )
    return AttemptQuestionsOut(
        attempt_id=attempt.id,
        time_remaining=timer_service.remaining_seconds(attempt.started_at, attempt.duration_minutes),
        questions=questions,
    )


@router.put('/attempts/{attempt_id}/answers', response_model=AttemptOut)
def save_answers(
    attempt_id: UUID,
    payload: AttemptAnswersUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> AttemptOut:
    handle = AttemptHandle(
        attempt_id=attempt_id, learner_id=principal.id, expected_version=payload.expected_version
    )
    attempt = run_in_transaction(
        db,
        lambda: attempt_service.save_answers(
            db, handle=handle, answers=payload.answers, client_time_remaining=payload.time_remaining
        ),
    )
    return AttemptOut.model_validate(attempt)


@router.put('/attempts/{attempt_id}/time', response_model=AttemptSummaryOut)
def update_time_remaining(
    attempt_id: UUID,
    payload: TimeRemainingUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> AttemptSummaryOut:
    handle = AttemptHandle(attempt_id=attempt_id, learner_id=principal.id)
    attempt = run_in_transaction(
        db,
        lambda: attempt_service.update_time_remaining(
            db, handle=handle, client_time_remaining=payload.time_remaining
        ),
    )
    return AttemptSummaryOut.model_validate(attempt)


@router.post(
    '/attempts/{attempt_id}/sections/{section_id}/questions/{question_id}/file',
    response_model=FileUploadOut,
)
def upload_answer_file(
    attempt_id: UUID,
    section_id: str,
    question_id: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    storage: BlobStorage = Depends(get_blob_storage),
) -> FileUploadOut:
    # One byte past the limit is enough to reject an oversized upload.
    data = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    handle = AttemptHandle(attempt_id=attempt_id, learner_id=principal.id)
    attempt, stored = run_in_transaction(
        db,
        lambda: attempt_service.upload_file(
            db,
            handle=handle,
            section_id=section_id,
            question_id=question_id,
            data=data,
            file_name=file.filename or 'upload',
            content_type=file.content_type,
            storage=storage,
        ),
    )
    return FileUploadOut(file_path=stored.path, file_name=stored.file_name, attempt=AttemptOut.model_validate(attempt))


@router.post('/attempts/{attempt_id}/submit', response_model=AttemptSubmitOut)
def submit_attempt(
    attempt_id: UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> AttemptSubmitOut:
    handle = AttemptHandle(attempt_id=attempt_id, learner_id=principal.id)
    attempt = run_in_transaction(db, lambda: attempt_service.submit_attempt(db, handle=handle))
    grade = grade_service.get_grade_for_attempt(db, attempt.id)
    return AttemptSubmitOut(
        message='Attempt submitted successfully',
        attempt=AttemptOut.model_validate(attempt),
        grade_id=grade.id if grade else None,
    )


@router.post('/attempts/{attempt_id}/grade', response_model=AttemptSubmitOut)
def grade_attempt(
    attempt_id: UUID,
    payload: AttemptGradeRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> AttemptSubmitOut:
    attempt, grade = run_in_transaction(
        db,
        lambda: manual_grading_service.grade_attempt(
            db, attempt_id=attempt_id, principal=principal, grades=payload.grades
        ),
    )
    return AttemptSubmitOut(
        message='Attempt graded successfully' if grade else 'Grades saved, some answers still need grading',
        attempt=AttemptOut.model_validate(attempt),
        grade_id=grade.id if grade else None,
    )
