from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_principal, require_staff
from app.core.security import Principal
from app.db.session import get_db
from app.db.unit_of_work import run_in_transaction
from app.schemas.grade import GradeListResponse, GradeOut, GradeUpdate
from app.services import grade_service


router = APIRouter(prefix='/grades', tags=['grades'])


@router.get('', response_model=GradeListResponse)
def list_grades(
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_staff),
) -> GradeListResponse:
    grades = grade_service.list_grades(db, principal=principal)
    return GradeListResponse(items=[GradeOut.model_validate(item) for item in grades], total=len(grades))


@router.get('/users/{user_id}', response_model=GradeListResponse)
def list_user_grades(
    user_id: UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> GradeListResponse:
    grades = grade_service.list_grades_for_user(db, user_id=user_id, principal=principal)
    return GradeListResponse(items=[GradeOut.model_validate(item) for item in grades], total=len(grades))


@router.get('/{grade_id}', response_model=GradeOut)
def get_grade(
    grade_id: UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> GradeOut:
    return GradeOut.model_validate(grade_service.get_grade(db, grade_id=grade_id, principal=principal))


@router.patch('/{grade_id}', response_model=GradeOut)
def update_grade(
    grade_id: UUID,
    payload: GradeUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> GradeOut:
    grade = run_in_transaction(
        db, lambda: grade_service.update_grade(db, grade_id=grade_id, principal=principal, grades=payload.grades)
    )
    return GradeOut.model_validate(grade)
