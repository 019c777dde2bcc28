from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.attempt import ManualGradeEntry
from app.schemas.common import BaseSchema, ItemListResponse


class QuestionGradeOut(BaseModel):
    question_id: str
    marks_awarded: float
    max_marks: float
    feedback: str | None = None


class SectionGradeOut(BaseModel):
    section_id: str
    section_name: str = ''
    questions: list[QuestionGradeOut] = Field(default_factory=list)
    total_marks_awarded: float
    max_section_marks: float


class GradeOut(BaseSchema):
    id: UUID
    attempt_id: UUID
    assessment_id: UUID
    learner_id: UUID
    kind: str
    sections: list[SectionGradeOut]
    total_marks_awarded: float
    max_marks: float
    percentage: float
    status: str
    graded_by: UUID | None
    graded_at: datetime


class GradeUpdate(BaseModel):
    grades: dict[str, dict[str, ManualGradeEntry]] = Field(default_factory=dict)


GradeListResponse = ItemListResponse[GradeOut]
