from datetime import datetime
from typing import Annotated, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field

from app.schemas.assessment import DisplayQuestion
from app.schemas.common import BaseSchema, ItemListResponse


class AnswerBase(BaseModel):
    question_id: str
    max_marks: float = 0
    is_graded: bool = False
    marks_awarded: float = 0
    feedback: str | None = None


class McqAnswer(AnswerBase):
    question_type: Literal['mcq'] = 'mcq'
    selected_option: int | None = None


class SubjectiveAnswer(AnswerBase):
    question_type: Literal['subjective'] = 'subjective'
    answer: str | None = None


class FileUploadAnswer(AnswerBase):
    question_type: Literal['file_upload'] = 'file_upload'
    answer: str | None = None
    file_path: str | None = None
    file_name: str | None = None


AttemptAnswer = Annotated[McqAnswer | SubjectiveAnswer | FileUploadAnswer, Field(discriminator='question_type')]


class AttemptSection(BaseModel):
    section_id: str
    section_name: str = ''
    total_marks_awarded: float = 0
    answers: list[AttemptAnswer] = Field(default_factory=list)


class AnswerPatch(BaseModel):
    """
    Partial answer from the client. Only the fields actually sent are merged, so
    `{"question_id": "q1"}` is a no-op and `{"question_id": "q1", "selected_option": null}`
    clears a selection.
    """

    question_id: str
    selected_option: int | None = Field(default=None, ge=0)
    answer: str | None = None


class AttemptAnswersUpdate(BaseModel):
    answers: list[AnswerPatch] = Field(default_factory=list)
    time_remaining: int | None = Field(default=None, ge=0)
    expected_version: int | None = Field(default=None, ge=1)


class TimeRemainingUpdate(BaseModel):
    time_remaining: int


class ManualGradeEntry(BaseModel):
    marks_awarded: float = Field(allow_inf_nan=False)
    feedback: str | None = None


class AttemptGradeRequest(BaseModel):
    # {section_id: {question_id: {marks_awarded, feedback}}}
    grades: dict[str, dict[str, ManualGradeEntry]] = Field(default_factory=dict)


class AttemptSummaryOut(BaseSchema):
    id: UUID
    assessment_id: UUID
    learner_id: UUID
    kind: str
    attempt_number: int
    # Legacy label (in-progress, submitted, completed, timed-out, graded) plus the stored lifecycle state.
    status: str = Field(validation_alias=AliasChoices('display_status', 'status'))
    state: str
    finalize_reason: str | None
    started_at: datetime
    submitted_at: datetime | None
    duration_minutes: int
    time_remaining: int | None = Field(validation_alias=AliasChoices('display_time_remaining', 'time_remaining'))
    total_marks: float
    total_marks_awarded: float | None
    percentage: float
    is_passed: bool
    is_graded: bool
    version: int


class AttemptOut(AttemptSummaryOut):
    sections: list[AttemptSection]


class AttemptStartOut(BaseModel):
    message: str
    resumed: bool
    attempt: AttemptOut
    questions: list[DisplayQuestion]


class AttemptQuestionsOut(BaseModel):
    attempt_id: UUID
    time_remaining: int
    questions: list[DisplayQuestion]


class AttemptSubmitOut(BaseModel):
    message: str
    attempt: AttemptOut
    grade_id: UUID | None = None


class FileUploadOut(BaseModel):
    file_path: str
    file_name: str
    attempt: AttemptOut


AttemptListResponse = ItemListResponse[AttemptSummaryOut]
