from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.constants import QUESTION_TYPE_FILE_UPLOAD


class McqOption(BaseModel):
    text: str = ''
    is_correct: bool = False


class McqQuestion(BaseModel):
    type: Literal['mcq']
    id: str
    prompt: str = ''
    options: list[McqOption] = Field(default_factory=list)
    positive_marks: float = Field(default=1, ge=0)
    negative_marks: float = Field(default=0, ge=0)

    @model_validator(mode='before')
    @classmethod
    def accept_single_marks(cls, data: Any) -> Any:
        # Older catalog documents carry one `marks` value for MCQs.
        if isinstance(data, dict) and 'positive_marks' not in data and 'marks' in data:
            data = {**data, 'positive_marks': data['marks']}
        return data

    @property
    def max_marks(self) -> float:
        return self.positive_marks

    @property
    def correct_option_index(self) -> int | None:
        for index, option in enumerate(self.options):
            if option.is_correct:
                return index
        return None


class SubjectiveQuestion(BaseModel):
    type: Literal['subjective']
    id: str
    prompt: str = ''
    marks: float = Field(default=1, ge=0)

    @property
    def max_marks(self) -> float:
        return self.marks


class FileUploadQuestion(BaseModel):
    type: Literal['file_upload', 'file', 'fileUpload']
    id: str
    prompt: str = ''
    marks: float = Field(default=1, ge=0)
    file_type: Literal['pdf', 'doc', 'image', 'code', 'any'] = 'any'

    @field_validator('type')
    @classmethod
    def normalize_type(cls, _: str) -> str:
        return QUESTION_TYPE_FILE_UPLOAD

    @property
    def max_marks(self) -> float:
        return self.marks


Question = Annotated[McqQuestion | SubjectiveQuestion | FileUploadQuestion, Field(discriminator='type')]


class CatalogSection(BaseModel):
    id: str
    title: str = ''
    questions: list[Question] = Field(default_factory=list)

    @property
    def max_marks(self) -> float:
        return sum(question.max_marks for question in self.questions)


class DisplayQuestion(BaseModel):
    """A question as the learner sees it: no correct-answer flags."""

    id: str
    section_id: str
    section_title: str
    type: str
    prompt: str
    marks: float
    options: list[str] | None = None
    file_type: str | None = None


class AssessmentInfoOut(BaseModel):
    assessment_id: UUID
    kind: str
    title: str
    description: str | None
    total_questions: int
    total_marks: float
    passing_percentage: float
    duration_minutes: int
    starts_at: datetime | None
    ends_at: datetime | None
    deadline: datetime | None
    max_attempts: int | None
    previous_attempts: int
    is_deadline_passed: bool
    max_attempts_reached: bool
