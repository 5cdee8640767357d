from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ExperienceLevel(str, Enum):
    junior = "junior"
    mid_level = "mid-level"
    senior = "senior"


class QuestionDifficulty(str, Enum):
    easy = "easy"
    medium = "medium"
    hard = "hard"


class Plan(str, Enum):
    free = "free"
    pro = "pro"


# --- Users ---
class UserCreate(BaseModel):
    email: str
    cognito_sub: Optional[str] = None


class User(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    plan: Plan


def _check_partial_update(update: BaseModel, not_nullable: tuple) -> None:
    if not update.model_fields_set:
        raise ValueError("At least one field must be provided")
    nulled = [f for f in not_nullable if f in update.model_fields_set and getattr(update, f) is None]
    if nulled:
        raise ValueError(f"Fields cannot be null: {', '.join(nulled)}")


# --- Job infos ---
class JobInfoCreate(BaseModel):
    name: str = Field(min_length=1)
    title: Optional[str] = None
    experience_level: ExperienceLevel
    description: str = ""


class JobInfoUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    not_nullable: ClassVar[tuple] = ("name", "experience_level", "description")

    name: Optional[str] = Field(default=None, min_length=1)
    title: Optional[str] = None
    experience_level: Optional[ExperienceLevel] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def _require_a_field(self):
        _check_partial_update(self, self.not_nullable)
        return self


class JobInfoRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: int


class JobInfoSummary(BaseModel):
    """Owner-scoped view of a job info used by the questions pages."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    name: str
    title: Optional[str] = None
    experience_level: ExperienceLevel
    description: str = ""


# --- Questions ---
class QuestionCreate(BaseModel):
    job_info_id: str
    text: str = Field(min_length=1)
    difficulty: QuestionDifficulty
    answer: Optional[str] = None
    feedback: Optional[str] = None
    feedback_rating: Optional[int] = Field(default=None, ge=0, le=10)


class QuestionUpdate(BaseModel):
    """Partial update. Only the fields explicitly set are written."""

    model_config = ConfigDict(extra="forbid")
    not_nullable: ClassVar[tuple] = ("text", "difficulty")

    text: Optional[str] = Field(default=None, min_length=1)
    difficulty: Optional[QuestionDifficulty] = None
    answer: Optional[str] = None
    feedback: Optional[str] = None
    feedback_rating: Optional[int] = Field(default=None, ge=0, le=10)

    @model_validator(mode="after")
    def _require_a_field(self):
        _check_partial_update(self, self.not_nullable)
        return self


class QuestionRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    job_info_id: str


class QuestionDetail(BaseModel):
    """Snapshot of a completed question, including the answer and feedback text."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    text: str
    answer: str
    feedback: str
    difficulty: QuestionDifficulty
    feedback_rating: Optional[int] = None
    updated_at: datetime


class QuestionSummary(BaseModel):
    """List projection of a completed question. Answer and feedback are left out."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    text: str
    difficulty: QuestionDifficulty
    feedback_rating: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class PracticeQuestion(BaseModel):
    """A freshly generated question that is still waiting for an answer."""

    id: str
    job_info_id: str
    text: str
    difficulty: QuestionDifficulty


class GenerateQuestionInput(BaseModel):
    difficulty: QuestionDifficulty


class AnswerInput(BaseModel):
    answer: str = Field(min_length=1)


# --- LLM structured outputs ---
class GeneratedQuestion(BaseModel):
    question: str = Field(description="The interview question, formatted as markdown")


class QuestionFeedback(BaseModel):
    feedback: str = Field(description="Feedback on the answer, formatted as markdown")
    rating: int = Field(ge=0, le=10, description="Overall rating of the answer from 0 to 10")
