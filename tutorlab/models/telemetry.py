from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from tutorlab.models.flow import Condition

# Stored in place of a missing answer so partial submissions stay well-formed
NO_ANSWER = "No answer"


def _answer_text(v: Any) -> Any:
    # Numeric answers arrive as JSON numbers
    if isinstance(v, bool):
        return str(v).lower()
    if isinstance(v, (int, float)):
        return str(v)
    return v


class TestType(str, Enum):
    PRE = "pre"
    POST = "post"
    FINAL = "final"


class TranscriptMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ordinal: int = Field(alias="id")
    speaker_role: str = Field(alias="sender")
    speaker_agent_id: Optional[str] = Field(default=None, alias="agentId")
    text: str = ""
    timestamp: Optional[datetime] = None

    @property
    def is_internal(self) -> bool:
        """Negative ordinals mark scaffolding context that is never replayed to the model."""
        return self.ordinal < 0


class TranscriptRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    participant_id: str = Field(alias="userId", min_length=1)
    stage_key: str = Field(alias="questionId", min_length=1)
    question_text: str = Field(default="", alias="questionText")
    start_time: Optional[datetime] = Field(default=None, alias="startTime")
    end_time: Optional[datetime] = Field(default=None, alias="endTime")
    duration_ms: Optional[int] = Field(default=None, alias="duration", ge=0)
    final_answer: str = Field(default="", alias="finalAnswer")
    scratch_construct: str = Field(default="", alias="scratchboardContent")
    messages: list[TranscriptMessage] = []
    is_correct: Optional[bool] = Field(default=None, alias="isCorrect")
    timed_out: bool = Field(default=False, alias="timeoutOccurred")

    @field_validator("stage_key", mode="before")
    @classmethod
    def _stage_key_as_text(cls, v: Any) -> Any:
        # Lesson question ids arrive as numbers
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @model_validator(mode="after")
    def _order_messages(self) -> "TranscriptRecord":
        ordered = sorted(self.messages, key=lambda m: m.ordinal)
        for prev, cur in zip(ordered, ordered[1:]):
            if prev.ordinal == cur.ordinal:
                raise ValueError(f"Duplicate message ordinal {cur.ordinal}")
        self.messages = ordered
        return self


class TestQuestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question_id: Union[int, str] = Field(alias="questionId")
    question_text: str = Field(
        default="",
        validation_alias=AliasChoices("questionText", "question", "question_text"),
        serialization_alias="questionText",
    )
    user_answer: str = Field(default=NO_ANSWER, alias="userAnswer")
    correct_answer: str = Field(default="", alias="correctAnswer")
    is_correct: Optional[bool] = Field(default=None, alias="isCorrect")
    scratch_construct: str = Field(default="", alias="scratchboardContent")
    duration_ms: Optional[int] = Field(default=None, alias="duration", ge=0)

    @field_validator("user_answer", mode="before")
    @classmethod
    def _default_answer(cls, v: Any) -> Any:
        v = _answer_text(v)
        if v is None or (isinstance(v, str) and not v.strip()):
            return NO_ANSWER
        return v

    @field_validator("correct_answer", mode="before")
    @classmethod
    def _correct_answer_text(cls, v: Any) -> Any:
        v = _answer_text(v)
        return "" if v is None else v


class TestAttemptSubmission(BaseModel):
    """Incoming test attempt. A client-supplied score is accepted but never stored."""

    model_config = ConfigDict(populate_by_name=True)

    participant_id: str = Field(alias="userId", min_length=1)
    test_type: TestType = Field(alias="testType")
    questions: list[TestQuestion] = []
    score: Optional[int] = None
    duration_ms: Optional[int] = Field(default=None, alias="duration", ge=0)
    metadata: Optional[dict[str, Any]] = None
    lesson_type: Optional[Condition] = Field(default=None, alias="lessonType")


class SurveySubmission(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    participant_id: str = Field(alias="userId", min_length=1)
    section: str = "post-test"
    data: dict[str, Any]

    @model_validator(mode="before")
    @classmethod
    def _recover_flat_payload(cls, values: Any) -> Any:
        # Older clients post the answers at the top level instead of under "data"
        if isinstance(values, dict) and "data" not in values:
            rest = {
                k: v for k, v in values.items()
                if k not in ("userId", "participant_id", "section")
            }
            if rest:
                values = {**values, "data": rest}
        return values
