from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class FlowStage(str, Enum):
    TERMS = "terms"
    PRE_TEST = "pre-test"
    LESSON = "lesson"
    TETRIS_BREAK = "tetris-break"
    POST_TEST = "post-test"
    FINAL_TEST = "final-test"
    COMPLETED = "completed"

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self)

    def next(self) -> Optional["FlowStage"]:
        """Successor in the canonical order, or None for the terminal stage."""
        i = self.index
        if i + 1 >= len(STAGE_ORDER):
            return None
        return STAGE_ORDER[i + 1]

    def has_reached(self, other: "FlowStage") -> bool:
        return self.index >= other.index


STAGE_ORDER = [
    FlowStage.TERMS,
    FlowStage.PRE_TEST,
    FlowStage.LESSON,
    FlowStage.TETRIS_BREAK,
    FlowStage.POST_TEST,
    FlowStage.FINAL_TEST,
    FlowStage.COMPLETED,
]


class Condition(str, Enum):
    GROUP = "group"
    MULTI = "multi"
    SINGLE = "single"
    SOLO = "solo"


CONDITIONS = [Condition.GROUP, Condition.MULTI, Condition.SINGLE, Condition.SOLO]

ENTRY_PATH = "/"

_STAGE_PATHS = {
    FlowStage.TERMS: ENTRY_PATH,
    FlowStage.PRE_TEST: "/test?stage=pre",
    FlowStage.TETRIS_BREAK: "/break",
    FlowStage.POST_TEST: "/test?stage=post",
    FlowStage.FINAL_TEST: "/test?stage=final",
    FlowStage.COMPLETED: "/completed",
}


def stage_path(stage: FlowStage, condition: Optional[Condition]) -> str:
    """Client path that hosts the given stage. The lesson lives under its condition."""
    if stage == FlowStage.LESSON:
        return f"/{(condition or Condition.SOLO).value}"
    return _STAGE_PATHS[stage]


class ParticipantFlowState(BaseModel):
    participant_id: str
    stage: FlowStage = FlowStage.TERMS
    condition: Optional[Condition] = None
    lesson_question_index: int = Field(default=0, ge=0)
    revision: int = 0
    finalized_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_public(self) -> dict:
        """Wire representation used by the HTTP API."""
        return {
            "userId": self.participant_id,
            "flowStage": self.stage.value,
            "lessonType": self.condition.value if self.condition else None,
            "lessonQuestionIndex": self.lesson_question_index,
            "revision": self.revision,
            "finalizedAt": self.finalized_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
