"""Pydantic models for story sessions and state machine results."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, model_validator


class StoryChoice(BaseModel):
    label: str
    description: str


class ComprehensionQuestion(BaseModel):
    """One multiple-choice question about a segment."""
    model_config = ConfigDict(revalidate_instances="always")

    question: str
    options: List[str] = Field(min_length=1)
    correct_answer: int  # 0-based index into options

    @model_validator(mode="after")
    def _check_correct_answer(self):
        if not 0 <= self.correct_answer < len(self.options):
            raise ValueError(
                f"correct_answer {self.correct_answer} out of range "
                f"for {len(self.options)} options"
            )
        return self


class StoryMetadata(BaseModel):
    """Reader and story context forwarded to every extension call."""
    model_config = ConfigDict(extra="allow")

    child_name: str = ""
    character: str = ""
    setting: str = ""
    object: str = ""
    language: str = "nl"  # "en" | "nl"
    age: str = "6-8"


class Segment(BaseModel):
    """One unit of generated narrative plus its choices and questions."""
    model_config = ConfigDict(revalidate_instances="always")

    sequence: PositiveInt
    story_text: str
    choice_made: Optional[str] = None
    next_choices: List[StoryChoice] = []
    comprehension_questions: Optional[List[ComprehensionQuestion]] = None
    metrics: Dict[str, Any] = {}  # Analytics payload, passed through untouched

    @property
    def has_questions(self) -> bool:
        return bool(self.comprehension_questions)

    @property
    def is_ending(self) -> bool:
        return not self.next_choices


class Session(BaseModel):
    """Ordered history of segments for one story instance."""
    session_id: str
    segments: List[Segment] = Field(min_length=1)
    metadata: StoryMetadata = Field(default_factory=StoryMetadata)
    created_at: str = ""
    completed: bool = False

    @property
    def last_index(self) -> int:
        return len(self.segments) - 1


class StoryResponse(BaseModel):
    """Typed reply of a story-generation call.

    comprehension_questions belong to the segment the reader is leaving,
    not to the segment carried in story_text.
    """
    session_id: str
    story_id: str = ""
    story_text: str
    sequence: PositiveInt = 1
    is_conclusion: bool = False
    next_choices: List[StoryChoice] = []
    comprehension_questions: Optional[List[ComprehensionQuestion]] = None
    metrics: Dict[str, Any] = {}
    metadata: StoryMetadata = Field(default_factory=StoryMetadata)
    timestamp: str = ""

    def to_segment(self, choice_made: Optional[str] = None) -> Segment:
        return Segment(
            sequence=self.sequence,
            story_text=self.story_text,
            choice_made=choice_made,
            next_choices=self.next_choices,
            metrics=self.metrics,
        )


class GateState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    SUBMITTED = "submitted"
    LOCKED = "locked"


class SubmitResult(BaseModel):
    """Outcome of a comprehension submission."""
    all_answered: bool
    correct_count: int = 0
    total: int = 0
    reason: Optional[str] = None  # Set when the submission was refused

    @property
    def accepted(self) -> bool:
        return self.all_answered and self.reason is None


class GateSnapshot(BaseModel):
    """What the rendering layer needs to draw a comprehension gate."""
    segment_index: int
    state: GateState
    attempts: int = 0
    max_attempts: int = 2
    answers: Dict[int, int] = {}
    passed: bool = False
    can_retry: bool = False
    satisfied: bool = True
    correct_count: Optional[int] = None
    total: int = 0


class ProgressionResult(BaseModel):
    """Outcome of a reader intent handled by the progression controller."""
    blocked: bool = False
    reason: Optional[str] = None
    session: Optional[Session] = None
    segment_index: Optional[int] = None
