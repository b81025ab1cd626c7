"""Per-segment comprehension gates.

A gate blocks story progression from its segment until the reader has
submitted answers once, or has used up every attempt. Scores are
informational: they only decide whether a retry is offered.

    closed -> open -> submitted -> open (retry) | locked
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from storyreader.config import settings
from storyreader.errors import SegmentValidationError
from storyreader.models import (
    ComprehensionQuestion,
    GateSnapshot,
    GateState,
    ProgressionResult,
    SubmitResult,
)

log = logging.getLogger(__name__)

NO_QUESTIONS = "no-questions"
UNANSWERED = "unanswered-questions"
ALREADY_SUBMITTED = "already-submitted"
ATTEMPTS_EXHAUSTED = "attempts-exhausted"
RETRY_UNAVAILABLE = "retry-unavailable"

GateListener = Callable[["ComprehensionGate", SubmitResult], None]


class ComprehensionGate:
    """Attempts, answers and pass state for one segment of one session."""

    def __init__(
        self,
        session_id: str,
        segment_index: int,
        questions: Optional[Iterable[ComprehensionQuestion]] = None,
        max_attempts: Optional[int] = None,
        listeners: Optional[list[GateListener]] = None,
    ) -> None:
        self.session_id = session_id
        self.segment_index = segment_index
        self.questions: list[ComprehensionQuestion] = list(questions or [])
        if max_attempts is None:
            max_attempts = settings.MAX_COMPREHENSION_ATTEMPTS
        self.max_attempts = max_attempts
        self.listeners = listeners if listeners is not None else []
        self.attempts = 0
        self.answers: dict[int, int] = {}
        self.passed = False
        self.correct_count: Optional[int] = None

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def state(self) -> GateState:
        if not self.questions:
            return GateState.CLOSED
        if self.passed:
            return GateState.SUBMITTED if self.can_retry() else GateState.LOCKED
        if self.attempts >= self.max_attempts:
            return GateState.LOCKED
        return GateState.OPEN

    def open(self, questions: Optional[Iterable[ComprehensionQuestion]] = None) -> None:
        """Show the gate to the reader with a blank answer sheet.

        Recorded attempts and pass state survive reopening; they live as long
        as the session does.
        """
        if questions is not None and not self.questions:
            self.questions = list(questions)
        self.answers = {}

    def answer(self, question_index: int, option_index: int) -> None:
        """Record (or overwrite) the reader's option for one question."""
        if not 0 <= question_index < self.total:
            raise SegmentValidationError(
                f"Question index {question_index} out of range ({self.total} questions)"
            )
        options = self.questions[question_index].options
        if not 0 <= option_index < len(options):
            raise SegmentValidationError(
                f"Option index {option_index} out of range ({len(options)} options)"
            )
        self.answers[question_index] = option_index

    def submit(self) -> SubmitResult:
        """Score the answer sheet and unlock progression."""
        all_answered = all(i in self.answers for i in range(self.total))
        if not self.questions:
            return SubmitResult(all_answered=True, reason=NO_QUESTIONS)
        if self.passed:
            return SubmitResult(all_answered=all_answered, total=self.total, reason=ALREADY_SUBMITTED)
        if self.attempts >= self.max_attempts:
            return SubmitResult(all_answered=all_answered, total=self.total, reason=ATTEMPTS_EXHAUSTED)
        if not all_answered:
            return SubmitResult(all_answered=False, total=self.total, reason=UNANSWERED)

        correct = sum(
            1
            for i, question in enumerate(self.questions)
            if self.answers[i] == question.correct_answer
        )
        self.attempts += 1
        self.passed = True
        self.correct_count = correct
        result = SubmitResult(all_answered=True, correct_count=correct, total=self.total)
        log.info(
            f"[{self.session_id}] Segment {self.segment_index} quiz: "
            f"{correct}/{self.total} correct (attempt {self.attempts}/{self.max_attempts})"
        )
        self._notify(result)
        return result

    def mark_submitted(self, correct_count: Optional[int] = None) -> None:
        """Record a submission made in an earlier run; listeners are not told."""
        if not self.questions or self.passed:
            return
        self.attempts = max(self.attempts, 1)
        self.passed = True
        self.correct_count = correct_count

    def can_retry(self) -> bool:
        return (
            self.passed
            and self.correct_count is not None
            and self.correct_count < self.total
            and self.attempts < self.max_attempts
        )

    def retry(self) -> ProgressionResult:
        """Clear the sheet for another attempt; attempts are kept."""
        if not self.can_retry():
            return ProgressionResult(
                blocked=True, reason=RETRY_UNAVAILABLE, segment_index=self.segment_index
            )
        self.answers = {}
        self.passed = False
        return ProgressionResult(segment_index=self.segment_index)

    def is_satisfied(self) -> bool:
        return not self.questions or self.passed or self.attempts >= self.max_attempts

    def snapshot(self) -> GateSnapshot:
        return GateSnapshot(
            segment_index=self.segment_index,
            state=self.state,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            answers=dict(self.answers),
            passed=self.passed,
            can_retry=self.can_retry(),
            satisfied=self.is_satisfied(),
            correct_count=self.correct_count,
            total=self.total,
        )

    def _notify(self, result: SubmitResult) -> None:
        for listener in self.listeners:
            try:
                listener(self, result)
            except Exception as e:
                log.error(f"[{self.session_id}] Gate listener failed: {e}")


class GateBook:
    """All comprehension gates of the running process, keyed by session and index."""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        listeners: Optional[list[GateListener]] = None,
    ) -> None:
        if max_attempts is None:
            max_attempts = settings.MAX_COMPREHENSION_ATTEMPTS
        self.max_attempts = max_attempts
        self.listeners: list[GateListener] = list(listeners or [])
        self._gates: dict[tuple[str, int], ComprehensionGate] = {}

    def add_listener(self, listener: GateListener) -> None:
        self.listeners.append(listener)

    def get(self, session_id: str, segment_index: int) -> Optional[ComprehensionGate]:
        return self._gates.get((session_id, segment_index))

    def ensure(
        self,
        session_id: str,
        segment_index: int,
        questions: Optional[Iterable[ComprehensionQuestion]],
    ) -> Optional[ComprehensionGate]:
        """Return the gate for a segment, creating it if the segment has questions."""
        gate = self.get(session_id, segment_index)
        questions = list(questions or [])
        if gate is None:
            if not questions:
                return None
            gate = ComprehensionGate(
                session_id,
                segment_index,
                questions,
                max_attempts=self.max_attempts,
                listeners=self.listeners,
            )
            self._gates[(session_id, segment_index)] = gate
        elif questions and not gate.questions:
            gate.questions = questions
        return gate

    def open(
        self,
        session_id: str,
        segment_index: int,
        questions: Optional[Iterable[ComprehensionQuestion]],
    ) -> Optional[ComprehensionGate]:
        """Ensure the gate exists and present it with a blank answer sheet."""
        gate = self.ensure(session_id, segment_index, questions)
        if gate is not None:
            gate.open()
        return gate

    def mark_submitted(
        self,
        session_id: str,
        segment_index: int,
        questions: Optional[Iterable[ComprehensionQuestion]],
        correct_count: Optional[int] = None,
    ) -> Optional[ComprehensionGate]:
        gate = self.ensure(session_id, segment_index, questions)
        if gate is not None:
            gate.mark_submitted(correct_count)
        return gate

    def is_satisfied(self, session_id: str, segment_index: int) -> bool:
        gate = self.get(session_id, segment_index)
        return gate is None or gate.is_satisfied()

    def snapshot(self, session_id: str, segment_index: int) -> GateSnapshot:
        gate = self.get(session_id, segment_index)
        if gate is None:
            return GateSnapshot(
                segment_index=segment_index,
                state=GateState.CLOSED,
                max_attempts=self.max_attempts,
            )
        return gate.snapshot()

    def discard_session(self, session_id: str) -> None:
        for key in [k for k in self._gates if k[0] == session_id]:
            del self._gates[key]
