"""Progression controller: decides whether a reader intent may extend the story.

Each extension goes through the same steps:

    gate check -> story backend call -> backfill questions + append (one commit)
    -> advance to the new last segment -> open its gate

The backend returns the comprehension questions of the segment the reader is
leaving together with the text of the next segment, so the backfill and the
append are committed to the store together.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from storyreader.comprehension import GateBook
from storyreader.errors import SegmentIndexError, StoryError
from storyreader.models import (
    GateSnapshot,
    ProgressionResult,
    Session,
    StoryChoice,
    StoryMetadata,
)
from storyreader.services.story_api import END_STORY_CHOICE, StoryAPIClient, format_choice
from storyreader.services.story_store import SessionStore

log = logging.getLogger(__name__)

COMPREHENSION_REQUIRED = "comprehension-required"
ALREADY_COMPLETED = "already-completed"
EXTENSION_IN_FLIGHT = "extension-in-flight"
NOT_AT_LATEST = "not-at-latest-segment"


class ProgressionController:
    def __init__(
        self,
        store: SessionStore,
        api: StoryAPIClient,
        gates: Optional[GateBook] = None,
    ):
        self.store = store
        self.api = api
        self.gates = gates or GateBook()
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def _claim(self, session_id: str) -> bool:
        with self._lock:
            if session_id in self._in_flight:
                return False
            self._in_flight.add(session_id)
            return True

    def _release(self, session_id: str) -> None:
        with self._lock:
            self._in_flight.discard(session_id)

    def is_extending(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._in_flight

    def snapshot(self, session_id: str, segment_index: int) -> GateSnapshot:
        return self.gates.snapshot(session_id, segment_index)

    def start_story(self, metadata: StoryMetadata) -> ProgressionResult:
        """Create a story on the backend and make it the current session."""
        response = self.api.create_story(metadata)
        # On creation the questions belong to the first (and only) segment.
        first = response.to_segment().model_copy(
            update={"comprehension_questions": response.comprehension_questions}
        )
        session = self.store.create_session(
            response.session_id,
            first,
            metadata=response.metadata,
            created_at=response.timestamp,
            completed=response.is_conclusion,
        )
        self.store.set_current(session.session_id)
        self.gates.open(session.session_id, 0, first.comprehension_questions)
        return ProgressionResult(session=session, segment_index=0)

    def resume(self, session_id: str) -> ProgressionResult:
        """Make a session current, fetching it from the backend if unknown locally."""
        session = self.store.get_session(session_id)
        if session is None:
            log.info(f"[{session_id}] Not stored locally, loading from backend")
            session = self.store.add_session(self.api.get_story_session(session_id))
        self.store.set_current(session_id)
        self._restore_quiz_results(session)
        index = session.last_index
        self.gates.open(session_id, index, session.segments[index].comprehension_questions)
        return ProgressionResult(session=session, segment_index=index)

    def _restore_quiz_results(self, session: Session) -> None:
        """Mark gates whose quiz the reader already submitted in an earlier run."""
        child_name = session.metadata.child_name
        if not child_name:
            return
        try:
            results = self.api.get_comprehension_results(child_name)
        except StoryError as e:
            log.warning(f"[{session.session_id}] Could not load earlier quiz results: {e}")
            return

        by_sequence = {segment.sequence: i for i, segment in enumerate(session.segments)}
        for result in results:
            if result.get("session_id") != session.session_id:
                continue
            sequence = result.get("segment_sequence") or result.get("segmentSequence") or 1
            index = by_sequence.get(sequence)
            if index is None:
                continue
            correct = result.get("correct_answers")
            gate = self.gates.mark_submitted(
                session.session_id,
                index,
                session.segments[index].comprehension_questions,
                correct if isinstance(correct, int) else None,
            )
            if gate is not None:
                log.info(f"[{session.session_id}] Segment {index} quiz already submitted earlier")

    def request_choice(
        self, session: Session, segment_index: int, choice: StoryChoice | str
    ) -> ProgressionResult:
        """Continue the story with one of the offered choices."""
        description = choice if isinstance(choice, str) else choice.description or choice.label
        return self._extend(session, segment_index, format_choice(choice), description, end_story=False)

    def request_end_story(self, session: Session, segment_index: int) -> ProgressionResult:
        """Ask the backend for a concluding segment."""
        return self._extend(session, segment_index, END_STORY_CHOICE, END_STORY_CHOICE, end_story=True)

    def _extend(
        self,
        session: Session,
        segment_index: int,
        choice_made: str,
        description: str,
        end_story: bool,
    ) -> ProgressionResult:
        session_id = session.session_id
        current = self.store.require_session(session_id)

        if current.completed:
            log.info(f"[{session_id}] Story already completed, nothing to extend")
            return ProgressionResult(blocked=True, reason=ALREADY_COMPLETED, session=current, segment_index=current.last_index)
        if not 0 <= segment_index < len(current.segments):
            raise SegmentIndexError(session_id, segment_index, len(current.segments))
        if segment_index != current.last_index:
            return ProgressionResult(blocked=True, reason=NOT_AT_LATEST, session=current, segment_index=segment_index)

        leaving = current.segments[segment_index]
        self.gates.ensure(session_id, segment_index, leaving.comprehension_questions)
        if not self.gates.is_satisfied(session_id, segment_index):
            log.info(f"[{session_id}] Segment {segment_index} blocked: comprehension check pending")
            return ProgressionResult(blocked=True, reason=COMPREHENSION_REQUIRED, session=current, segment_index=segment_index)

        if not self._claim(session_id):
            log.info(f"[{session_id}] Extension already in flight, ignoring request")
            return ProgressionResult(blocked=True, reason=EXTENSION_IN_FLIGHT, session=current, segment_index=segment_index)

        try:
            response = self.api.continue_story(
                session_id, choice_made, current.metadata, end_story=end_story
            )
            backfill = None
            if response.comprehension_questions and not leaving.has_questions:
                backfill = response.comprehension_questions
            new_segment = response.to_segment(choice_made=description)
            updated = self.store.apply_extension(
                session_id,
                segment_index,
                backfill,
                new_segment,
                end_story=end_story or response.is_conclusion,
            )
        finally:
            self._release(session_id)

        new_index = updated.last_index
        self.gates.open(session_id, new_index, updated.segments[new_index].comprehension_questions)
        if updated.completed:
            log.info(f"[{session_id}] Story completed at segment {new_index}")
        return ProgressionResult(session=updated, segment_index=new_index)
