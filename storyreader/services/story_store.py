"""Canonical collection of story sessions and the current-session pointer."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from storyreader.errors import (
    DuplicateSessionError,
    SegmentIndexError,
    SegmentValidationError,
    SessionCompletedError,
    SessionNotFoundError,
    UnusableSessionError,
)
from storyreader.models import ComprehensionQuestion, Segment, Session, StoryMetadata
from storyreader.services.database import SessionDatabase, StoredSessions

log = logging.getLogger(__name__)


def _validate_segment(segment: Any) -> Segment:
    if segment is None:
        raise SegmentValidationError("A segment is required")
    try:
        return Segment.model_validate(segment)
    except ValidationError as e:
        raise SegmentValidationError(f"Invalid segment: {e}") from e


def _validate_questions(questions: Optional[Iterable[Any]]) -> Optional[list[ComprehensionQuestion]]:
    if questions is None:
        return None
    try:
        validated = [ComprehensionQuestion.model_validate(q) for q in questions]
    except ValidationError as e:
        raise SegmentValidationError(f"Invalid comprehension question: {e}") from e
    return validated or None


class SessionStore:
    """Owns every session seen in this process; segments only ever grow by append.

    Reads hand out deep copies. When a database is attached the full store is
    written after every mutation.
    """

    def __init__(self, database: Optional[SessionDatabase] = None):
        self.database = database
        self._sessions: dict[str, Session] = {}
        self._unusable: dict[str, Any] = {}
        self._current_id: Optional[str] = None
        if database is not None:
            self._restore(database.load())

    # ---- hydration -------------------------------------------------------

    def _restore(self, stored: StoredSessions) -> None:
        self._sessions = {}
        self._unusable = {}
        for index, raw in enumerate(stored.unusable):
            sid = raw.get("session_id") if isinstance(raw, dict) else None
            sid = sid or f"unusable-{index}"
            self._unusable[str(sid)] = raw
        for session in stored.sessions:
            self._sessions[session.session_id] = session
        current = stored.current_session_id
        self._current_id = current if current in self._sessions else None

    def restore(
        self,
        sessions: Iterable[Session | dict[str, Any]],
        current_session_id: Optional[str] = None,
    ) -> None:
        """Rebuild the store from a flat list of sessions."""
        stored = StoredSessions(current_session_id=current_session_id)
        for item in sessions:
            try:
                session = Session.model_validate(item)
            except ValidationError as e:
                raw = item.model_dump(mode="json") if isinstance(item, Session) else item
                sid = raw.get("session_id", "?") if isinstance(raw, dict) else "?"
                log.error(f"[{sid}] Restored session is unusable: {e}")
                stored.unusable.append(raw)
                continue
            if not session.segments:
                log.error(f"[{session.session_id}] Restored session has no segments")
                stored.unusable.append(session.model_dump(mode="json"))
                continue
            stored.sessions.append(session.model_copy(deep=True))
        self._restore(stored)
        self._persist()

    def _persist(self) -> None:
        if self.database is not None:
            self.database.save(
                list(self._sessions.values()),
                self._current_id,
                list(self._unusable.values()),
            )

    def _require(self, session_id: str) -> Session:
        if session_id in self._unusable:
            raise UnusableSessionError(session_id, "It failed validation when restored.")
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if not session.segments:
            raise UnusableSessionError(session_id, "It has no segments.")
        return session

    # ---- reads -----------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[Session]:
        """Return a copy of the session, or None if it is unknown."""
        if session_id not in self._sessions and session_id not in self._unusable:
            return None
        return self._require(session_id).model_copy(deep=True)

    def require_session(self, session_id: str) -> Session:
        return self._require(session_id).model_copy(deep=True)

    def sessions(self) -> list[Session]:
        return [s.model_copy(deep=True) for s in self._sessions.values()]

    def unusable_session_ids(self) -> list[str]:
        return list(self._unusable)

    def get_current(self) -> Optional[Session]:
        if self._current_id is None:
            return None
        return self.get_session(self._current_id)

    def set_current(self, session_id: str) -> None:
        """Make a known session the current one; no session is modified."""
        self._require(session_id)
        self._current_id = session_id
        self._persist()

    def clear_current(self) -> None:
        self._current_id = None
        self._persist()

    # ---- mutations -------------------------------------------------------

    def create_session(
        self,
        session_id: str,
        first_segment: Segment,
        metadata: Optional[StoryMetadata | dict[str, Any]] = None,
        created_at: Optional[str] = None,
        completed: bool = False,
    ) -> Session:
        """Start a session holding exactly one segment."""
        segment = _validate_segment(first_segment)
        if not session_id:
            raise SegmentValidationError("A session id is required")
        if session_id in self._sessions or session_id in self._unusable:
            raise DuplicateSessionError(session_id)

        session = Session(
            session_id=session_id,
            segments=[segment],
            metadata=metadata or StoryMetadata(),
            created_at=created_at or datetime.now(timezone.utc).isoformat(),
            completed=completed or segment.is_ending,
        )
        self._sessions[session_id] = session
        self._persist()
        log.info(f"[{session_id}] Session created (completed={session.completed})")
        return session.model_copy(deep=True)

    def add_session(self, session: Session | dict[str, Any]) -> Session:
        """Adopt a session loaded from elsewhere (e.g. the story backend).

        The incoming copy may only extend the stored history: every stored
        segment must come back with the same sequence and text. A stored copy
        with more segments wins, and a completed story is never replaced.
        """
        try:
            incoming = Session.model_validate(session)
        except ValidationError as e:
            raise SegmentValidationError(f"Invalid session: {e}") from e
        session_id = incoming.session_id
        existing = self._sessions.get(session_id)
        if existing is not None:
            for index, (ours, theirs) in enumerate(zip(existing.segments, incoming.segments)):
                if ours.sequence != theirs.sequence or ours.story_text != theirs.story_text:
                    raise SegmentValidationError(
                        f"Session '{session_id}' conflicts with the stored copy at segment {index}"
                    )
            if existing.completed:
                if len(incoming.segments) != len(existing.segments) or not incoming.completed:
                    raise SessionCompletedError(session_id)
                return existing.model_copy(deep=True)
            if len(existing.segments) > len(incoming.segments):
                return existing.model_copy(deep=True)

        adopted = incoming.model_copy(deep=True)
        if existing is not None:
            # Questions already attached locally are kept.
            for ours, theirs in zip(existing.segments, adopted.segments):
                if ours.has_questions and not theirs.has_questions:
                    theirs.comprehension_questions = ours.comprehension_questions
        self._unusable.pop(session_id, None)
        self._sessions[session_id] = adopted
        self._persist()
        return adopted.model_copy(deep=True)

    def append_segment(self, session_id: str, new_segment: Segment, end_story: bool = False) -> Session:
        """Append a segment and recompute completion."""
        return self.apply_extension(session_id, None, None, new_segment, end_story=end_story)

    def patch_comprehension_questions(
        self,
        session_id: str,
        segment_index: int,
        questions: Optional[Iterable[ComprehensionQuestion]],
    ) -> Session:
        """Attach questions to an already-appended segment, in place.

        Questions can be replaced but not removed; an empty list is rejected.
        """
        session = self._require(session_id)
        if not 0 <= segment_index < len(session.segments):
            raise SegmentIndexError(session_id, segment_index, len(session.segments))
        validated = _validate_questions(questions)
        if validated is None:
            raise SegmentValidationError("At least one comprehension question is required")

        updated = session.model_copy(deep=True)
        updated.segments[segment_index].comprehension_questions = validated
        self._sessions[session_id] = updated
        self._persist()
        log.info(
            f"[{session_id}] Segment {segment_index} given "
            f"{len(validated)} comprehension questions"
        )
        return updated.model_copy(deep=True)

    def apply_extension(
        self,
        session_id: str,
        segment_index: Optional[int],
        questions: Optional[Iterable[ComprehensionQuestion]],
        new_segment: Segment,
        end_story: bool = False,
    ) -> Session:
        """Backfill questions on one segment and append the next in a single commit.

        Everything is validated before the stored session is replaced, so a
        failure leaves the store untouched.
        """
        session = self._require(session_id)
        if session.completed:
            raise SessionCompletedError(session_id)
        segment = _validate_segment(new_segment)
        validated = _validate_questions(questions)
        if validated is not None and not (
            segment_index is not None and 0 <= segment_index < len(session.segments)
        ):
            raise SegmentIndexError(session_id, -1 if segment_index is None else segment_index, len(session.segments))

        updated = session.model_copy(deep=True)
        if validated is not None:
            updated.segments[segment_index].comprehension_questions = validated
        updated.segments.append(segment)
        updated.completed = end_story or segment.is_ending
        self._sessions[session_id] = updated
        self._persist()
        log.info(
            f"[{session_id}] Appended segment {updated.last_index} "
            f"(sequence={segment.sequence}, completed={updated.completed})"
        )
        return updated.model_copy(deep=True)
