"""Which segment the reader may look at.

Readers only move forward, and never past the last generated segment; a
finished story is frozen on its last segment.
"""

from __future__ import annotations

from storyreader.comprehension import GateBook
from storyreader.models import Session


class NavigationGuard:
    def __init__(self, gates: GateBook):
        self.gates = gates

    def can_navigate_to(self, session: Session, target_index: int, current_index: int) -> bool:
        if session.completed:
            return False
        if target_index < current_index or target_index < 0:
            return False
        return target_index <= len(session.segments) - 1

    def navigate(self, session: Session, target_index: int, current_index: int) -> int:
        """Move to target_index if allowed; returns the index the reader ends on."""
        if not self.can_navigate_to(session, target_index, current_index):
            return current_index
        if target_index != current_index:
            # Fresh answer sheet; attempts and pass state are kept.
            questions = session.segments[target_index].comprehension_questions
            self.gates.open(session.session_id, target_index, questions)
        return target_index
