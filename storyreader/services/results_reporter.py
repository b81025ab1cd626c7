"""Reports accepted comprehension submissions to the story backend."""

from __future__ import annotations

import logging
from typing import Optional

from storyreader.comprehension import ComprehensionGate
from storyreader.errors import StoryError
from storyreader.models import SubmitResult
from storyreader.services.story_api import StoryAPIClient
from storyreader.services.story_store import SessionStore

log = logging.getLogger(__name__)


class ResultsReporter:
    """Gate listener; it observes submissions and never changes gate state."""

    def __init__(
        self,
        api: StoryAPIClient,
        store: SessionStore,
        child_profile_id: Optional[str] = None,
    ):
        self.api = api
        self.store = store
        self.child_profile_id = child_profile_id

    def __call__(self, gate: ComprehensionGate, result: SubmitResult) -> None:
        session = self.store.get_session(gate.session_id)
        if session is None or gate.segment_index >= len(session.segments):
            log.error(f"[{gate.session_id}] Cannot report results: segment {gate.segment_index} unknown")
            return
        child_name = session.metadata.child_name
        if not child_name:
            log.error(f"[{gate.session_id}] Cannot report results: no child name in metadata")
            return

        segment = session.segments[gate.segment_index]
        try:
            self.api.save_comprehension_results(
                session_id=gate.session_id,
                segment_sequence=segment.sequence,
                child_name=child_name,
                questions=gate.questions,
                answers=gate.answers,
                correct_count=result.correct_count,
                child_profile_id=self.child_profile_id,
            )
        except StoryError as e:
            log.error(f"[{gate.session_id}] Saving comprehension results failed: {e}")
            return
        log.info(
            f"[{gate.session_id}] Reported results for segment {gate.segment_index}: "
            f"{result.correct_count}/{result.total}"
        )
