"""Tests for the progression controller."""

import json

import pytest

from storyreader.comprehension import GateBook
from storyreader.errors import StoryAPIError
from storyreader.models import (
    ComprehensionQuestion,
    Segment,
    Session,
    StoryChoice,
    StoryMetadata,
    StoryResponse,
)
from storyreader.progression import (
    ALREADY_COMPLETED,
    COMPREHENSION_REQUIRED,
    EXTENSION_IN_FLIGHT,
    NOT_AT_LATEST,
    ProgressionController,
)
from storyreader.services.database import SessionDatabase
from storyreader.services.story_api import END_STORY_CHOICE
from storyreader.services.story_store import SessionStore

CHOICES = [StoryChoice(label="A", description="Follow the fox"), StoryChoice(label="B", description="Stay home")]


def make_questions(count: int = 3) -> list[ComprehensionQuestion]:
    return [
        ComprehensionQuestion(question=f"Q{i}", options=["yes", "no"], correct_answer=0)
        for i in range(count)
    ]


def reply(sequence: int, questions=None, conclusion: bool = False, choices=CHOICES) -> StoryResponse:
    return StoryResponse(
        session_id="s-1",
        story_text=f"Part {sequence}",
        sequence=sequence,
        is_conclusion=conclusion,
        next_choices=[] if conclusion else choices,
        comprehension_questions=questions,
    )


class FakeStoryAPI:
    """Story backend stub returning queued replies."""

    def __init__(self, replies=None) -> None:
        self.replies = list(replies or [])
        self.calls: list[dict] = []
        self.error = None
        self.on_call = None
        self.results: list[dict] = []
        self.results_error = None

    def create_story(self, metadata):
        self.calls.append({"create": metadata})
        return self.replies.pop(0)

    def continue_story(self, session_id, choice_made, metadata=None, end_story=False):
        self.calls.append({"session_id": session_id, "choice_made": choice_made, "end_story": end_story})
        if self.on_call:
            self.on_call()
        if self.error:
            raise self.error
        return self.replies.pop(0)

    def get_story_session(self, session_id):
        self.calls.append({"get": session_id})
        return Session(
            session_id=session_id,
            segments=[Segment(sequence=1, story_text="Remote", next_choices=CHOICES)],
        )

    def get_comprehension_results(self, child_name, days=None):
        self.calls.append({"results": child_name})
        if self.results_error:
            raise self.results_error
        return list(self.results)


def setup(questions=None, replies=None, database=None):
    store = SessionStore(database)
    store.create_session(
        "s-1",
        Segment(sequence=1, story_text="Part 1", next_choices=CHOICES, comprehension_questions=questions),
        StoryMetadata(child_name="Sam"),
    )
    api = FakeStoryAPI(replies)
    controller = ProgressionController(store, api, GateBook(max_attempts=2))
    return controller, store, api


def test_choice_without_questions_extends_story():
    controller, store, api = setup(replies=[reply(2)])
    session = store.require_session("s-1")

    result = controller.request_choice(session, 0, CHOICES[0])

    assert not result.blocked
    assert result.segment_index == 1
    assert len(result.session.segments) == 2
    assert not result.session.completed
    assert api.calls[0]["choice_made"] == "A - Follow the fox"
    assert result.session.segments[1].choice_made == "Follow the fox"


def test_unanswered_questions_block_choice():
    controller, store, api = setup(questions=make_questions(), replies=[reply(2)])
    session = store.require_session("s-1")

    result = controller.request_choice(session, 0, CHOICES[0])

    assert result.blocked
    assert result.reason == COMPREHENSION_REQUIRED
    assert api.calls == []
    assert len(store.require_session("s-1").segments) == 1


def test_retry_to_cap_unlocks_choice():
    questions = make_questions()
    controller, store, api = setup(questions=questions, replies=[reply(2)])
    session = store.require_session("s-1")
    gate = controller.gates.open("s-1", 0, questions)

    for i, pick in enumerate([0, 0, 1]):
        gate.answer(i, pick)
    first = gate.submit()
    assert (gate.attempts, gate.passed, first.correct_count, first.total) == (1, True, 2, 3)
    assert gate.can_retry()

    gate.retry()
    assert controller.request_choice(session, 0, CHOICES[1]).reason == COMPREHENSION_REQUIRED

    for i in range(3):
        gate.answer(i, 0)
    gate.submit()
    assert gate.attempts == 2
    assert not gate.can_retry()

    result = controller.request_choice(session, 0, CHOICES[1])
    assert not result.blocked
    assert len(api.calls) == 1


def test_perfect_first_submission_unlocks_choice():
    questions = make_questions()
    controller, store, api = setup(questions=questions, replies=[reply(2)])
    gate = controller.gates.open("s-1", 0, questions)
    for i in range(3):
        gate.answer(i, 0)
    gate.submit()

    assert not gate.can_retry()
    result = controller.request_choice(store.require_session("s-1"), 0, CHOICES[0])
    assert not result.blocked


@pytest.mark.parametrize(
    "gate_state, expect_call",
    [
        ("none", True),
        ("open", False),
        ("imperfect_under_cap", True),
        ("imperfect_at_cap", True),
        ("perfect", True),
    ],
)
def test_unlock_matches_gate_satisfaction(gate_state, expect_call):
    questions = None if gate_state == "none" else make_questions(2)
    controller, store, api = setup(questions=questions, replies=[reply(2)])
    if questions:
        gate = controller.gates.open("s-1", 0, questions)
        if gate_state != "open":
            wrong = 0 if gate_state == "perfect" else 1
            gate.answer(0, 0)
            gate.answer(1, wrong)
            gate.submit()
        if gate_state == "imperfect_at_cap":
            gate.retry()
            gate.answer(0, 1)
            gate.answer(1, 1)
            gate.submit()
        assert gate.is_satisfied() == expect_call

    result = controller.request_end_story(store.require_session("s-1"), 0)

    assert (len(api.calls) == 1) == expect_call
    assert result.blocked != expect_call


def test_end_story_on_completed_session_is_noop():
    controller, store, api = setup()
    store.append_segment("s-1", Segment(sequence=2, story_text="The end"))

    result = controller.request_end_story(store.require_session("s-1"), 1)

    assert result.blocked
    assert result.reason == ALREADY_COMPLETED
    assert api.calls == []


def test_end_story_completes_session():
    controller, store, api = setup(replies=[reply(2, conclusion=True)])

    result = controller.request_end_story(store.require_session("s-1"), 0)

    assert api.calls[0]["end_story"] is True
    assert api.calls[0]["choice_made"] == END_STORY_CHOICE
    assert result.session.completed
    assert result.segment_index == 1


def test_explicit_end_story_completes_even_without_conclusion_flag():
    controller, store, api = setup(replies=[reply(2)])

    result = controller.request_end_story(store.require_session("s-1"), 0)

    assert result.session.completed


def test_failed_extension_leaves_state_untouched():
    questions = make_questions(1)
    controller, store, api = setup(questions=questions, replies=[reply(2)])
    gate = controller.gates.open("s-1", 0, questions)
    gate.answer(0, 1)
    gate.submit()
    api.error = StoryAPIError("timeout")
    session = store.require_session("s-1")

    with pytest.raises(StoryAPIError):
        controller.request_choice(session, 0, CHOICES[0])

    assert len(store.require_session("s-1").segments) == 1
    assert (gate.attempts, gate.passed) == (1, True)
    assert not controller.is_extending("s-1")

    api.error = None
    result = controller.request_choice(session, 0, CHOICES[0])
    assert not result.blocked
    assert len(result.session.segments) == 2


def test_questions_for_left_segment_land_with_new_segment(tmp_path):
    questions = make_questions(2)
    controller, store, api = setup(replies=[reply(2, questions=questions)], database=SessionDatabase(data_dir=tmp_path))

    result = controller.request_choice(store.require_session("s-1"), 0, CHOICES[0])

    assert result.session.segments[0].comprehension_questions == questions
    assert result.session.segments[1].comprehension_questions is None
    saved = json.loads((tmp_path / "story_sessions.json").read_text())
    segments = saved["sessions"][0]["segments"]
    assert len(segments) == 2
    assert len(segments[0]["comprehension_questions"]) == 2


def test_existing_questions_are_not_overwritten():
    original = make_questions(1)
    controller, store, api = setup(questions=original, replies=[reply(2, questions=make_questions(3))])
    gate = controller.gates.open("s-1", 0, original)
    gate.answer(0, 0)
    gate.submit()

    result = controller.request_choice(store.require_session("s-1"), 0, CHOICES[0])

    assert len(result.session.segments[0].comprehension_questions) == 1


def test_questions_backfilled_onto_current_segment_block_progress():
    controller, store, api = setup(replies=[reply(2)])

    result = controller.request_choice(store.require_session("s-1"), 0, CHOICES[0])
    store.patch_comprehension_questions("s-1", 1, make_questions(1))
    blocked = controller.request_choice(store.require_session("s-1"), result.segment_index, CHOICES[0])

    assert blocked.reason == COMPREHENSION_REQUIRED


def test_reentrant_request_is_refused():
    controller, store, api = setup(replies=[reply(2)])
    session = store.require_session("s-1")
    nested = []
    api.on_call = lambda: nested.append(controller.request_choice(session, 0, CHOICES[1]))

    result = controller.request_choice(session, 0, CHOICES[0])

    assert not result.blocked
    assert nested[0].blocked
    assert nested[0].reason == EXTENSION_IN_FLIGHT
    assert len(api.calls) == 1
    assert not controller.is_extending("s-1")


def test_request_from_older_segment_is_refused():
    controller, store, api = setup(replies=[reply(2), reply(3)])
    controller.request_choice(store.require_session("s-1"), 0, CHOICES[0])

    result = controller.request_choice(store.require_session("s-1"), 0, CHOICES[0])

    assert result.reason == NOT_AT_LATEST
    assert len(api.calls) == 1


def test_start_story_opens_first_gate():
    store = SessionStore()
    api = FakeStoryAPI([reply(1, questions=make_questions(2))])
    controller = ProgressionController(store, api, GateBook(max_attempts=2))

    result = controller.start_story(StoryMetadata(child_name="Sam"))

    assert result.segment_index == 0
    assert store.get_current().session_id == "s-1"
    assert result.session.segments[0].comprehension_questions is not None
    assert not controller.gates.is_satisfied("s-1", 0)


def test_resume_fetches_unknown_session():
    store = SessionStore()
    api = FakeStoryAPI()
    controller = ProgressionController(store, api, GateBook(max_attempts=2))

    result = controller.resume("remote-1")

    assert api.calls == [{"get": "remote-1"}]
    assert result.segment_index == 0
    assert store.get_current().session_id == "remote-1"


def test_resume_skips_quiz_already_submitted_earlier():
    controller, store, api = setup(questions=make_questions(2))
    api.results = [
        {"session_id": "other", "segment_sequence": 1, "correct_answers": 0},
        {"session_id": "s-1", "segment_sequence": 1, "correct_answers": 2},
    ]

    result = controller.resume("s-1")

    assert {"results": "Sam"} in api.calls
    gate = controller.gates.get("s-1", result.segment_index)
    assert gate.passed
    assert gate.correct_count == 2
    assert controller.gates.is_satisfied("s-1", 0)


def test_resume_keeps_gate_closed_without_matching_results():
    controller, store, api = setup(questions=make_questions(2))
    api.results = [{"session_id": "s-1", "segment_sequence": 7, "correct_answers": 1}]

    controller.resume("s-1")

    assert not controller.gates.is_satisfied("s-1", 0)


def test_resume_survives_results_lookup_failure():
    controller, store, api = setup(questions=make_questions(2))
    api.results_error = StoryAPIError("backend down", status_code=503)

    result = controller.resume("s-1")

    assert result.segment_index == 0
    assert store.get_current().session_id == "s-1"
    assert not controller.gates.is_satisfied("s-1", 0)
