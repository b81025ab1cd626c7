"""Tests for segment and session validation."""

import pytest
from pydantic import ValidationError

from storyreader.models import ComprehensionQuestion, Segment, Session, StoryResponse


def test_segment_rejects_non_positive_sequence():
    with pytest.raises(ValidationError):
        Segment(sequence=0, story_text="Once upon a time")


def test_question_rejects_out_of_range_correct_answer():
    with pytest.raises(ValidationError):
        ComprehensionQuestion(question="Who?", options=["Fox", "Owl"], correct_answer=2)


def test_segment_without_choices_is_an_ending():
    segment = Segment(sequence=3, story_text="And they lived happily.")

    assert segment.is_ending
    assert not segment.has_questions


def test_session_requires_at_least_one_segment():
    with pytest.raises(ValidationError):
        Session(session_id="s-1", segments=[])


def test_story_response_to_segment_leaves_questions_behind():
    response = StoryResponse(
        session_id="s-1",
        story_text="The dragon wakes up.",
        sequence=2,
        next_choices=[{"label": "A", "description": "Run"}],
        comprehension_questions=[
            {"question": "Where?", "options": ["Cave", "Sea"], "correct_answer": 0}
        ],
    )

    segment = response.to_segment(choice_made="Knock")

    assert segment.sequence == 2
    assert segment.choice_made == "Knock"
    assert segment.comprehension_questions is None
    assert segment.next_choices[0].description == "Run"
