"""Text rendering helpers for the terminal reader."""

from __future__ import annotations

import textwrap
from typing import Iterable, Optional

from storyreader.models import (
    ComprehensionQuestion,
    GateSnapshot,
    GateState,
    Segment,
    Session,
    StoryChoice,
    SubmitResult,
)

REASON_MESSAGES = {
    "comprehension-required": "Answer the questions about this part first!",
    "already-completed": "This story has already ended.",
    "extension-in-flight": "The next part is still being written...",
    "not-at-latest-segment": "Go to the newest part of the story to continue.",
    "retry-unavailable": "No more tries for this quiz.",
    "unanswered-questions": "Answer every question first!",
}


def render_segment(segment: Segment, index: int, total: int, width: int = 72) -> list[str]:
    """Header plus wrapped story text for one segment."""
    lines = [f"--- Part {index + 1} of {total} ---"]
    if segment.choice_made:
        lines.append(f"(You chose: {segment.choice_made})")
    for paragraph in segment.story_text.split("\n"):
        if not paragraph.strip():
            lines.append("")
            continue
        lines.extend(textwrap.wrap(paragraph, width=width))
    return lines


def render_choices(choices: Iterable[StoryChoice]) -> list[str]:
    return [f"  [{c.label}] {c.description}" for c in choices]


def render_question(index: int, question: ComprehensionQuestion) -> list[str]:
    lines = [f"Question {index + 1}: {question.question}"]
    lines.extend(f"  {n}. {option}" for n, option in enumerate(question.options, 1))
    return lines


def render_score(result: SubmitResult) -> str:
    """One-line feedback after a quiz submission."""
    if not result.accepted:
        return REASON_MESSAGES.get(result.reason or "", "Quiz not submitted.")
    if result.correct_count == result.total:
        return f"{result.correct_count}/{result.total} correct - perfect!"
    return f"{result.correct_count}/{result.total} correct."


def render_gate_status(snapshot: GateSnapshot) -> Optional[str]:
    """Short gate status line, or None when there is no quiz."""
    if snapshot.state == GateState.CLOSED:
        return None
    if snapshot.state == GateState.OPEN:
        return f"Quiz: {snapshot.total} questions (try {snapshot.attempts + 1}/{snapshot.max_attempts})"
    score = f"{snapshot.correct_count}/{snapshot.total}"
    if snapshot.state == GateState.SUBMITTED:
        return f"Quiz done: {score}, you may try again"
    return f"Quiz done: {score}"


def parse_command(raw: str, choices: list[StoryChoice]) -> tuple[str, Optional[StoryChoice]]:
    """Map reader input to ("choice" | "end" | "next" | "quit" | "invalid", choice)."""
    text = raw.strip()
    lowered = text.lower()
    if lowered in ("q", "quit"):
        return "quit", None
    if lowered in ("e", "end"):
        return "end", None
    if lowered in ("n", "next"):
        return "next", None
    for choice in choices:
        if choice.label.lower() == lowered:
            return "choice", choice
    if text.isdigit() and 1 <= int(text) <= len(choices):
        return "choice", choices[int(text) - 1]
    return "invalid", None


def summarize_sessions(sessions: Iterable[Session], current_id: Optional[str] = None) -> list[dict]:
    """Rows describing stored sessions for listing."""
    rows: list[dict] = []
    for session in sessions:
        title = session.metadata.character or "Story"
        if session.metadata.child_name:
            title = f"{session.metadata.child_name} and the {title}"
        rows.append(
            {
                "Session": session.session_id,
                "Title": title,
                "Parts": len(session.segments),
                "Completed": session.completed,
                "Created": session.created_at[:19].replace("T", " "),
                "Current": session.session_id == current_id,
            }
        )
    return rows
