"""Parsing of story backend payloads into typed models.

The backend's field names are loose (camelCase and snake_case variants,
choices as plain strings or objects, values nested under ``metadata``).
All of that is resolved here so the state machine only sees the models
from ``storyreader.models``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from storyreader.errors import StoryAPIError
from storyreader.models import Session, StoryMetadata, StoryResponse

# Bookkeeping keys the backend nests inside metadata alongside reader context.
_METADATA_BOOKKEEPING = ("session_id", "story_id", "story_sequence", "metrics")


def _first(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first truthy value among keys."""
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return default


def normalize_choices(raw: Any) -> list[dict[str, str]]:
    """Turn backend choices into label/description dicts (labels A, B, C...)."""
    if not isinstance(raw, list):
        return []
    choices: list[dict[str, str]] = []
    for index, choice in enumerate(raw):
        letter = chr(65 + index)
        if isinstance(choice, str):
            choices.append({"label": letter, "description": choice})
        elif isinstance(choice, dict):
            choices.append(
                {
                    "label": choice.get("label") or letter,
                    "description": choice.get("description") or str(choice),
                }
            )
    return choices


def normalize_questions(raw: Any) -> Optional[list[dict[str, Any]]]:
    """Turn backend questions into question/options/correct_answer dicts.

    Returns None when there are no questions.
    """
    if not isinstance(raw, list) or not raw:
        return None
    questions: list[dict[str, Any]] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        options = item.get("options")
        if not isinstance(options, list):
            options = item.get("choices") or []
        correct = item.get("correct_answer")
        if not isinstance(correct, int):
            correct = item.get("correctAnswer") or 0
        questions.append(
            {
                "question": item.get("question") or item.get("text") or "",
                "options": options,
                "correct_answer": correct,
            }
        )
    return questions or None


def _reader_metadata(raw: Any, fallback: Optional[StoryMetadata]) -> dict[str, Any]:
    merged = fallback.model_dump() if fallback else {}
    if isinstance(raw, dict):
        merged.update(
            {k: v for k, v in raw.items() if k not in _METADATA_BOOKKEEPING and v is not None}
        )
    return merged


def parse_story_response(
    payload: Any,
    fallback_session_id: Optional[str] = None,
    fallback_metadata: Optional[StoryMetadata] = None,
) -> StoryResponse:
    """Validate a create/continue reply into a StoryResponse."""
    if not isinstance(payload, dict):
        raise StoryAPIError(f"Malformed story response: expected object, got {type(payload).__name__}")

    meta = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    data = {
        "session_id": meta.get("session_id") or payload.get("session_id") or fallback_session_id or "",
        "story_id": meta.get("story_id") or payload.get("story_id") or "",
        "story_text": _first(payload, "storyText", "story", "story_text", default=""),
        "sequence": meta.get("story_sequence") or payload.get("story_sequence") or 1,
        "is_conclusion": bool(payload.get("is_conclusion")),
        "next_choices": normalize_choices(_first(payload, "nextChoices", "next_choices", default=[])),
        "comprehension_questions": normalize_questions(
            _first(payload, "comprehensionQuestions", "comprehension_questions")
        ),
        "metrics": meta.get("metrics") or payload.get("metrics") or {},
        "metadata": _reader_metadata(payload.get("metadata"), fallback_metadata),
        "timestamp": payload.get("timestamp") or datetime.now(timezone.utc).isoformat(),
    }
    if not data["session_id"]:
        raise StoryAPIError("Malformed story response: missing session_id")
    try:
        return StoryResponse(**data)
    except ValidationError as e:
        raise StoryAPIError(f"Malformed story response: {e}") from e


def parse_session(payload: Any) -> Session:
    """Validate a stored-session reply (GET /story/{id}) into a Session."""
    if not isinstance(payload, dict):
        raise StoryAPIError("Malformed story session: expected object")
    segments = []
    for raw in _first(payload, "story_segments", "segments", default=[]):
        if not isinstance(raw, dict):
            continue
        segments.append(
            {
                "sequence": raw.get("sequence") or len(segments) + 1,
                "story_text": _first(raw, "story_text", "storyText", "story", default=""),
                "choice_made": raw.get("choice_made") or None,
                "next_choices": normalize_choices(_first(raw, "next_choices", "nextChoices", default=[])),
                "comprehension_questions": normalize_questions(
                    _first(raw, "comprehension_questions", "comprehensionQuestions")
                ),
                "metrics": raw.get("metrics") or {},
            }
        )
    if not payload.get("session_id"):
        raise StoryAPIError("Malformed story session: missing session_id")
    try:
        return Session(
            session_id=payload["session_id"],
            segments=segments,
            metadata=_reader_metadata(payload.get("metadata"), None),
            created_at=payload.get("created_at") or "",
            completed=bool(payload.get("completed")),
        )
    except ValidationError as e:
        raise StoryAPIError(f"Malformed story session: {e}") from e
