"""Story backend API client."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from storyreader.config import settings
from storyreader.errors import StoryAPIError
from storyreader.models import (
    ComprehensionQuestion,
    Session,
    StoryChoice,
    StoryMetadata,
    StoryResponse,
)
from storyreader.parsing import parse_session, parse_story_response

log = logging.getLogger(__name__)

END_STORY_CHOICE = "END_STORY - Eindig het verhaal met een mooie conclusie"


def format_choice(choice: StoryChoice | str) -> str:
    """Wire form of a reader's choice: "<label> - <description>"."""
    if isinstance(choice, str):
        return choice
    description = choice.description or choice.label
    return f"{choice.label} - {description}" if choice.label else description


class StoryAPIClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base = (base_url or settings.STORY_API_URL).rstrip("/")
        self.client = httpx.Client(
            base_url=self.base,
            headers={"content-type": "application/json"},
            timeout=timeout or settings.STORY_API_TIMEOUT,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            r = self.client.request(method, path, **kwargs)
            r.raise_for_status()
            return r.json()
        except httpx.HTTPStatusError as e:
            # The backend usually explains itself in a "message" field.
            detail = None
            try:
                body = e.response.json()
                detail = body.get("message") if isinstance(body, dict) else None
            except ValueError:
                pass
            message = detail or f"{method} {path} failed with status {e.response.status_code}"
            log.warning(f"Story API error: {message}")
            raise StoryAPIError(message, status_code=e.response.status_code) from e
        except httpx.HTTPError as e:
            log.warning(f"Story API unreachable: {e}")
            raise StoryAPIError(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise StoryAPIError(f"{method} {path} returned invalid JSON: {e}") from e

    def create_story(self, metadata: StoryMetadata) -> StoryResponse:
        """Start a new story; the reply carries the first segment."""
        language = metadata.language or settings.DEFAULT_LANGUAGE
        age = metadata.age or settings.DEFAULT_AGE
        data = self._request(
            "POST",
            "/story",
            json={
                "character": metadata.character,
                "setting": metadata.setting,
                "object": metadata.object,
                "childName": metadata.child_name,
                "language": language,
                "age": age,
            },
        )
        fallback = metadata.model_copy(update={"language": language, "age": age})
        return parse_story_response(data, fallback_metadata=fallback)

    def continue_story(
        self,
        session_id: str,
        choice_made: str,
        metadata: Optional[StoryMetadata] = None,
        end_story: bool = False,
    ) -> StoryResponse:
        """Extend a story with the reader's choice (or end it)."""
        metadata = metadata or StoryMetadata()
        data = self._request(
            "POST",
            "/story/continue",
            json={
                "session_id": session_id,
                "choice_made": choice_made,
                "language": metadata.language or settings.DEFAULT_LANGUAGE,
                "age": metadata.age or settings.DEFAULT_AGE,
                "end_story": end_story,
            },
        )
        return parse_story_response(data, fallback_session_id=session_id, fallback_metadata=metadata)

    def get_story_session(self, session_id: str) -> Session:
        """Fetch a stored session with all its segments."""
        return parse_session(self._request("GET", f"/story/{session_id}"))

    def save_comprehension_results(
        self,
        session_id: str,
        segment_sequence: int,
        child_name: str,
        questions: list[ComprehensionQuestion],
        answers: dict[int, int],
        correct_count: int,
        child_profile_id: Optional[str] = None,
    ) -> dict:
        """Record a quiz submission for parent reporting."""
        payload: dict[str, Any] = {
            "session_id": session_id,
            "segment_sequence": segment_sequence,
            "child_name": child_name,
            "questions": [
                {
                    "question": q.question,
                    "options": q.options,
                    "userAnswerIndex": answers.get(i),
                    "correctAnswerIndex": q.correct_answer,
                    "isCorrect": answers.get(i) == q.correct_answer,
                }
                for i, q in enumerate(questions)
            ],
            "correct_answers": correct_count,
            "total_questions": len(questions),
        }
        if child_profile_id:
            payload["child_profile_id"] = child_profile_id
        return self._request("POST", "/story/comprehension-results", json=payload)

    def get_comprehension_results(self, child_name: str, days: Optional[int] = None) -> list[dict]:
        """Quiz submissions recorded for a child over the last `days` days."""
        data = self._request(
            "GET",
            f"/story/comprehension-results/{child_name}",
            params={"days": days or settings.COMPREHENSION_RESULTS_DAYS},
        )
        if not isinstance(data, dict) or not data.get("success"):
            return []
        results = data.get("data")
        return [r for r in results if isinstance(r, dict)] if isinstance(results, list) else []
