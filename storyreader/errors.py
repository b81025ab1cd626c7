"""Typed failures raised by the story session state machine.

Gating violations (an unsatisfied comprehension check, a retry that is not
offered) are not errors; they come back as blocked results with a reason code.
"""

from typing import Optional


class StoryError(Exception):
    """Base class for story session failures."""


class SegmentValidationError(StoryError, ValueError):
    """Raised when a segment or comprehension question is malformed."""


class SessionNotFoundError(StoryError, LookupError):
    """Raised when no session with the given id is known to the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Story session '{session_id}' not found.")
        self.session_id = session_id


class DuplicateSessionError(StoryError, ValueError):
    """Raised when creating a session whose id is already stored."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Story session '{session_id}' already exists.")
        self.session_id = session_id


class SegmentIndexError(StoryError, IndexError):
    """Raised when a segment index falls outside a session's segments."""

    def __init__(self, session_id: str, segment_index: int, length: int) -> None:
        super().__init__(
            f"Segment index {segment_index} out of range for session "
            f"'{session_id}' ({length} segments)."
        )
        self.session_id = session_id
        self.segment_index = segment_index


class SessionCompletedError(StoryError, RuntimeError):
    """Raised when appending to a session whose story has ended."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Story session '{session_id}' is already completed.")
        self.session_id = session_id


class UnusableSessionError(StoryError, RuntimeError):
    """Raised when a restored session is corrupt and cannot be operated on."""

    def __init__(self, session_id: str, detail: str = "") -> None:
        message = f"Story session '{session_id}' is unusable."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)
        self.session_id = session_id


class StoreCorruptionError(StoryError, RuntimeError):
    """Raised when the persisted session file cannot be read at all."""


class StoryAPIError(StoryError, RuntimeError):
    """Transient failure of a call to the story backend."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
