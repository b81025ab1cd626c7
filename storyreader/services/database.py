"""JSON persistence for story sessions and the current-session pointer."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from storyreader.config import settings
from storyreader.errors import StoreCorruptionError
from storyreader.models import Session

log = logging.getLogger(__name__)


@dataclass
class StoredSessions:
    """Flat contents of the sessions file."""
    sessions: list[Session] = field(default_factory=list)
    current_session_id: Optional[str] = None
    # Entries that failed validation, kept verbatim so a save never drops them.
    unusable: list[Any] = field(default_factory=list)


class SessionDatabase:
    """Persists every known session to a single JSON file."""

    def __init__(self, data_dir: Optional[str | Path] = None, filename: Optional[str] = None):
        self.data_dir = Path(data_dir or settings.DATA_DIR)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.data_dir / (filename or settings.SESSIONS_FILE)
        self._health_check()

    def _health_check(self):
        """Verify the data directory is writable."""
        try:
            test_file = self.data_dir / ".health_check"
            test_file.write_text("ok")
            test_file.unlink()
            log.debug(f"Session database OK: {self.path}")
        except OSError as e:
            raise RuntimeError(f"Database error: {e}") from e

    def load(self) -> StoredSessions:
        """Read sessions from disk; a missing file means no sessions yet."""
        if not self.path.exists():
            return StoredSessions()
        try:
            data: Any = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            log.error(f"Session file {self.path} is unreadable: {e}")
            raise StoreCorruptionError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("sessions", []), list):
            raise StoreCorruptionError(f"Unexpected layout in {self.path}")

        stored = StoredSessions(current_session_id=data.get("current_session_id"))
        for raw in data.get("sessions", []):
            try:
                stored.sessions.append(Session.model_validate(raw))
            except ValidationError as e:
                sid = raw.get("session_id", "?") if isinstance(raw, dict) else "?"
                log.error(f"[{sid}] Stored session failed validation, marking unusable: {e}")
                stored.unusable.append(raw)
        return stored

    def save(
        self,
        sessions: list[Session],
        current_session_id: Optional[str] = None,
        unusable: Optional[list[Any]] = None,
    ) -> None:
        """Write all sessions; the file is swapped in whole."""
        payload = {
            "current_session_id": current_session_id,
            "sessions": [s.model_dump(mode="json") for s in sessions] + list(unusable or []),
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)

    def clear(self):
        """Remove the sessions file."""
        if self.path.exists():
            self.path.unlink()
