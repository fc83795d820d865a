"""Per-session undo history persisted as JSON under the undo directory."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from sessionkit.engine.errors import ValidationError
from sessionkit.engine.paths import ensure_within_dir
from sessionkit.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)


class UndoStateStore:
    """Load/save opaque undo history documents keyed by session id."""

    def __init__(self, undo_dir: Path) -> None:
        self._dir = Path(undo_dir)

    def _path(self, session_id: str) -> Path:
        if not session_id:
            raise ValidationError("sessionId is required")
        return ensure_within_dir(self._dir, self._dir / f"{session_id}.json")

    def load(self, session_id: str) -> Any | None:
        """Stored state, or None when nothing was saved yet."""
        path = self._path(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Undo state for %s is corrupt; ignoring", session_id[:8])
            return None

    def save(self, session_id: str, state: Any) -> Path:
        path = self._path(session_id)
        atomic_write_text(path, json.dumps(state))
        logger.debug("Saved undo state for %s", session_id[:8])
        return path
