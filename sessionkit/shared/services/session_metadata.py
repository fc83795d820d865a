"""Session metadata extraction from JSONL logs.

Small logs are read whole and give exact counts. Larger logs are sampled
from a fixed window at the head of the file: identity fields are
reliable there, while ``turn_count`` only covers the window and
``line_count`` is extrapolated from the window's line density.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sessionkit.engine.config import SessionKitConfig
from sessionkit.shared.services.log_entries import (
    entry_type,
    extract_user_text,
    is_real_user_entry,
    parse_line,
)

logger = logging.getLogger(__name__)

FULL_READ_LIMIT = 65536
WINDOW_BYTES = 32768


@dataclass
class SessionMeta:
    session_id: str = ""
    version: str = ""
    git_branch: str = ""
    model: str = ""
    slug: str = ""
    cwd: str = ""
    first_user_message: str = ""
    last_user_message: str = ""
    timestamp: str = ""
    turn_count: int = 0
    line_count: int = 0
    branched_from: dict[str, Any] | None = None
    # True when counts come from the head window rather than the whole file
    is_estimate: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "version": self.version,
            "gitBranch": self.git_branch,
            "model": self.model,
            "slug": self.slug,
            "cwd": self.cwd,
            "firstUserMessage": self.first_user_message,
            "lastUserMessage": self.last_user_message,
            "timestamp": self.timestamp,
            "turnCount": self.turn_count,
            "lineCount": self.line_count,
        }
        if self.branched_from is not None:
            data["branchedFrom"] = self.branched_from
        return data


def _read_lines(path: Path, full_read_limit: int, window_bytes: int) -> tuple[list[str], int, int]:
    """Return (non-empty lines, file size, bytes the lines were read from).

    The third value is smaller than the file size only when the head
    window was sampled.
    """
    size = path.stat().st_size
    if size <= full_read_limit:
        text = path.read_text(encoding="utf-8", errors="replace")
        return [line for line in text.split("\n") if line], size, size

    with open(path, "rb") as f:
        head = f.read(window_bytes)
    if len(head) < size:
        # Drop the partial line cut by the window edge
        last_newline = head.rfind(b"\n")
        if last_newline > 0:
            head = head[:last_newline + 1]
    text = head.decode("utf-8", errors="replace")
    return [line for line in text.split("\n") if line], size, len(head)


def _first_str(current: str, value: Any) -> str:
    if current or not isinstance(value, str):
        return current
    return value


def read_session_meta(
    path: str | Path,
    config: SessionKitConfig | None = None,
) -> SessionMeta:
    """Extract summary fields from a session log.

    Raises OSError if the file cannot be read.
    """
    path = Path(path)
    full_read_limit = config.metadata_full_read_limit if config else FULL_READ_LIMIT
    window_bytes = config.metadata_window_bytes if config else WINDOW_BYTES

    lines, size, read_bytes = _read_lines(path, full_read_limit, window_bytes)
    sampled = read_bytes < size
    meta = SessionMeta(is_estimate=sampled)

    for line in lines:
        entry = parse_line(line)
        if entry is None:
            continue
        meta.session_id = _first_str(meta.session_id, entry.get("sessionId"))
        meta.version = _first_str(meta.version, entry.get("version"))
        meta.git_branch = _first_str(meta.git_branch, entry.get("gitBranch"))
        meta.slug = _first_str(meta.slug, entry.get("slug"))
        meta.cwd = _first_str(meta.cwd, entry.get("cwd"))
        if meta.branched_from is None and isinstance(entry.get("branchedFrom"), dict):
            meta.branched_from = entry["branchedFrom"]

        kind = entry_type(entry)
        if kind == "assistant" and not meta.model:
            message = entry.get("message")
            if isinstance(message, dict):
                meta.model = _first_str(meta.model, message.get("model"))

        if not is_real_user_entry(entry):
            continue
        if not meta.timestamp:
            timestamp = entry.get("timestamp")
            meta.timestamp = timestamp if isinstance(timestamp, str) else ""
        text = extract_user_text(entry)
        if text:
            if not meta.first_user_message:
                meta.first_user_message = text
            meta.last_user_message = text
        meta.turn_count += 1

    if sampled and lines:
        meta.line_count = round(size * len(lines) / read_bytes)
    else:
        meta.line_count = len(lines)

    logger.debug(
        "Meta %s: %d turns, %d lines%s",
        path.name, meta.turn_count, meta.line_count, " (estimated)" if sampled else "",
    )
    return meta
