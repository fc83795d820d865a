"""Live activity status derived from the tail of a session log.

Status is always computed from log contents, never stored. The backward
reader stops at the first entry that decides the status, so a typical
call reads a single 4 KiB chunk.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from sessionkit.shared.services.log_entries import entry_type, is_real_user_entry, parse_line

logger = logging.getLogger(__name__)

CHUNK_BYTES = 4096
MAX_CHUNKS = 64

_RELEVANT_TYPES = frozenset({"assistant", "user", "queue-operation"})


class SessionStatus(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    PROCESSING = "processing"
    COMPLETED = "completed"


@dataclass
class SessionStatusInfo:
    status: SessionStatus = SessionStatus.IDLE
    tool_name: str | None = None
    pending_queue: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.tool_name is not None:
            data["toolName"] = self.tool_name
        if self.pending_queue is not None:
            data["pendingQueue"] = self.pending_queue
        return data


def _stop_reason(entry: dict[str, Any]) -> Any:
    message = entry.get("message")
    return message.get("stop_reason") if isinstance(message, dict) else None


def _last_tool_name(entry: dict[str, Any]) -> str | None:
    message = entry.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return None
    for block in reversed(content):
        if isinstance(block, dict) and block.get("type") == "tool_use":
            name = block.get("name")
            return name if isinstance(name, str) else None
    return None


def derive_session_status(entries: list[dict[str, Any]]) -> SessionStatusInfo:
    """Classify activity from entries in file order (oldest first)."""
    pending = 0
    for i in range(len(entries) - 1, -1, -1):
        entry = entries[i]
        kind = entry_type(entry)

        if kind == "queue-operation":
            operation = entry.get("operation")
            if operation == "enqueue":
                pending += 1
            elif operation in ("dequeue", "remove"):
                pending -= 1
            continue

        if kind == "assistant":
            stop_reason = _stop_reason(entry)
            if stop_reason == "end_turn":
                had_user = any(is_real_user_entry(e) for e in entries[:i])
                return SessionStatusInfo(
                    status=SessionStatus.COMPLETED if had_user else SessionStatus.IDLE,
                    pending_queue=max(0, pending),
                )
            if stop_reason == "tool_use":
                return SessionStatusInfo(
                    status=SessionStatus.TOOL_USE,
                    tool_name=_last_tool_name(entry),
                    pending_queue=max(0, pending),
                )
            # No stop reason yet: still streaming
            return SessionStatusInfo(status=SessionStatus.THINKING, pending_queue=max(0, pending))

        if kind == "user":
            if entry.get("isMeta"):
                continue
            return SessionStatusInfo(status=SessionStatus.PROCESSING, pending_queue=max(0, pending))

    return SessionStatusInfo()


def status_label(info: SessionStatusInfo) -> str | None:
    """Human-readable label; None for idle."""
    if info.status == SessionStatus.THINKING:
        return "Thinking..."
    if info.status == SessionStatus.TOOL_USE:
        return f"Using {info.tool_name}" if info.tool_name else "Using tool..."
    if info.status == SessionStatus.PROCESSING:
        return "Processing..."
    if info.status == SessionStatus.COMPLETED:
        return "Idle"
    return None


def _decides_status(entry: dict[str, Any]) -> bool:
    kind = entry_type(entry)
    if kind == "assistant":
        # end_turn needs earlier user context to tell completed from idle
        return _stop_reason(entry) != "end_turn"
    return is_real_user_entry(entry)


def read_session_status(
    path: str | Path,
    chunk_bytes: int = CHUNK_BYTES,
    max_chunks: int = MAX_CHUNKS,
) -> SessionStatusInfo:
    """Scan a log backwards in fixed chunks until the status is decided."""
    path = Path(path)
    try:
        size = path.stat().st_size
    except OSError:
        return SessionStatusInfo()
    if size == 0:
        return SessionStatusInfo()

    collected: list[dict[str, Any]] = []
    try:
        with open(path, "rb") as f:
            cursor = size
            leftover = b""
            for _ in range(max_chunks):
                if cursor <= 0:
                    break
                read_size = min(chunk_bytes, cursor)
                cursor -= read_size
                f.seek(cursor, os.SEEK_SET)
                data = f.read(read_size) + leftover
                lines = data.split(b"\n")
                # The first piece may continue in the previous chunk
                leftover = lines[0] if cursor > 0 else b""
                start = 1 if cursor > 0 else 0
                for raw in reversed(lines[start:]):
                    entry = parse_line(raw)
                    if entry is None or entry_type(entry) not in _RELEVANT_TYPES:
                        continue
                    collected.insert(0, entry)
                    if _decides_status(entry):
                        return derive_session_status(collected)
    except OSError as exc:
        logger.debug("Status read failed for %s: %s", path, exc)
        return SessionStatusInfo()

    return derive_session_status(collected) if collected else SessionStatusInfo()
