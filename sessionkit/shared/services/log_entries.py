"""Helpers for reading individual session log entries.

Log files are JSONL: one JSON object per line, ``type`` discriminant,
``message.content`` either a string or a list of content blocks.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any

# Injected context such as <system-reminder>...</system-reminder> or
# <command-name>...</command-name> wrapped around real user text.
_TAGGED_BLOCK_RE = re.compile(r"<[^>]+>[\s\S]*?</[^>]+>")

USER_TEXT_MIN_CHARS = 5
USER_TEXT_MAX_CHARS = 120


def utc_now_iso() -> str:
    """Current time in the log's timestamp format (ms precision, Z suffix)."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def parse_line(line: str | bytes) -> dict[str, Any] | None:
    """Decode one JSONL line; None for blank, malformed or non-object lines."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def entry_type(entry: dict[str, Any]) -> str:
    value = entry.get("type")
    return value if isinstance(value, str) else ""


def message_content(entry: dict[str, Any]) -> Any:
    message = entry.get("message")
    return message.get("content") if isinstance(message, dict) else None


def leading_text(entry: dict[str, Any]) -> str:
    """String content, or the first text block of list content."""
    content = message_content(entry)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                return text if isinstance(text, str) else ""
    return ""


def is_real_user_entry(entry: dict[str, Any]) -> bool:
    """A user entry that counts toward turn numbering."""
    return entry_type(entry) == "user" and not entry.get("isMeta")


def is_tool_result_only(entry: dict[str, Any]) -> bool:
    content = message_content(entry)
    return (
        isinstance(content, list)
        and all(isinstance(b, dict) and b.get("type") == "tool_result" for b in content)
    )


def strip_tagged_blocks(text: str) -> str:
    return _TAGGED_BLOCK_RE.sub("", text).strip()


def extract_user_text(entry: dict[str, Any]) -> str:
    """Visible user text for summaries, truncated to 120 chars.

    Returns "" when nothing longer than 5 chars remains after
    stripping injected tagged blocks.
    """
    content = message_content(entry)
    candidates: list[str] = []
    if isinstance(content, str):
        candidates.append(content)
    elif isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    candidates.append(text)
    for raw in candidates:
        cleaned = strip_tagged_blocks(raw)
        if len(cleaned) > USER_TEXT_MIN_CHARS:
            return cleaned[:USER_TEXT_MAX_CHARS]
    return ""
