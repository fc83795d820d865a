"""Administrative rewrites of session logs: truncate, re-append, branch.

These are the only operations that shrink or fork a log. Every target is
containment-checked against the projects directory first.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sessionkit.engine.errors import NotFoundError, ValidationError
from sessionkit.engine.paths import ensure_within_dir, log_file_name
from sessionkit.shared.services.durable_write import append_lines, atomic_write_text
from sessionkit.shared.services.log_entries import is_real_user_entry, is_tool_result_only, parse_line

logger = logging.getLogger(__name__)


def _log_path(projects_dir: Path, dir_name: str, file_name: str) -> Path:
    if not dir_name or not file_name:
        raise ValidationError("dirName and fileName are required")
    return ensure_within_dir(projects_dir, projects_dir / dir_name / file_name)


def _read_lines(path: Path) -> list[str]:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise NotFoundError(str(path)) from None
    return [line for line in content.split("\n") if line]


def truncate_log(projects_dir: Path, dir_name: str, file_name: str, keep_lines: int) -> list[str]:
    """Keep the first *keep_lines* lines; return the removed ones."""
    if not isinstance(keep_lines, int) or isinstance(keep_lines, bool) or keep_lines < 0:
        raise ValidationError("keepLines must be a non-negative integer")
    path = _log_path(projects_dir, dir_name, file_name)
    lines = _read_lines(path)
    if keep_lines >= len(lines):
        return []
    removed = lines[keep_lines:]
    kept = lines[:keep_lines]
    atomic_write_text(path, "\n".join(kept) + "\n", make_parents=False)
    logger.info("Truncated %s: kept %d lines, removed %d", path.name, keep_lines, len(removed))
    return removed


def append_log(projects_dir: Path, dir_name: str, file_name: str, lines: list[str] | None) -> int:
    """Append previously removed lines back onto a log. Returns count."""
    path = _log_path(projects_dir, dir_name, file_name)
    if not lines:
        return 0
    if not all(isinstance(line, str) for line in lines):
        raise ValidationError("lines must be strings")
    appended = append_lines(path, lines)
    logger.info("Appended %d lines to %s", appended, path.name)
    return appended


def find_truncation_line(lines: list[str], target_turn_index: int) -> int | None:
    """Index of the line where the turn after *target_turn_index* starts.

    Tool-result-only user entries do not start a turn. Returns None when
    the log has no turn beyond the target.
    """
    turn_count = 0
    for i, line in enumerate(lines):
        entry = parse_line(line)
        if entry is None or not is_real_user_entry(entry):
            continue
        if is_tool_result_only(entry):
            continue
        if turn_count == target_turn_index + 1:
            return i
        turn_count += 1
    return None


@dataclass
class BranchResult:
    dir_name: str
    file_name: str
    session_id: str
    branched_from: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "dirName": self.dir_name,
            "fileName": self.file_name,
            "sessionId": self.session_id,
            "branchedFrom": self.branched_from,
        }


def branch_session(
    projects_dir: Path,
    dir_name: str,
    file_name: str,
    turn_index: int | None = None,
) -> BranchResult:
    """Fork a session log into a new session, optionally cut after a turn."""
    source = _log_path(projects_dir, dir_name, file_name)
    lines = _read_lines(source)
    if not lines:
        raise ValidationError("Source session is empty")

    if turn_index is not None:
        if not isinstance(turn_index, int) or isinstance(turn_index, bool) or turn_index < 0:
            raise ValidationError("turnIndex must be a non-negative integer")
        cut = find_truncation_line(lines, turn_index)
        if cut is not None:
            lines = lines[:cut]
        if not lines:
            raise ValidationError(f"No entries before turn {turn_index + 1}")

    try:
        first = json.loads(lines[0])
    except json.JSONDecodeError as exc:
        raise ValidationError(f"First line of {file_name} is not valid JSON: {exc}") from None
    if not isinstance(first, dict):
        raise ValidationError(f"First line of {file_name} is not an object")

    original_id = first.get("sessionId") or ""
    new_session_id = str(uuid.uuid4())
    first["sessionId"] = new_session_id
    first["branchedFrom"] = {"sessionId": original_id, "turnIndex": turn_index}
    lines[0] = json.dumps(first, separators=(",", ":"), ensure_ascii=False)

    new_file_name = log_file_name(new_session_id)
    target = ensure_within_dir(projects_dir, projects_dir / dir_name / new_file_name)
    atomic_write_text(target, "\n".join(lines) + "\n", make_parents=False)
    logger.info(
        "Branched %s -> %s at turn %s (%d lines)",
        original_id[:8], new_session_id[:8], turn_index, len(lines),
    )
    return BranchResult(
        dir_name=dir_name,
        file_name=new_file_name,
        session_id=new_session_id,
        branched_from=original_id,
    )
