from __future__ import annotations

import json
import shutil
from pathlib import Path

from sessionkit.engine.config import SessionKitConfig
from sessionkit.shared.services.session_metadata import read_session_meta


FIXTURES_DIR = Path(__file__).parent / "fixtures" / "session_logs"


def _copy_fixture(tmp_path: Path, name: str) -> Path:
    dst = tmp_path / name
    shutil.copyfile(FIXTURES_DIR / name, dst)
    return dst


def _write_large_log(path: Path, lines: int) -> None:
    with open(path, "w", encoding="utf-8") as f:
        for i in range(lines):
            entry = {
                "type": "user",
                "sessionId": "big-session",
                "timestamp": f"2026-03-01T10:00:{i % 60:02d}.000Z",
                "message": {"role": "user", "content": f"message number {i:05d} " + "x" * 60},
            }
            f.write(json.dumps(entry) + "\n")


def test_small_log_gives_exact_fields(tmp_path: Path) -> None:
    path = _copy_fixture(tmp_path, "basic_session.jsonl")

    meta = read_session_meta(path)

    assert meta.session_id == "11111111-2222-3333-4444-555555555555"
    assert meta.version == "2.1.70"
    assert meta.git_branch == "main"
    assert meta.slug == "fix-login-bug"
    assert meta.cwd == "/home/dev/project"
    assert meta.model == "claude-sonnet-4-5"
    assert meta.first_user_message == "Fix the login bug in auth.py please"
    assert meta.last_user_message == "Now add tests for the Login flow"
    # First non-meta user entry, not the meta line
    assert meta.timestamp == "2026-03-01T10:00:05.000Z"
    # Tool-result user entries count; the meta entry does not
    assert meta.turn_count == 3
    assert meta.line_count == 7
    assert meta.is_estimate is False
    assert meta.branched_from is None


def test_branched_from_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "branch.jsonl"
    path.write_text(
        json.dumps({
            "type": "user",
            "sessionId": "new-id",
            "branchedFrom": {"sessionId": "old-id", "turnIndex": 2},
            "message": {"role": "user", "content": "continue from here"},
        }) + "\n",
        encoding="utf-8",
    )

    meta = read_session_meta(path)

    assert meta.branched_from == {"sessionId": "old-id", "turnIndex": 2}
    assert meta.to_dict()["branchedFrom"]["turnIndex"] == 2


def test_malformed_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "broken.jsonl"
    path.write_text(
        "not json\n"
        + json.dumps({"type": "user", "sessionId": "s1", "message": {"content": "hello there"}})
        + "\n[1, 2]\n",
        encoding="utf-8",
    )

    meta = read_session_meta(path)

    assert meta.session_id == "s1"
    assert meta.turn_count == 1
    assert meta.line_count == 3


def test_large_log_estimates_line_count(tmp_path: Path) -> None:
    path = tmp_path / "large.jsonl"
    _write_large_log(path, 1000)
    assert path.stat().st_size > 65536

    meta = read_session_meta(path)

    assert meta.is_estimate is True
    assert meta.session_id == "big-session"
    assert abs(meta.line_count - 1000) <= 20
    # Only the head window is counted
    assert 0 < meta.turn_count < 1000


def test_threshold_comes_from_config(tmp_path: Path) -> None:
    path = _copy_fixture(tmp_path, "basic_session.jsonl")
    config = SessionKitConfig(metadata_full_read_limit=100, metadata_window_bytes=1024)

    meta = read_session_meta(path, config)

    assert meta.is_estimate is True
    assert meta.session_id == "11111111-2222-3333-4444-555555555555"
    assert 4 <= meta.line_count <= 10


def test_window_larger_than_file_counts_exactly(tmp_path: Path) -> None:
    path = tmp_path / "short.jsonl"
    path.write_text(
        "".join(
            json.dumps({"type": "user", "message": {"content": f"m{i}"}}) + "\n"
            for i in range(10)
        ),
        encoding="utf-8",
    )
    config = SessionKitConfig(metadata_full_read_limit=100, metadata_window_bytes=1024)

    meta = read_session_meta(path, config)

    assert meta.is_estimate is False
    assert meta.line_count == 10
    assert meta.turn_count == 10
