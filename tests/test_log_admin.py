from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from sessionkit.engine.errors import AccessDeniedError, NotFoundError, ValidationError
from sessionkit.shared.services.log_admin import (
    append_log,
    branch_session,
    find_truncation_line,
    truncate_log,
)
from sessionkit.shared.services.undo_state import UndoStateStore


FIXTURES_DIR = Path(__file__).parent / "fixtures" / "session_logs"
SESSION_ID = "11111111-2222-3333-4444-555555555555"


def _projects(tmp_path: Path) -> Path:
    projects = tmp_path / "projects"
    (projects / "-home-dev-project").mkdir(parents=True)
    shutil.copyfile(
        FIXTURES_DIR / "basic_session.jsonl",
        projects / "-home-dev-project" / f"{SESSION_ID}.jsonl",
    )
    return projects


def _lines(path: Path) -> list[str]:
    return [line for line in path.read_text(encoding="utf-8").split("\n") if line]


def test_truncate_keeps_prefix_and_returns_removed(tmp_path: Path) -> None:
    projects = _projects(tmp_path)
    log = projects / "-home-dev-project" / f"{SESSION_ID}.jsonl"
    original = _lines(log)

    removed = truncate_log(projects, "-home-dev-project", log.name, 4)

    assert removed == original[4:]
    assert _lines(log) == original[:4]
    assert log.read_text(encoding="utf-8").endswith("\n")


def test_truncate_beyond_length_is_noop(tmp_path: Path) -> None:
    projects = _projects(tmp_path)
    log = projects / "-home-dev-project" / f"{SESSION_ID}.jsonl"
    before = log.read_text(encoding="utf-8")

    assert truncate_log(projects, "-home-dev-project", log.name, 100) == []
    assert log.read_text(encoding="utf-8") == before


def test_truncate_then_append_restores_log(tmp_path: Path) -> None:
    projects = _projects(tmp_path)
    log = projects / "-home-dev-project" / f"{SESSION_ID}.jsonl"
    original = _lines(log)

    removed = truncate_log(projects, "-home-dev-project", log.name, 2)
    appended = append_log(projects, "-home-dev-project", log.name, removed)

    assert appended == len(original) - 2
    assert _lines(log) == original


def test_append_nothing_returns_zero(tmp_path: Path) -> None:
    projects = _projects(tmp_path)
    assert append_log(projects, "-home-dev-project", f"{SESSION_ID}.jsonl", []) == 0


def test_log_admin_rejects_paths_outside_projects(tmp_path: Path) -> None:
    projects = _projects(tmp_path)
    (tmp_path / "secret.jsonl").write_text("{}\n", encoding="utf-8")

    with pytest.raises(AccessDeniedError):
        truncate_log(projects, "..", "secret.jsonl", 0)
    with pytest.raises(AccessDeniedError):
        append_log(projects, "..", "secret.jsonl", ["{}"])


def test_truncate_validates_arguments(tmp_path: Path) -> None:
    projects = _projects(tmp_path)
    with pytest.raises(ValidationError):
        truncate_log(projects, "-home-dev-project", f"{SESSION_ID}.jsonl", -1)
    with pytest.raises(ValidationError):
        truncate_log(projects, "", f"{SESSION_ID}.jsonl", 1)
    with pytest.raises(NotFoundError):
        truncate_log(projects, "-home-dev-project", "missing.jsonl", 1)


def test_find_truncation_line_skips_tool_results_and_meta() -> None:
    lines = _lines(FIXTURES_DIR / "basic_session.jsonl")

    # Turn 0 is the first real user message; turn 1 starts at line 5
    assert find_truncation_line(lines, 0) == 5
    assert find_truncation_line(lines, 1) is None


def test_branch_session_forks_with_new_id(tmp_path: Path) -> None:
    projects = _projects(tmp_path)

    result = branch_session(projects, "-home-dev-project", f"{SESSION_ID}.jsonl", turn_index=0)

    assert result.branched_from == SESSION_ID
    assert result.file_name == f"{result.session_id}.jsonl"
    branched = _lines(projects / "-home-dev-project" / result.file_name)
    assert len(branched) == 5
    first = json.loads(branched[0])
    assert first["sessionId"] == result.session_id
    assert first["branchedFrom"] == {"sessionId": SESSION_ID, "turnIndex": 0}
    # Source is untouched
    assert len(_lines(projects / "-home-dev-project" / f"{SESSION_ID}.jsonl")) == 7


def test_branch_without_turn_keeps_everything(tmp_path: Path) -> None:
    projects = _projects(tmp_path)

    result = branch_session(projects, "-home-dev-project", f"{SESSION_ID}.jsonl")

    branched = _lines(projects / "-home-dev-project" / result.file_name)
    assert len(branched) == 7
    assert json.loads(branched[0])["branchedFrom"]["turnIndex"] is None


def test_branch_rejects_negative_turn_index(tmp_path: Path) -> None:
    projects = _projects(tmp_path)
    project = projects / "-home-dev-project"
    (project / "short.jsonl").write_text(
        json.dumps({"type": "user", "sessionId": "s1", "message": {"role": "user", "content": "hi"}})
        + "\n"
        + json.dumps({"type": "assistant", "sessionId": "s1", "message": {"role": "assistant", "content": "hello"}})
        + "\n",
        encoding="utf-8",
    )
    before = sorted(p.name for p in project.iterdir())

    for bad in (-1, True, "0"):
        with pytest.raises(ValidationError):
            branch_session(projects, "-home-dev-project", "short.jsonl", turn_index=bad)

    assert sorted(p.name for p in project.iterdir()) == before


def test_branch_of_empty_session_fails(tmp_path: Path) -> None:
    projects = _projects(tmp_path)
    (projects / "-home-dev-project" / "empty.jsonl").write_text("", encoding="utf-8")

    with pytest.raises(ValidationError):
        branch_session(projects, "-home-dev-project", "empty.jsonl")


def test_undo_state_round_trip(tmp_path: Path) -> None:
    store = UndoStateStore(tmp_path / "undo")

    assert store.load("session-a") is None

    state = {"undoStack": [{"turnIndex": 1}], "redoStack": []}
    store.save("session-a", state)

    assert store.load("session-a") == state
    assert (tmp_path / "undo" / "session-a.json").exists()


def test_undo_state_rejects_escaping_ids(tmp_path: Path) -> None:
    store = UndoStateStore(tmp_path / "undo")
    with pytest.raises(AccessDeniedError):
        store.save("../outside", {})
    with pytest.raises(ValidationError):
        store.load("")
