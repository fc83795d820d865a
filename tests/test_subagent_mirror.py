from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from sessionkit.engine.models import EntryType
from sessionkit.engine.subagent_mirror import (
    SYNTH_TOOL_USE_PREFIX,
    SubagentMirror,
    synthesize_progress_entry,
)
from sessionkit.engine.task_calls import TaskCallTracker


SESSION_ID = "99999999-8888-7777-6666-555555555555"


def _parent_log(tmp_path: Path) -> Path:
    project = tmp_path / "-home-dev-project"
    project.mkdir()
    log = project / f"{SESSION_ID}.jsonl"
    log.write_text(json.dumps({"type": "user", "sessionId": SESSION_ID}) + "\n", encoding="utf-8")
    return log


def _subagents_dir(log: Path) -> Path:
    return log.with_suffix("") / "subagents"


def _line(kind: str, text: str, **extra) -> str:
    entry = {"type": kind, "message": {"role": kind, "content": text}, **extra}
    return json.dumps(entry) + "\n"


def _progress_entries(log: Path) -> list[dict]:
    entries = [json.loads(l) for l in log.read_text(encoding="utf-8").splitlines() if l]
    return [e for e in entries if e.get("type") == "progress"]


def _tracker(*calls: tuple[str, str]) -> TaskCallTracker:
    tracker = TaskCallTracker()
    for tool_use_id, prompt in calls:
        tracker.record(tool_use_id, prompt)
    return tracker


def test_synthesized_entry_shape() -> None:
    message = {
        "type": "assistant",
        "uuid": "u-1",
        "timestamp": "2026-01-01T00:00:00.000Z",
        "cwd": "/home/dev",
        "message": {"role": "assistant", "content": "hi"},
    }

    entry = synthesize_progress_entry(
        message, session_id=SESSION_ID, agent_id="a1", parent_tool_use_id="toolu_1",
    )

    assert entry["type"] == EntryType.PROGRESS
    assert json.loads(json.dumps(entry))["type"] == "progress"
    assert entry["sessionId"] == SESSION_ID
    assert entry["parentToolUseID"] == "toolu_1"
    assert entry["toolUseID"].startswith(SYNTH_TOOL_USE_PREFIX)
    assert entry["timestamp"] == "2026-01-01T00:00:00.000Z"
    assert entry["cwd"] == "/home/dev"
    data = entry["data"]
    assert data["type"] == "agent_progress"
    assert data["agentId"] == "a1"
    assert data["message"] == {
        "type": "assistant",
        "message": {"role": "assistant", "content": "hi"},
        "uuid": "u-1",
        "timestamp": "2026-01-01T00:00:00.000Z",
    }


def test_synthesized_entry_fills_missing_timestamp() -> None:
    entry = synthesize_progress_entry(
        {"type": "user", "message": {"content": "x"}},
        session_id=SESSION_ID, agent_id="a1", parent_tool_use_id="toolu_1",
    )
    assert entry["timestamp"].endswith("Z")
    assert entry["data"]["message"]["uuid"]


def test_scan_mirrors_new_lines_once(tmp_path: Path) -> None:
    log = _parent_log(tmp_path)
    subagents = _subagents_dir(log)
    subagents.mkdir(parents=True)
    agent_log = subagents / "agent-a1.jsonl"
    agent_log.write_text(
        _line("user", "Find the failing test")
        + json.dumps({"type": "progress", "data": {}}) + "\n"
        + _line("assistant", "Looking at tests/"),
        encoding="utf-8",
    )
    mirror = SubagentMirror(log, SESSION_ID, _tracker(("toolu_1", "Find the failing test")))

    assert mirror.scan() == 2
    assert mirror.scan() == 0

    entries = _progress_entries(log)
    assert [e["data"]["message"]["type"] for e in entries] == ["user", "assistant"]
    assert {e["parentToolUseID"] for e in entries} == {"toolu_1"}
    assert mirror.resolved_agents() == {"a1": "toolu_1"}
    assert mirror.offset_of(agent_log) == agent_log.stat().st_size


def test_agent_is_matched_only_once(tmp_path: Path) -> None:
    log = _parent_log(tmp_path)
    subagents = _subagents_dir(log)
    subagents.mkdir(parents=True)
    # Two delegations with the same prompt: one agent must claim only one
    tracker = _tracker(("toolu_1", "Review the diff"), ("toolu_2", "Review the diff"))
    (subagents / "agent-a1.jsonl").write_text(
        _line("user", "Review the diff") + _line("assistant", "Review the diff first"),
        encoding="utf-8",
    )
    mirror = SubagentMirror(log, SESSION_ID, tracker)

    assert mirror.scan() == 2
    assert [call.tool_use_id for call in tracker.unresolved()] == ["toolu_2"]


def test_unmatched_agent_lines_are_dropped(tmp_path: Path) -> None:
    log = _parent_log(tmp_path)
    subagents = _subagents_dir(log)
    subagents.mkdir(parents=True)
    (subagents / "agent-zz.jsonl").write_text(_line("user", "Unrelated work"), encoding="utf-8")
    (subagents / "notes.txt").write_text("ignored", encoding="utf-8")
    mirror = SubagentMirror(log, SESSION_ID, _tracker(("toolu_1", "Something else")))

    assert mirror.scan() == 0
    assert _progress_entries(log) == []


def test_partial_line_waits_for_newline(tmp_path: Path) -> None:
    log = _parent_log(tmp_path)
    subagents = _subagents_dir(log)
    subagents.mkdir(parents=True)
    agent_log = subagents / "agent-a1.jsonl"
    full = _line("user", "Write docs")
    agent_log.write_text(full[:10], encoding="utf-8")
    mirror = SubagentMirror(log, SESSION_ID, _tracker(("toolu_1", "Write docs")))

    assert mirror.scan() == 0
    assert mirror.offset_of(agent_log) == 0

    with open(agent_log, "a", encoding="utf-8") as f:
        f.write(full[10:])

    assert mirror.scan() == 1


def test_missing_subagents_dir_is_not_an_error(tmp_path: Path) -> None:
    log = _parent_log(tmp_path)
    mirror = SubagentMirror(log, SESSION_ID, TaskCallTracker())
    assert mirror.subagents_dir == _subagents_dir(log)
    assert mirror.scan() == 0


def test_closed_mirror_appends_nothing(tmp_path: Path) -> None:
    log = _parent_log(tmp_path)
    subagents = _subagents_dir(log)
    subagents.mkdir(parents=True)
    (subagents / "agent-a1.jsonl").write_text(_line("user", "Write docs"), encoding="utf-8")
    mirror = SubagentMirror(log, SESSION_ID, _tracker(("toolu_1", "Write docs")))

    mirror.close()
    mirror.close()

    assert mirror.closed
    assert mirror.scan() == 0
    assert _progress_entries(log) == []


@pytest.mark.asyncio
async def test_poll_loop_picks_up_late_subagent_dir(tmp_path: Path) -> None:
    log = _parent_log(tmp_path)
    mirror = SubagentMirror(
        log, SESSION_ID, _tracker(("toolu_1", "Audit deps")),
        poll_interval=0.05, use_notifications=False,
    )
    mirror.start()
    try:
        subagents = _subagents_dir(log)
        subagents.mkdir(parents=True)
        (subagents / "agent-b2.jsonl").write_text(_line("user", "Audit deps"), encoding="utf-8")

        for _ in range(100):
            if _progress_entries(log):
                break
            await asyncio.sleep(0.02)
    finally:
        await mirror.aclose()

    entries = _progress_entries(log)
    assert len(entries) == 1
    assert entries[0]["data"]["agentId"] == "b2"


@pytest.mark.asyncio
async def test_aclose_stops_background_tasks(tmp_path: Path) -> None:
    log = _parent_log(tmp_path)
    _subagents_dir(log).mkdir(parents=True)
    mirror = SubagentMirror(log, SESSION_ID, TaskCallTracker(), poll_interval=0.05)
    mirror.start()
    await asyncio.sleep(0.1)

    await mirror.aclose()

    assert mirror.closed
    # Restarting a closed mirror is a no-op
    mirror.start()
    assert mirror.scan() == 0
