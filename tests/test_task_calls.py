from __future__ import annotations

from sessionkit.engine.task_calls import TaskCallTracker, prompt_matches


def _assistant_with_tasks(*blocks: dict) -> dict:
    return {"type": "assistant", "message": {"role": "assistant", "content": list(blocks)}}


def _task_block(tool_use_id: str, prompt: str) -> dict:
    return {"type": "tool_use", "id": tool_use_id, "name": "Task", "input": {"prompt": prompt}}


def test_prompt_matches_exact_and_prefix() -> None:
    long_prompt = "Investigate " + "the flaky integration test " * 10
    assert prompt_matches("short prompt", "short prompt")
    # Only the first 100 characters of the prompt need to lead the text
    assert prompt_matches(long_prompt, long_prompt[:100] + " with extra framing")
    assert not prompt_matches("short prompt", "something else")


def test_empty_prompt_matches_anything() -> None:
    assert prompt_matches("", "any subagent text")


def test_record_from_assistant_only_tracks_delegations() -> None:
    tracker = TaskCallTracker()
    entry = _assistant_with_tasks(
        {"type": "text", "text": "Delegating."},
        _task_block("toolu_1", "Find the bug"),
        {"type": "tool_use", "id": "toolu_2", "name": "Read", "input": {"file_path": "/a"}},
        {"type": "tool_use", "id": "toolu_3", "name": "Task", "input": {}},
    )

    recorded = tracker.record_from_assistant(entry)

    assert recorded == ["toolu_1", "toolu_3"]
    assert len(tracker) == 2
    assert "toolu_2" not in tracker
    assert tracker.get("toolu_3").prompt == ""


def test_match_claims_first_unresolved_once() -> None:
    tracker = TaskCallTracker()
    tracker.record("toolu_a", "Write the docs")
    tracker.record("toolu_b", "Write the docs")

    assert tracker.match("Write the docs") == "toolu_a"
    assert tracker.match("Write the docs") == "toolu_b"
    assert tracker.match("Write the docs") is None
    assert tracker.unresolved() == []


def test_match_ignores_empty_text() -> None:
    tracker = TaskCallTracker()
    tracker.record("toolu_a", "")
    assert tracker.match("") is None
    assert tracker.get("toolu_a").resolved is False


def test_abandon_all_clears_tracker() -> None:
    tracker = TaskCallTracker()
    tracker.record("toolu_a", "one")
    tracker.record("toolu_b", "two")
    tracker.match("one")

    assert tracker.abandon_all() == 1
    assert len(tracker) == 0


def test_non_list_content_is_ignored() -> None:
    tracker = TaskCallTracker()
    assert tracker.record_from_assistant({"type": "assistant", "message": {"content": "text"}}) == []
    assert tracker.record_from_assistant({"type": "assistant"}) == []
