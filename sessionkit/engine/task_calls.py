"""Task-call tracker: delegation tool-use ids -> prompt text.

The supervisor records a delegation whenever an ``assistant`` line
carries a ``Task`` tool_use block; the subagent mirror claims entries
when it matches a subagent log to one of them. Matching is a prompt
text heuristic: the runtime does not write the delegation id into the
subagent log.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DELEGATION_TOOL_NAME = "Task"
PROMPT_MATCH_PREFIX_CHARS = 100


@dataclass
class TaskInvocation:
    """One delegation request seen in the parent session's output."""
    tool_use_id: str
    prompt: str
    resolved: bool = False


def prompt_matches(task_prompt: str, leading_text: str) -> bool:
    """Exact match, or the subagent text starts with the prompt's first 100 chars."""
    return (
        task_prompt == leading_text
        or leading_text.startswith(task_prompt[:PROMPT_MATCH_PREFIX_CHARS])
    )


class TaskCallTracker:
    """Ordered map of delegation id -> invocation for one session."""

    def __init__(self) -> None:
        self._calls: dict[str, TaskInvocation] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, tool_use_id: object) -> bool:
        return tool_use_id in self._calls

    def __iter__(self) -> Iterator[TaskInvocation]:
        return iter(list(self._calls.values()))

    def get(self, tool_use_id: str) -> TaskInvocation | None:
        return self._calls.get(tool_use_id)

    def record(self, tool_use_id: str, prompt: str) -> None:
        if not tool_use_id:
            return
        existing = self._calls.get(tool_use_id)
        if existing is not None:
            existing.prompt = prompt
            return
        self._calls[tool_use_id] = TaskInvocation(tool_use_id=tool_use_id, prompt=prompt)
        logger.debug("Task call recorded: %s (%d chars)", tool_use_id[:12], len(prompt))

    def record_from_assistant(self, entry: dict[str, Any]) -> list[str]:
        """Record every delegation block in an assistant entry.

        Returns the tool_use ids that were recorded.
        """
        message = entry.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return []
        recorded: list[str] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") != "tool_use" or block.get("name") != DELEGATION_TOOL_NAME:
                continue
            tool_use_id = block.get("id")
            if not isinstance(tool_use_id, str) or not tool_use_id:
                continue
            tool_input = block.get("input")
            prompt = tool_input.get("prompt") if isinstance(tool_input, dict) else None
            self.record(tool_use_id, prompt if isinstance(prompt, str) else "")
            recorded.append(tool_use_id)
        return recorded

    def unresolved(self) -> list[TaskInvocation]:
        return [call for call in self._calls.values() if not call.resolved]

    def match(self, leading_text: str) -> str | None:
        """Claim the first unresolved delegation whose prompt matches.

        Returns its tool_use id, or None when nothing matches.
        """
        if not leading_text:
            return None
        for call in self.unresolved():
            if prompt_matches(call.prompt, leading_text):
                call.resolved = True
                return call.tool_use_id
        return None

    def abandon_all(self) -> int:
        """Drop every pending invocation (session ended). Returns how many."""
        dropped = len(self.unresolved())
        self._calls.clear()
        return dropped
