"""Subagent mirror: copy subagent activity into the parent session log.

The agent CLI writes each delegated subagent's transcript to
``<project>/<session>/subagents/agent-<id>.jsonl`` but does not reliably
forward that activity to the parent log when run with stream-json
output. The mirror tails those files and appends a synthesized
``progress`` entry to the parent log for every user/assistant line,
so readers of the parent log see live subagent progress.

Two triggers drive the same idempotent ``scan()``:

- a fixed-interval poll loop, which alone guarantees every byte is
  eventually mirrored (the subagents directory may not exist yet);
- ``watchfiles.awatch`` change notifications, which only cut latency.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any

import watchfiles

from sessionkit.shared.services.durable_write import append_lines
from sessionkit.shared.services.log_entries import entry_type, leading_text, parse_line, utc_now_iso

from .models import EntryType
from .paths import LOG_SUFFIX, agent_id_from_file, subagents_dir_for
from .task_calls import TaskCallTracker

logger = logging.getLogger(__name__)

SYNTH_TOOL_USE_PREFIX = "agent_msg_synth_"
_MIRRORED_TYPES = frozenset({EntryType.USER.value, EntryType.ASSISTANT.value})


def synthesize_progress_entry(
    message: dict[str, Any],
    *,
    session_id: str,
    agent_id: str,
    parent_tool_use_id: str,
) -> dict[str, Any]:
    """Wrap one subagent log line as an ``agent_progress`` entry."""
    timestamp = message.get("timestamp") or utc_now_iso()
    return {
        "type": EntryType.PROGRESS.value,
        "parentUuid": "",
        "isSidechain": False,
        "cwd": message.get("cwd") or "",
        "sessionId": session_id,
        "uuid": str(uuid.uuid4()),
        "timestamp": timestamp,
        "parentToolUseID": parent_tool_use_id,
        "toolUseID": SYNTH_TOOL_USE_PREFIX + str(uuid.uuid4())[:12],
        "data": {
            "type": "agent_progress",
            "agentId": agent_id,
            "prompt": "",
            "normalizedMessages": [],
            "message": {
                "type": entry_type(message),
                "message": message.get("message"),
                "uuid": message.get("uuid") or str(uuid.uuid4()),
                "timestamp": timestamp,
            },
        },
    }


class SubagentMirror:
    """Tails one session's subagent logs into its parent log."""

    def __init__(
        self,
        parent_log_path: Path,
        session_id: str,
        task_calls: TaskCallTracker,
        poll_interval: float = 0.5,
        use_notifications: bool = True,
    ) -> None:
        self._parent_log_path = Path(parent_log_path)
        self._session_id = session_id
        self._task_calls = task_calls
        self._poll_interval = poll_interval
        self._use_notifications = use_notifications
        self._subagents_dir = subagents_dir_for(self._parent_log_path)

        self._offsets: dict[Path, int] = {}
        # agent id -> delegation tool_use id, fixed once resolved
        self._agent_to_tool_use: dict[str, str] = {}
        self._closed = False
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def subagents_dir(self) -> Path:
        return self._subagents_dir

    @property
    def closed(self) -> bool:
        return self._closed

    def resolved_agents(self) -> dict[str, str]:
        return dict(self._agent_to_tool_use)

    def offset_of(self, path: Path) -> int:
        return self._offsets.get(Path(path), 0)

    # ── Lifecycle ──

    def start(self) -> None:
        """Initial scan, then start the poll loop and the change listener."""
        if self._tasks or self._closed:
            return
        self.scan()
        loop = asyncio.get_running_loop()
        self._tasks.append(loop.create_task(self._poll_loop()))
        if self._use_notifications:
            self._tasks.append(loop.create_task(self._watch_loop()))
        logger.debug("Subagent mirror started for %s", self._session_id[:8])

    def close(self) -> None:
        """Stop both triggers. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        logger.debug("Subagent mirror closed for %s", self._session_id[:8])

    async def aclose(self) -> None:
        self.close()
        tasks, self._tasks = self._tasks, []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _wait_or_stop(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _poll_loop(self) -> None:
        while not self._closed:
            await self._wait_or_stop(self._poll_interval)
            if self._closed:
                return
            self.scan()

    async def _watch_loop(self) -> None:
        while not self._closed:
            if not self._subagents_dir.is_dir():
                # Nothing to watch yet; the poll loop covers this window
                await self._wait_or_stop(self._poll_interval)
                continue
            try:
                async for _changes in watchfiles.awatch(
                    self._subagents_dir, stop_event=self._stop_event
                ):
                    if self._closed:
                        return
                    self.scan()
            except OSError as exc:
                logger.debug("Subagent watch on %s stopped: %s", self._subagents_dir, exc)
                await self._wait_or_stop(self._poll_interval)

    # ── Scanning ──

    def scan(self) -> int:
        """Mirror new bytes from every subagent log. Returns entries appended.

        Idempotent: consumed bytes are never re-read.
        """
        if self._closed:
            return 0
        try:
            files = sorted(
                p for p in self._subagents_dir.iterdir()
                if p.name.startswith("agent-") and p.name.endswith(LOG_SUFFIX)
            )
        except OSError:
            # Directory not created yet
            return 0
        appended = 0
        for path in files:
            if self._closed:
                break
            appended += self._process_file(path)
        return appended

    def _read_new_lines(self, path: Path) -> list[bytes]:
        offset = self._offsets.get(path, 0)
        try:
            size = path.stat().st_size
        except OSError:
            return []
        if size < offset:
            logger.debug("Subagent log %s shrank; rereading from start", path.name)
            offset = 0
        if size == offset:
            return []
        with open(path, "rb") as f:
            f.seek(offset)
            data = f.read(size - offset)
        end = data.rfind(b"\n")
        if end < 0:
            # No complete line yet
            self._offsets[path] = offset
            return []
        # Advance before parsing so a bad line is never retried
        self._offsets[path] = offset + end + 1
        return [line for line in data[:end].split(b"\n") if line.strip()]

    def _resolve_tool_use(self, agent_id: str, message: dict[str, Any]) -> str | None:
        tool_use_id = self._agent_to_tool_use.get(agent_id)
        if tool_use_id is not None:
            return tool_use_id
        tool_use_id = self._task_calls.match(leading_text(message))
        if tool_use_id is not None:
            self._agent_to_tool_use[agent_id] = tool_use_id
            logger.debug("Subagent %s matched to task call %s", agent_id, tool_use_id[:12])
        return tool_use_id

    def _process_file(self, path: Path) -> int:
        agent_id = agent_id_from_file(path)
        try:
            raw_lines = self._read_new_lines(path)
        except OSError as exc:
            logger.debug("Failed to read subagent log %s: %s", path, exc)
            return 0

        appended = 0
        for raw in raw_lines:
            message = parse_line(raw)
            if message is None or entry_type(message) not in _MIRRORED_TYPES:
                continue
            tool_use_id = self._resolve_tool_use(agent_id, message)
            if tool_use_id is None:
                continue
            entry = synthesize_progress_entry(
                message,
                session_id=self._session_id,
                agent_id=agent_id,
                parent_tool_use_id=tool_use_id,
            )
            if self._closed:
                break
            try:
                append_lines(self._parent_log_path, [json.dumps(entry, ensure_ascii=False)])
            except OSError as exc:
                logger.warning("Failed to mirror subagent entry into %s: %s", self._parent_log_path, exc)
                continue
            appended += 1
        return appended
