"""System-wide listing of running ``claude`` processes.

Parses ``ps aux`` output. Only used for display; killing is restricted
to pids the supervisor spawned itself.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_RESUME_RE = re.compile(r"--resume\s+([0-9a-f-]{36})")
_SESSION_ID_RE = re.compile(r"--session-id\s+([0-9a-f-]{36})")
# Wrappers whose command lines mention claude without being the CLI
_EXCLUDED_MARKERS = ("grep", "node ", "esbuild", "/bin/zsh")
_PS_AUX_COLUMNS = 11


@dataclass(frozen=True)
class ClaudeProcess:
    pid: int
    mem_mb: int
    cpu: float
    session_id: str | None
    tty: str
    args: str
    start_time: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "memMB": self.mem_mb,
            "cpu": self.cpu,
            "sessionId": self.session_id,
            "tty": self.tty,
            "args": self.args,
            "startTime": self.start_time,
        }


def session_id_from_args(args: str) -> str | None:
    """Session id passed via --resume, else via --session-id."""
    resume = _RESUME_RE.search(args)
    if resume:
        return resume.group(1)
    match = _SESSION_ID_RE.search(args)
    return match.group(1) if match else None


def _to_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def parse_ps_aux(output: str) -> list[ClaudeProcess]:
    """Claude processes from ``ps aux`` text, largest memory first."""
    processes: list[ClaudeProcess] = []
    for line in output.splitlines():
        if "claude" not in line or any(marker in line for marker in _EXCLUDED_MARKERS):
            continue
        cols = line.split()
        if len(cols) < _PS_AUX_COLUMNS:
            continue
        try:
            pid = int(cols[1])
        except ValueError:
            continue
        args = " ".join(cols[10:])
        processes.append(ClaudeProcess(
            pid=pid,
            mem_mb=round(_to_int(cols[5]) / 1024),
            cpu=_to_float(cols[2]),
            session_id=session_id_from_args(args),
            tty=cols[6] or "??",
            args=args,
            start_time=cols[8],
        ))
    processes.sort(key=lambda p: p.mem_mb, reverse=True)
    return processes


def list_claude_processes() -> list[ClaudeProcess]:
    """Return running claude processes.

    Raises OSError / CalledProcessError when ``ps`` is unavailable.
    """
    out = subprocess.check_output(
        ["ps", "aux"],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    processes = parse_ps_aux(out)
    logger.debug("Found %d claude processes", len(processes))
    return processes
