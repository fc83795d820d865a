"""Path containment and session log path resolution.

Every writer in the core goes through ``ensure_within_dir`` (or the
mutator's stricter pre-flight) before touching disk.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path

from .errors import AccessDeniedError

logger = logging.getLogger(__name__)

LOG_SUFFIX = ".jsonl"
SUBAGENTS_DIRNAME = "subagents"
# Not a project: holds the agent's memory files.
_SKIP_PROJECT_DIRS = frozenset({"memory"})
_HEAD_BYTES = 4096


def is_within_dir(parent: str | Path, child: str | Path) -> bool:
    """True when *child* resolves to *parent* or somewhere beneath it."""
    parent_resolved = Path(parent).resolve()
    child_resolved = Path(child).resolve()
    return child_resolved == parent_resolved or parent_resolved in child_resolved.parents


def ensure_within_dir(parent: str | Path, child: str | Path) -> Path:
    """Return the resolved child path or raise AccessDeniedError."""
    if not is_within_dir(parent, child):
        raise AccessDeniedError(str(child))
    return Path(child).resolve()


def project_dir_for(projects_dir: Path, dir_name: str) -> Path:
    """Resolve a project directory name under the projects root."""
    return ensure_within_dir(projects_dir, projects_dir / dir_name)


def log_file_name(session_id: str) -> str:
    return f"{session_id}{LOG_SUFFIX}"


def find_log_path(projects_dir: Path, session_id: str) -> Path | None:
    """Find a session's log by scanning every project directory."""
    target = log_file_name(session_id)
    try:
        entries = sorted(projects_dir.iterdir())
    except OSError:
        logger.debug("Projects dir %s not readable", projects_dir)
        return None
    for entry in entries:
        if not entry.is_dir() or entry.name in _SKIP_PROJECT_DIRS:
            continue
        candidate = entry / target
        if candidate.is_file():
            return candidate
    return None


def subagents_dir_for(log_path: Path) -> Path:
    """``<project>/<id>.jsonl`` -> ``<project>/<id>/subagents``."""
    return log_path.with_suffix("") / SUBAGENTS_DIRNAME


def agent_id_from_file(path: Path) -> str:
    """``agent-<id>.jsonl`` -> ``<id>``."""
    name = path.name
    if name.startswith("agent-"):
        name = name[len("agent-"):]
    if name.endswith(LOG_SUFFIX):
        name = name[: -len(LOG_SUFFIX)]
    return name


def dir_name_to_path(dir_name: str) -> str:
    """Best-effort reverse of the project dir encoding (``/`` -> ``-``)."""
    stripped = dir_name[1:] if dir_name.startswith("-") else dir_name
    return "/" + stripped.replace("-", "/")


def resolve_project_path(project_dir: Path, dir_name: str) -> str:
    """Working directory for a project.

    Read from the ``cwd`` of the first entry of any existing log;
    otherwise decode it from the directory name.
    """
    try:
        logs = sorted(p for p in project_dir.iterdir() if p.suffix == LOG_SUFFIX)
    except OSError:
        logs = []
    for log in logs:
        try:
            with open(log, "rb") as f:
                head = f.read(_HEAD_BYTES)
            first_line = head.decode("utf-8", errors="replace").split("\n", 1)[0]
            if not first_line:
                continue
            cwd = json.loads(first_line).get("cwd")
        except (OSError, ValueError, AttributeError):
            continue
        if isinstance(cwd, str) and cwd:
            return cwd
    return dir_name_to_path(dir_name)
