"""Claude CLI invocation helpers.

Builds argv lists and stream-json payloads for the ``claude``
executable and translates spawn failures into readable hints.
All commands are passed as arrays to create_subprocess_exec; no shell.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Iterable

from .models import ImageAttachment, PermissionMode, PermissionSettings

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})

# Interactive tools that cannot be approved through stream-json stdin;
# left unapproved they make -p mode retry forever.
AUTO_ALLOWED_TOOLS = ("ExitPlanMode", "AskUserQuestion")

INSTALL_HINT = (
    "Claude CLI is not installed or not found in PATH. "
    "Install it with: npm install -g @anthropic-ai/claude-code"
)

_STREAM_FLAGS = (
    "-p",
    "--input-format", "stream-json",
    "--output-format", "stream-json",
    "--verbose",
)


def build_perm_args(permissions: PermissionSettings | None) -> list[str]:
    """Translate permission settings into CLI flags.

    Anything other than an explicit non-bypass mode runs with
    --dangerously-skip-permissions.
    """
    if permissions is None or not permissions.mode or permissions.mode == PermissionMode.BYPASS.value:
        return ["--dangerously-skip-permissions"]
    args = ["--permission-mode", permissions.mode]
    for tool in permissions.allowed_tools:
        args.extend(["--allowedTools", tool])
    for tool in permissions.disallowed_tools:
        args.extend(["--disallowedTools", tool])
    for tool in AUTO_ALLOWED_TOOLS:
        args.extend(["--allowedTools", tool])
    return args


def build_model_args(model: str | None) -> list[str]:
    return ["--model", model] if model else []


def build_stream_message(
    message: str | None,
    images: Iterable[ImageAttachment] | None = None,
) -> str:
    """Serialize a user turn as one stream-json line (no trailing newline)."""
    blocks: list[dict] = []
    for image in images or ():
        media_type = image.media_type if image.media_type in ALLOWED_IMAGE_TYPES else "image/png"
        blocks.append({
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": image.data},
        })
    if message:
        blocks.append({"type": "text", "text": message})
    return json.dumps({
        "type": "user",
        "message": {"role": "user", "content": blocks},
    })


def friendly_spawn_error(exc: BaseException) -> str:
    """Turn a spawn failure into a message a user can act on."""
    if isinstance(exc, FileNotFoundError):
        return INSTALL_HINT
    return str(exc) or exc.__class__.__name__


def clean_env() -> dict[str, str]:
    """Child environment without the nested-session marker."""
    env = os.environ.copy()
    env.pop("CLAUDECODE", None)
    return env


class ClaudeCli:
    """Argv factory for the claude executable."""

    def __init__(self, command: str = "claude") -> None:
        self._command = self.resolve_command(command, "claude")

    @property
    def command(self) -> str:
        return self._command

    @staticmethod
    def resolve_command(command: str, fallback: str | None = None) -> str:
        """Prefer the configured command, then the fallback on PATH.

        A configured command that is not on PATH is kept as-is so the
        spawn error names what the user actually configured.
        """
        if command and shutil.which(command):
            return command
        if fallback and fallback != command and shutil.which(fallback):
            logger.debug("Command %s not found; falling back to %s", command, fallback)
            return fallback
        return command or fallback or "claude"

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    def resume_argv(
        self,
        session_id: str,
        perm_args: list[str],
        model_args: list[str],
    ) -> list[str]:
        """Persistent process continuing an existing session."""
        return [
            self._command, *_STREAM_FLAGS,
            "--resume", session_id,
            *perm_args, *model_args,
        ]

    def create_argv(
        self,
        session_id: str,
        perm_args: list[str],
        model_args: list[str],
        worktree_name: str | None = None,
    ) -> list[str]:
        """Persistent process creating a session with a chosen id."""
        worktree_args = ["--worktree", worktree_name] if worktree_name else []
        return [
            self._command, *_STREAM_FLAGS,
            "--session-id", session_id,
            *perm_args, *model_args, *worktree_args,
        ]

    def oneshot_argv(self, message: str, session_id: str, perm_args: list[str]) -> list[str]:
        """Single-turn process; the message is passed as an argument."""
        return [self._command, "-p", message, "--session-id", session_id, *perm_args]
