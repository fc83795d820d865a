"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via SESSIONKIT_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


# Directories that undo/apply must never write to, even under the root.
DEFAULT_FORBIDDEN_PREFIXES: tuple[str, ...] = (
    "/etc/", "/usr/", "/bin/", "/sbin/", "/boot/",
    "/proc/", "/sys/", "/dev/", "/var/",
)


@dataclass
class SessionKitConfig:
    """Session core configuration."""

    # Root of the agent's data tree (contains projects/, teams/, tasks/).
    # Empty means ~/.claude.
    claude_dir: str = ""
    claude_command: str = "claude"
    # Where undo history JSON lives. Empty means ~/.sessionkit/undo-history.
    undo_dir: str = ""
    # File mutations are confined to this directory. Empty means $HOME.
    permitted_root: str = ""
    forbidden_prefixes: tuple[str, ...] = DEFAULT_FORBIDDEN_PREFIXES
    # Fallback cwd for resumed sessions. Empty means $HOME.
    default_cwd: str = ""

    # new-session: wall-clock budget before the child is terminated
    new_session_timeout_seconds: float = 60.0
    # create-and-send: how long to poll for the log file to appear
    log_wait_seconds: float = 15.0
    log_wait_interval_seconds: float = 0.1
    # stop-session: SIGTERM -> SIGKILL grace period
    stop_grace_seconds: float = 3.0

    # Subagent mirror fallback poll interval
    subagent_poll_interval_seconds: float = 0.5

    # Metadata reader
    metadata_full_read_limit: int = 65536
    metadata_window_bytes: int = 32768
    status_chunk_bytes: int = 4096
    status_max_chunks: int = 64

    # Request payloads (messages, undo batches)
    max_payload_bytes: int = 5 * 1024 * 1024

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        home = str(Path.home())
        if not self.claude_dir:
            self.claude_dir = str(Path(home) / ".claude")
        if not self.undo_dir:
            self.undo_dir = str(Path(home) / ".sessionkit" / "undo-history")
        if not self.permitted_root:
            self.permitted_root = home
        if not self.default_cwd:
            self.default_cwd = home
        self.forbidden_prefixes = tuple(self.forbidden_prefixes)

    @property
    def dirs(self) -> HubDirs:
        return HubDirs.from_config(self)

    @classmethod
    def from_env(cls) -> SessionKitConfig:
        """Load configuration from SESSIONKIT_* environment variables."""
        kit_vars = {
            k: v for k, v in os.environ.items() if k.startswith("SESSIONKIT_")
        }
        if kit_vars:
            logger.info(
                "SessionKitConfig.from_env: overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(kit_vars.items())),
            )
        else:
            logger.debug("SessionKitConfig.from_env: no SESSIONKIT_* env vars set, using defaults")

        forbidden = os.getenv("SESSIONKIT_FORBIDDEN_PREFIXES")
        config = cls(
            claude_dir=os.getenv("SESSIONKIT_CLAUDE_DIR", ""),
            claude_command=os.getenv(
                "SESSIONKIT_CLAUDE_COMMAND", cls.claude_command
            ),
            undo_dir=os.getenv("SESSIONKIT_UNDO_DIR", ""),
            permitted_root=os.getenv("SESSIONKIT_PERMITTED_ROOT", ""),
            forbidden_prefixes=(
                tuple(p for p in forbidden.split(os.pathsep) if p)
                if forbidden
                else DEFAULT_FORBIDDEN_PREFIXES
            ),
            default_cwd=os.getenv("SESSIONKIT_DEFAULT_CWD", ""),
            new_session_timeout_seconds=float(os.getenv(
                "SESSIONKIT_NEW_SESSION_TIMEOUT",
                str(cls.new_session_timeout_seconds),
            )),
            log_wait_seconds=float(os.getenv(
                "SESSIONKIT_LOG_WAIT", str(cls.log_wait_seconds)
            )),
            stop_grace_seconds=float(os.getenv(
                "SESSIONKIT_STOP_GRACE", str(cls.stop_grace_seconds)
            )),
            subagent_poll_interval_seconds=float(os.getenv(
                "SESSIONKIT_SUBAGENT_POLL_INTERVAL",
                str(cls.subagent_poll_interval_seconds),
            )),
            max_payload_bytes=int(os.getenv(
                "SESSIONKIT_MAX_PAYLOAD_BYTES", str(cls.max_payload_bytes)
            )),
            log_level=os.getenv("SESSIONKIT_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "SessionKitConfig.from_env: claude_dir=%s command=%s log_level=%s",
            config.claude_dir, config.claude_command, config.log_level,
        )
        return config


@dataclass(frozen=True)
class HubDirs:
    """Root directories handed to the core by the directory service."""
    projects_dir: Path
    undo_dir: Path

    @classmethod
    def from_config(cls, config: SessionKitConfig) -> HubDirs:
        claude_dir = Path(config.claude_dir)
        return cls(
            projects_dir=claude_dir / "projects",
            undo_dir=Path(config.undo_dir),
        )


@dataclass
class ClaudeDirValidation:
    valid: bool
    error: str | None = None
    resolved: str | None = None


def validate_claude_dir(dir_path: str) -> ClaudeDirValidation:
    """Check that a candidate data directory looks like ~/.claude."""
    resolved = Path(dir_path).expanduser().resolve()
    if not resolved.exists():
        return ClaudeDirValidation(valid=False, error="Path does not exist")
    if not resolved.is_dir():
        return ClaudeDirValidation(valid=False, error="Path is not a directory")
    try:
        has_projects = (resolved / "projects").is_dir()
    except OSError:
        return ClaudeDirValidation(valid=False, error="Cannot read directory contents")
    if not has_projects:
        return ClaudeDirValidation(
            valid=False,
            error=(
                'Directory does not contain a "projects" subdirectory. '
                "This does not appear to be a valid .claude directory."
            ),
        )
    return ClaudeDirValidation(valid=True, resolved=str(resolved))
