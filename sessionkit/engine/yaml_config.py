"""YAML configuration loader.

Loads a single YAML file layered on top of SESSIONKIT_* env vars.
Missing sections keep whatever the environment (or the defaults)
already provide.

Example YAML:
    paths:
      claude_dir: ~/.claude
      undo_dir: ~/.sessionkit/undo-history
      permitted_root: ~/code
      forbidden_prefixes: [/etc/, /usr/]

    claude:
      command: claude

    timeouts:
      new_session: 60
      log_wait: 15
      stop_grace: 3
      subagent_poll: 0.5

    limits:
      max_payload_bytes: 5242880
      metadata_full_read_limit: 65536
      metadata_window_bytes: 32768
      status_chunk_bytes: 4096
      status_max_chunks: 64

    logging:
      level: DEBUG
"""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import SessionKitConfig

logger = logging.getLogger(__name__)

_PATH_KEYS = ("claude_dir", "undo_dir", "permitted_root", "default_cwd")

_TIMEOUT_KEYS = {
    "new_session": "new_session_timeout_seconds",
    "log_wait": "log_wait_seconds",
    "log_wait_interval": "log_wait_interval_seconds",
    "stop_grace": "stop_grace_seconds",
    "subagent_poll": "subagent_poll_interval_seconds",
}

_LIMIT_KEYS = (
    "max_payload_bytes",
    "metadata_full_read_limit",
    "metadata_window_bytes",
    "status_chunk_bytes",
    "status_max_chunks",
)


def _expand(value: str) -> str:
    return os.path.expanduser(os.path.expandvars(value))


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        logger.warning("Ignoring non-mapping YAML section '%s'", name)
        return {}
    return section


def load_yaml_config(
    path: str | Path,
    base: SessionKitConfig | None = None,
) -> SessionKitConfig:
    """Load a YAML config file and overlay it on *base*.

    *base* defaults to ``SessionKitConfig.from_env()`` so the precedence
    is: defaults < environment < YAML file.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Top-level YAML in {path} must be a mapping")

    logger.info(
        "Parsed YAML config %s; sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )

    config = base or SessionKitConfig.from_env()
    overrides: dict[str, Any] = {}

    paths = _section(raw, "paths")
    for key in _PATH_KEYS:
        if paths.get(key):
            overrides[key] = _expand(str(paths[key]))
    prefixes = paths.get("forbidden_prefixes")
    if isinstance(prefixes, list):
        overrides["forbidden_prefixes"] = tuple(str(p) for p in prefixes)

    claude = _section(raw, "claude")
    if claude.get("command"):
        overrides["claude_command"] = _expand(str(claude["command"]))

    timeouts = _section(raw, "timeouts")
    for key, field_name in _TIMEOUT_KEYS.items():
        if key in timeouts:
            overrides[field_name] = float(timeouts[key])

    limits = _section(raw, "limits")
    for key in _LIMIT_KEYS:
        if key in limits:
            overrides[key] = int(limits[key])

    log_section = _section(raw, "logging")
    if log_section.get("level"):
        overrides["log_level"] = str(log_section["level"]).upper()

    if overrides:
        logger.debug("load_yaml_config: applying %s", ", ".join(sorted(overrides)))
    return dataclasses.replace(config, **overrides)
