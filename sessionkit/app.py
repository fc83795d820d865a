"""sessionkit: command-line entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from sessionkit.engine.config import SessionKitConfig
from sessionkit.engine.errors import SessionKitError
from sessionkit.engine.models import PermissionSettings, classify_error
from sessionkit.engine.supervisor import SessionSupervisor
from sessionkit.engine.yaml_config import load_yaml_config
from sessionkit.shared.services.file_mutator import apply_operations
from sessionkit.shared.services.log_admin import append_log, branch_session, truncate_log
from sessionkit.shared.services.process_listing import list_claude_processes
from sessionkit.shared.services.session_metadata import read_session_meta
from sessionkit.shared.services.session_status import read_session_status, status_label
from sessionkit.shared.services.undo_state import UndoStateStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"

console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str = "INFO", log_dir: Path | None = None) -> Path:
    """Root logger to a rotating file plus stderr. Returns the log file path."""
    log_dir = log_dir or Path.home() / ".sessionkit" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "sessionkit.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    # Keep the terminal quiet unless asked; the file gets everything
    stream_handler.setLevel(root.level if root.level <= logging.DEBUG else logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _load_config(args: argparse.Namespace) -> SessionKitConfig:
    config = SessionKitConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    return config


def _permissions(args: argparse.Namespace) -> PermissionSettings | None:
    mode = getattr(args, "permission_mode", None)
    if not mode:
        return None
    return PermissionSettings(
        mode=mode,
        allowed_tools=list(getattr(args, "allowed_tools", None) or []),
        disallowed_tools=list(getattr(args, "disallowed_tools", None) or []),
    )


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data))


# ── Commands ──

def _cmd_meta(args: argparse.Namespace, config: SessionKitConfig) -> int:
    meta = read_session_meta(args.log, config)
    if args.json:
        _print_json(meta.to_dict())
        return 0
    table = Table(title=Path(args.log).name, show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    for key, value in meta.to_dict().items():
        table.add_row(key, "" if value is None else str(value))
    if meta.is_estimate:
        table.caption = "counts estimated from the head of the file"
    console.print(table)
    return 0


def _cmd_status(args: argparse.Namespace, config: SessionKitConfig) -> int:
    info = read_session_status(args.log, config.status_chunk_bytes, config.status_max_chunks)
    if args.json:
        _print_json(info.to_dict())
    else:
        label = status_label(info) or "idle"
        queued = f" ({info.pending_queue} queued)" if info.pending_queue else ""
        console.print(f"{label}{queued}")
    return 0


def _cmd_apply(args: argparse.Namespace, config: SessionKitConfig) -> int:
    raw = json.loads(Path(args.operations).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("operations")
    result = apply_operations(raw, config)
    console.print(
        f"[green]applied {result.applied} operations[/green] "
        f"({result.files_written} written, {result.files_deleted} deleted)"
    )
    return 0


def _cmd_truncate(args: argparse.Namespace, config: SessionKitConfig) -> int:
    removed = truncate_log(config.dirs.projects_dir, args.dir_name, args.file_name, args.keep_lines)
    if args.save_removed:
        Path(args.save_removed).write_text(
            "".join(line + "\n" for line in removed), encoding="utf-8"
        )
    console.print(f"removed {len(removed)} lines")
    return 0


def _cmd_append(args: argparse.Namespace, config: SessionKitConfig) -> int:
    lines = [
        line for line in Path(args.lines_file).read_text(encoding="utf-8").split("\n") if line
    ]
    appended = append_log(config.dirs.projects_dir, args.dir_name, args.file_name, lines)
    console.print(f"appended {appended} lines")
    return 0


def _cmd_branch(args: argparse.Namespace, config: SessionKitConfig) -> int:
    result = branch_session(config.dirs.projects_dir, args.dir_name, args.file_name, args.turn)
    _print_json(result.to_dict())
    return 0


def _cmd_undo_state(args: argparse.Namespace, config: SessionKitConfig) -> int:
    store = UndoStateStore(config.dirs.undo_dir)
    if args.save:
        state = json.loads(Path(args.save).read_text(encoding="utf-8"))
        path = store.save(args.session_id, state)
        console.print(f"saved {path}")
        return 0
    _print_json(store.load(args.session_id))
    return 0


def _cmd_ps(args: argparse.Namespace, config: SessionKitConfig) -> int:
    processes = list_claude_processes()
    if args.json:
        _print_json([p.to_dict() for p in processes])
        return 0
    table = Table(title="claude processes")
    for column in ("pid", "mem MB", "cpu %", "session", "tty", "started"):
        table.add_column(column)
    for proc in processes:
        table.add_row(
            str(proc.pid), str(proc.mem_mb), f"{proc.cpu:.1f}",
            proc.session_id or "-", proc.tty, proc.start_time,
        )
    console.print(table)
    return 0


async def _run_send(args: argparse.Namespace, config: SessionKitConfig) -> int:
    supervisor = SessionSupervisor(config)
    try:
        outcome = await supervisor.send(
            args.session_id,
            args.message,
            cwd=args.cwd,
            permissions=_permissions(args),
            model=args.model,
        )
    finally:
        await supervisor.shutdown()
    outcome.raise_for_status()
    console.print(f"[green]delivered[/green] to {outcome.session_id}")
    return 0


async def _run_new(args: argparse.Namespace, config: SessionKitConfig) -> int:
    supervisor = SessionSupervisor(config)
    try:
        if args.oneshot:
            outcome = await supervisor.new_session(
                args.dir_name, args.message, permissions=_permissions(args),
            )
        else:
            outcome = await supervisor.create_and_send(
                args.dir_name,
                args.message,
                permissions=_permissions(args),
                model=args.model,
                worktree_name=args.worktree,
            )
            if outcome.success:
                console.print(f"session {outcome.session_id} started; waiting for first turn")
                await supervisor.wait_idle(outcome.session_id)
    finally:
        await supervisor.shutdown()
    outcome.raise_for_status()
    _print_json({
        "dirName": outcome.dir_name,
        "fileName": outcome.file_name,
        "sessionId": outcome.session_id,
    })
    return 0


def _add_permission_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--permission-mode",
        default=None,
        help="claude --permission-mode value (default: skip permissions)",
    )
    parser.add_argument(
        "--allowed-tool",
        dest="allowed_tools",
        action="append",
        help="Tool to allow (repeatable)",
    )
    parser.add_argument(
        "--disallowed-tool",
        dest="disallowed_tools",
        action="append",
        help="Tool to deny (repeatable)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sessionkit",
        description="Supervise claude sessions and administer their logs",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file layered over SESSIONKIT_* env vars",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("meta", help="Show session metadata")
    p.add_argument("log")
    p.add_argument("--json", action="store_true")
    p.set_defaults(handler=_cmd_meta)

    p = sub.add_parser("status", help="Show live activity status")
    p.add_argument("log")
    p.add_argument("--json", action="store_true")
    p.set_defaults(handler=_cmd_status)

    p = sub.add_parser("apply", help="Apply an undo/redo batch from a JSON file")
    p.add_argument("operations")
    p.set_defaults(handler=_cmd_apply)

    p = sub.add_parser("truncate", help="Keep only the first N lines of a log")
    p.add_argument("dir_name")
    p.add_argument("file_name")
    p.add_argument("keep_lines", type=int)
    p.add_argument("--save-removed", default=None, help="Write removed lines here")
    p.set_defaults(handler=_cmd_truncate)

    p = sub.add_parser("append", help="Append lines from a file back onto a log")
    p.add_argument("dir_name")
    p.add_argument("file_name")
    p.add_argument("lines_file")
    p.set_defaults(handler=_cmd_append)

    p = sub.add_parser("branch", help="Fork a session, optionally after a turn")
    p.add_argument("dir_name")
    p.add_argument("file_name")
    p.add_argument("--turn", type=int, default=None)
    p.set_defaults(handler=_cmd_branch)

    p = sub.add_parser("undo-state", help="Load or save undo history")
    p.add_argument("session_id")
    p.add_argument("--save", default=None, help="JSON file to store")
    p.set_defaults(handler=_cmd_undo_state)

    p = sub.add_parser("ps", help="List running claude processes")
    p.add_argument("--json", action="store_true")
    p.set_defaults(handler=_cmd_ps)

    p = sub.add_parser("send", help="Send a message to an existing session")
    p.add_argument("session_id")
    p.add_argument("message")
    p.add_argument("--cwd", default=None)
    p.add_argument("--model", default=None)
    _add_permission_args(p)
    p.set_defaults(runner=_run_send)

    p = sub.add_parser("new", help="Create a session in a project directory")
    p.add_argument("dir_name")
    p.add_argument("message")
    p.add_argument("--model", default=None)
    p.add_argument("--worktree", default=None)
    p.add_argument(
        "--oneshot",
        action="store_true",
        help="Single-turn claude -p run instead of a persistent process",
    )
    _add_permission_args(p)
    p.set_defaults(runner=_run_new)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = "DEBUG" if args.verbose else os.getenv("SESSIONKIT_LOG_LEVEL", "INFO")
    log_file = configure_logging(level)
    config = _load_config(args)
    if not args.verbose:
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    logger.info("sessionkit %s cwd=%s log=%s", args.command, Path.cwd(), log_file)

    try:
        runner = getattr(args, "runner", None)
        if runner is not None:
            code = asyncio.run(runner(args, config))
        else:
            code = args.handler(args, config)
    except SessionKitError as exc:
        status = classify_error(exc)
        logger.warning("%s failed (%s): %s", args.command, status.value, exc)
        err_console.print(f"[red]{status.value}:[/red] {escape(str(exc))}")
        rolled_back = getattr(exc, "rolled_back", 0)
        if rolled_back:
            err_console.print(f"rolled back {rolled_back} files")
        code = 1
    except KeyboardInterrupt:
        err_console.print("\nInterrupted.")
        code = 130
    except (OSError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        err_console.print(f"[red]error:[/red] {escape(str(exc))}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
