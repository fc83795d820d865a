"""Session process supervisor.

Owns every running ``claude`` subprocess keyed by session id. A session's
process is persistent: the first message spawns it and later messages
are written to its stdin, which keeps the model's prompt cache warm.

Each message gets its own request id and future. Outstanding requests
of a session form a FIFO: a ``result`` line on stdout resolves the
oldest one, and process exit resolves all that remain. Futures are
always resolved with a ``ResultMessage`` (never an exception), so an
abandoned future never logs "exception was never retrieved".

One-shot processes (``new_session``) are tracked separately so that
stop/kill-all reach them too.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sessionkit.shared.services.durable_write import append_lines
from sessionkit.shared.services.log_entries import entry_type, parse_line

from .claude_cli import (
    ClaudeCli,
    build_model_args,
    build_perm_args,
    build_stream_message,
    clean_env,
    friendly_spawn_error,
)
from .config import SessionKitConfig
from .errors import AccessDeniedError, NotFoundError, PayloadTooLargeError, ValidationError
from .models import (
    CANCELLED_EXIT_CODES,
    EntryType,
    ImageAttachment,
    NewSessionOutcome,
    OutcomeStatus,
    PermissionSettings,
    ResultMessage,
    SendOutcome,
)
from .paths import find_log_path, log_file_name, project_dir_for, resolve_project_path
from .subagent_mirror import SubagentMirror
from .task_calls import TaskCallTracker

logger = logging.getLogger(__name__)

# stream-json lines carry whole tool outputs; asyncio's 64 KiB default is too small
STREAM_LIMIT = 16 * 1024 * 1024
STDERR_KEEP_BYTES = 64 * 1024

DIED_UNEXPECTEDLY = "Claude process died unexpectedly"
DEFAULT_ERROR = "Claude returned an error"


def exit_result(returncode: int | None, stderr_text: str) -> ResultMessage:
    """Synthesize the result for requests still pending at process exit."""
    if returncode in CANCELLED_EXIT_CODES:
        return ResultMessage(is_error=False, subtype="success", synthetic=True)
    return ResultMessage(
        is_error=True,
        subtype="error",
        result=stderr_text.strip() or f"claude exited with code {returncode}",
        synthetic=True,
    )


@dataclass
class LiveSession:
    """A persistent claude process bound to one session."""
    session_id: str
    proc: asyncio.subprocess.Process
    cwd: str
    perm_args: list[str]
    model_args: list[str]
    log_path: Path | None = None
    worktree_name: str | None = None
    # Resumed sessions forward stdout progress lines into their log
    forward_progress: bool = False
    dead: bool = False
    pending: deque[tuple[str, asyncio.Future[ResultMessage]]] = field(default_factory=deque)
    task_calls: TaskCallTracker = field(default_factory=TaskCallTracker)
    mirror: SubagentMirror | None = None
    stderr: bytearray = field(default_factory=bytearray)
    tasks: list[asyncio.Task] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.proc.pid

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def resolve_oldest(self, result: ResultMessage) -> str | None:
        """Fulfil the oldest outstanding request. Returns its id."""
        while self.pending:
            request_id, future = self.pending.popleft()
            if not future.done():
                future.set_result(result)
                return request_id
        return None

    def resolve_all(self, result: ResultMessage) -> int:
        resolved = 0
        while self.pending:
            _, future = self.pending.popleft()
            if not future.done():
                future.set_result(result)
                resolved += 1
        return resolved


def _coerce_images(images: Iterable[Any] | None) -> list[ImageAttachment]:
    out: list[ImageAttachment] = []
    for image in images or ():
        if isinstance(image, ImageAttachment):
            out.append(image)
        elif isinstance(image, dict) and isinstance(image.get("data"), str):
            media_type = image.get("mediaType", image.get("media_type"))
            out.append(ImageAttachment(
                data=image["data"],
                media_type=media_type if isinstance(media_type, str) else "image/png",
            ))
        else:
            raise ValidationError("images must have base64 data")
    return out


def _coerce_permissions(permissions: PermissionSettings | dict | None) -> PermissionSettings | None:
    if isinstance(permissions, dict):
        return PermissionSettings.from_dict(permissions)
    return permissions


class SessionSupervisor:
    """Registry and lifecycle owner for claude subprocesses."""

    def __init__(
        self,
        config: SessionKitConfig | None = None,
        cli: ClaudeCli | None = None,
        use_notifications: bool = True,
    ) -> None:
        self._config = config or SessionKitConfig()
        self._cli = cli or ClaudeCli(self._config.claude_command)
        self._use_notifications = use_notifications
        self._projects_dir = self._config.dirs.projects_dir
        self._sessions: dict[str, LiveSession] = {}
        self._oneshots: dict[str, asyncio.subprocess.Process] = {}
        self._spawn_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()
        self.spawn_count = 0

    @property
    def config(self) -> SessionKitConfig:
        return self._config

    # ── Registry queries ──

    def get(self, session_id: str) -> LiveSession | None:
        return self._sessions.get(session_id)

    def is_active(self, session_id: str) -> bool:
        live = self._sessions.get(session_id)
        return (live is not None and not live.dead) or session_id in self._oneshots

    def active_session_ids(self) -> list[str]:
        ids = [sid for sid, live in self._sessions.items() if not live.dead]
        ids.extend(sid for sid in self._oneshots if sid not in ids)
        return ids

    def tracked_pids(self) -> dict[int, str]:
        pids = {live.pid: sid for sid, live in self._sessions.items()}
        pids.update({proc.pid: sid for sid, proc in self._oneshots.items()})
        return pids

    # ── Helpers ──

    def _stream_payload(self, message: str | None, images: list[ImageAttachment]) -> str:
        payload = build_stream_message(message, images)
        size = len(payload.encode("utf-8"))
        if size > self._config.max_payload_bytes:
            raise PayloadTooLargeError(size, self._config.max_payload_bytes)
        return payload

    def _track(self, coro: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _spawn_persistent(
        self,
        session_id: str,
        argv: list[str],
        cwd: str,
        perm_args: list[str],
        model_args: list[str],
        *,
        worktree_name: str | None = None,
        forward_progress: bool = False,
    ) -> LiveSession:
        """Start a stream-json process and wire its readers.

        Raises OSError (FileNotFoundError for a missing executable).
        """
        # create_subprocess_exec passes args as an array; no shell
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=clean_env(),
            limit=STREAM_LIMIT,
        )
        self.spawn_count += 1
        live = LiveSession(
            session_id=session_id,
            proc=proc,
            cwd=cwd,
            perm_args=perm_args,
            model_args=model_args,
            worktree_name=worktree_name,
            forward_progress=forward_progress,
        )
        self._sessions[session_id] = live
        live.tasks.append(self._track(self._supervise(live)))
        logger.info(
            "Spawned claude for %s (pid=%d, cwd=%s)", session_id[:8], proc.pid, cwd,
        )
        return live

    async def _write(self, live: LiveSession, payload: str) -> tuple[str, asyncio.Future[ResultMessage]]:
        """Queue a request and write it to the process stdin.

        Raises OSError when the pipe is already closed.
        """
        future: asyncio.Future[ResultMessage] = asyncio.get_running_loop().create_future()
        request_id = str(uuid.uuid4())
        live.pending.append((request_id, future))
        stdin = live.proc.stdin
        assert stdin is not None
        try:
            stdin.write(payload.encode("utf-8") + b"\n")
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            live.pending = deque(p for p in live.pending if p[1] is not future)
            raise
        return request_id, future

    @staticmethod
    def _outcome(session_id: str, request_id: str, result: ResultMessage, *, spawned: bool) -> SendOutcome:
        if result.is_error:
            return SendOutcome(
                session_id=session_id,
                request_id=request_id,
                success=False,
                status=OutcomeStatus.INTERNAL,
                error=result.result or DEFAULT_ERROR,
                spawned=spawned,
            )
        return SendOutcome(session_id=session_id, request_id=request_id, spawned=spawned)

    # ── Process supervision ──

    async def _supervise(self, live: LiveSession) -> None:
        stdout_task = asyncio.ensure_future(self._read_stdout(live))
        stderr_task = asyncio.ensure_future(self._read_stderr(live))
        try:
            await asyncio.gather(stdout_task, stderr_task, return_exceptions=True)
            returncode = await live.proc.wait()
        except asyncio.CancelledError:
            stdout_task.cancel()
            stderr_task.cancel()
            raise
        self._on_exit(live, returncode)

    async def _read_stdout(self, live: LiveSession) -> None:
        stdout = live.proc.stdout
        assert stdout is not None
        while True:
            try:
                line = await stdout.readline()
            except ValueError:
                logger.warning("Oversized stdout line from %s skipped", live.session_id[:8])
                continue
            if not line:
                return
            self._handle_line(live, line)

    @staticmethod
    async def _read_stderr(live: LiveSession) -> None:
        stderr = live.proc.stderr
        assert stderr is not None
        while True:
            chunk = await stderr.read(4096)
            if not chunk:
                return
            live.stderr.extend(chunk)
            if len(live.stderr) > STDERR_KEEP_BYTES:
                del live.stderr[: len(live.stderr) - STDERR_KEEP_BYTES]

    def _handle_line(self, live: LiveSession, raw: bytes) -> None:
        entry = parse_line(raw)
        if entry is None:
            return
        kind = entry_type(entry)
        if kind == EntryType.RESULT:
            request_id = live.resolve_oldest(ResultMessage.from_line(entry))
            logger.debug(
                "Result for %s (request=%s, is_error=%s)",
                live.session_id[:8], (request_id or "-")[:8], bool(entry.get("is_error")),
            )
        elif kind == EntryType.ASSISTANT:
            live.task_calls.record_from_assistant(entry)
        elif kind == EntryType.PROGRESS and live.forward_progress and live.log_path is not None:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            try:
                append_lines(live.log_path, [line])
            except OSError as exc:
                logger.debug("Progress forward to %s failed: %s", live.log_path, exc)

    def _on_exit(self, live: LiveSession, returncode: int | None) -> None:
        live.dead = True
        if self._sessions.get(live.session_id) is live:
            del self._sessions[live.session_id]
        if live.mirror is not None:
            live.mirror.close()
            self._track(live.mirror.aclose())
        dropped = live.task_calls.abandon_all()
        resolved = live.resolve_all(exit_result(returncode, live.stderr_text()))
        log = logger.info if returncode in CANCELLED_EXIT_CODES or returncode == 0 else logger.warning
        log(
            "claude for %s exited (pid=%d, rc=%s, pending=%d, task_calls=%d)",
            live.session_id[:8], live.pid, returncode, resolved, dropped,
        )

    def _attach_mirror(self, live: LiveSession, log_path: Path) -> None:
        if live.dead or live.mirror is not None:
            return
        live.log_path = log_path
        live.mirror = SubagentMirror(
            log_path,
            live.session_id,
            live.task_calls,
            poll_interval=self._config.subagent_poll_interval_seconds,
            use_notifications=self._use_notifications,
        )
        live.mirror.start()

    # ── send-message ──

    async def send(
        self,
        session_id: str,
        message: str | None = None,
        images: Iterable[Any] | None = None,
        cwd: str | None = None,
        permissions: PermissionSettings | dict | None = None,
        model: str | None = None,
    ) -> SendOutcome:
        """Deliver a user turn to a session, spawning its process if needed.

        Waits for the turn's ``result`` (or the process exit). Raises
        ValidationError / PayloadTooLargeError before any process work.
        """
        attachments = _coerce_images(images)
        if not session_id or (not message and not attachments):
            raise ValidationError("sessionId and message or images are required")
        payload = self._stream_payload(message, attachments)

        spawned = False
        async with self._spawn_lock:
            live = self._sessions.get(session_id)
            if live is not None and live.dead:
                del self._sessions[session_id]
                live = None
            if live is None:
                perm_args = build_perm_args(_coerce_permissions(permissions))
                model_args = build_model_args(model)
                run_cwd = cwd or self._config.default_cwd
                argv = self._cli.resume_argv(session_id, perm_args, model_args)
                try:
                    live = await self._spawn_persistent(
                        session_id, argv, run_cwd, perm_args, model_args,
                        forward_progress=True,
                    )
                except OSError as exc:
                    logger.error("Failed to spawn claude for %s: %s", session_id[:8], exc)
                    return SendOutcome(
                        session_id=session_id,
                        success=False,
                        status=OutcomeStatus.INTERNAL,
                        error=friendly_spawn_error(exc),
                    )
                spawned = True
                live.log_path = find_log_path(self._projects_dir, session_id)

        try:
            request_id, future = await self._write(live, payload)
        except (BrokenPipeError, ConnectionResetError):
            return SendOutcome(
                session_id=session_id,
                success=False,
                status=OutcomeStatus.INTERNAL,
                error=DIED_UNEXPECTEDLY,
                spawned=spawned,
            )
        result = await future
        return self._outcome(session_id, request_id, result, spawned=spawned)

    # ── new-session (one-shot) ──

    def _prepare_project(self, dir_name: str) -> tuple[Path, str]:
        if not dir_name:
            raise ValidationError("dirName is required")
        project_dir = project_dir_for(self._projects_dir, dir_name)
        return project_dir, resolve_project_path(project_dir, dir_name)

    async def new_session(
        self,
        dir_name: str,
        message: str,
        permissions: PermissionSettings | dict | None = None,
    ) -> NewSessionOutcome:
        """Create a session with a one-shot ``claude -p`` run.

        Succeeds when the process exits and the session log exists.
        """
        if not dir_name or not message:
            raise ValidationError("dirName and message are required")
        if len(message.encode("utf-8")) > self._config.max_payload_bytes:
            raise PayloadTooLargeError(len(message.encode("utf-8")), self._config.max_payload_bytes)
        project_dir, project_path = self._prepare_project(dir_name)
        perm_args = build_perm_args(_coerce_permissions(permissions))
        session_id = str(uuid.uuid4())
        file_name = log_file_name(session_id)
        expected = project_dir / file_name

        def failure(error: str, status: OutcomeStatus = OutcomeStatus.INTERNAL) -> NewSessionOutcome:
            return NewSessionOutcome(
                success=False, session_id=session_id, dir_name=dir_name,
                file_name=file_name, status=status, error=error,
            )

        try:
            # create_subprocess_exec passes args as an array; no shell
            proc = await asyncio.create_subprocess_exec(
                *self._cli.oneshot_argv(message, session_id, perm_args),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                cwd=project_path,
                env=clean_env(),
            )
        except OSError as exc:
            logger.error("Failed to spawn claude for new session: %s", exc)
            return failure(friendly_spawn_error(exc))

        self.spawn_count += 1
        self._oneshots[session_id] = proc
        logger.info("New session %s started (pid=%d, cwd=%s)", session_id[:8], proc.pid, project_path)
        stderr_buf = bytearray()

        async def drain_stderr() -> None:
            assert proc.stderr is not None
            while True:
                chunk = await proc.stderr.read(4096)
                if not chunk:
                    return
                stderr_buf.extend(chunk)

        stderr_task = asyncio.ensure_future(drain_stderr())
        try:
            try:
                returncode = await asyncio.wait_for(
                    proc.wait(), timeout=self._config.new_session_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "New session %s timed out after %.0fs", session_id[:8],
                    self._config.new_session_timeout_seconds,
                )
                self._terminate(proc)
                self._track(self._escalate(proc))
                stderr_task.cancel()
                return failure(
                    stderr_buf.decode("utf-8", errors="replace").strip()
                    or "Timed out waiting for session to start",
                    OutcomeStatus.TIMEOUT,
                )
            await asyncio.gather(stderr_task, return_exceptions=True)
        finally:
            if self._oneshots.get(session_id) is proc:
                del self._oneshots[session_id]

        if expected.exists():
            return NewSessionOutcome(
                success=True, session_id=session_id, dir_name=dir_name, file_name=file_name,
            )
        return failure(
            stderr_buf.decode("utf-8", errors="replace").strip()
            or f"claude exited with code {returncode} before creating session"
        )

    # ── create-and-send (persistent) ──

    async def _wait_for_log(self, path: Path, live: LiveSession) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.log_wait_seconds
        while not live.dead:
            try:
                if path.stat().st_size > 0:
                    return True
            except OSError:
                pass
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self._config.log_wait_interval_seconds)
        return False

    async def create_and_send(
        self,
        dir_name: str,
        message: str | None = None,
        images: Iterable[Any] | None = None,
        permissions: PermissionSettings | dict | None = None,
        model: str | None = None,
        worktree_name: str | None = None,
    ) -> NewSessionOutcome:
        """Create a session on a persistent process and send its first turn.

        Returns as soon as the log has content, or when the first result
        arrives, whichever is first.
        """
        attachments = _coerce_images(images)
        if not dir_name or (not message and not attachments):
            raise ValidationError("dirName and message (or images) are required")
        payload = self._stream_payload(message, attachments)
        project_dir, project_path = self._prepare_project(dir_name)
        perm_args = build_perm_args(_coerce_permissions(permissions))
        model_args = build_model_args(model)
        session_id = str(uuid.uuid4())
        file_name = log_file_name(session_id)
        expected = project_dir / file_name

        def outcome(error: str | None = None) -> NewSessionOutcome:
            return NewSessionOutcome(
                success=error is None,
                session_id=session_id,
                dir_name=dir_name,
                file_name=file_name,
                status=OutcomeStatus.SUCCESS if error is None else OutcomeStatus.INTERNAL,
                error=error,
            )

        argv = self._cli.create_argv(session_id, perm_args, model_args, worktree_name)
        try:
            async with self._spawn_lock:
                live = await self._spawn_persistent(
                    session_id, argv, project_path, perm_args, model_args,
                    worktree_name=worktree_name,
                )
        except OSError as exc:
            logger.error("Failed to spawn claude for %s: %s", session_id[:8], exc)
            return outcome(friendly_spawn_error(exc))

        try:
            _, future = await self._write(live, payload)
        except (BrokenPipeError, ConnectionResetError):
            return outcome(DIED_UNEXPECTEDLY)

        poll = asyncio.ensure_future(self._wait_for_log(expected, live))
        await asyncio.wait({poll, future}, return_when=asyncio.FIRST_COMPLETED)

        if poll.done() and poll.result():
            self._attach_mirror(live, expected)
            return outcome()

        if not poll.done():
            poll.cancel()
        # Log never appeared in time, or the first turn finished first
        result = await future
        if result.is_error:
            return outcome(result.result or DEFAULT_ERROR)
        if live.mirror is None:
            log_path = find_log_path(self._projects_dir, session_id)
            if log_path is not None:
                self._attach_mirror(live, log_path)
        return outcome()

    # ── stop / kill ──

    @staticmethod
    def _terminate(proc: asyncio.subprocess.Process) -> bool:
        if proc.returncode is not None:
            return False
        try:
            proc.terminate()
        except ProcessLookupError:
            return False
        return True

    async def _escalate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGKILL *proc* if it is still running after the grace period."""
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.stop_grace_seconds)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                return
            logger.warning("claude pid=%d ignored SIGTERM; killed", proc.pid)

    def stop_session(self, session_id: str) -> bool:
        """SIGTERM a session's process(es). False when nothing is running."""
        if not session_id:
            raise ValidationError("sessionId is required")
        live = self._sessions.pop(session_id, None)
        oneshot = self._oneshots.get(session_id)
        if live is None and oneshot is None:
            return False
        if live is not None and not live.dead:
            live.dead = True
            if self._terminate(live.proc):
                self._track(self._escalate(live.proc))
        if oneshot is not None and self._terminate(oneshot):
            self._track(self._escalate(oneshot))
        logger.info("Stopped session %s", session_id[:8])
        return True

    def kill_all(self) -> int:
        """SIGTERM every tracked process. Returns how many were signalled."""
        killed = 0
        for session_id, live in list(self._sessions.items()):
            if not live.dead:
                live.dead = True
                if self._terminate(live.proc):
                    self._track(self._escalate(live.proc))
                killed += 1
            del self._sessions[session_id]
        for session_id, proc in list(self._oneshots.items()):
            if self._terminate(proc):
                self._track(self._escalate(proc))
            del self._oneshots[session_id]
            killed += 1
        if killed:
            logger.info("Killed %d claude processes", killed)
        return killed

    def kill_process(self, pid: int) -> None:
        """SIGTERM a pid, but only one this supervisor spawned."""
        if not isinstance(pid, int) or isinstance(pid, bool) or pid < 2:
            raise ValidationError("Valid pid required")
        session_id = self.tracked_pids().get(pid)
        if session_id is None:
            raise AccessDeniedError(str(pid), "Can only kill tracked claude processes")
        if not self.stop_session(session_id):
            raise NotFoundError(f"process {pid}")

    async def wait_idle(self, session_id: str) -> None:
        """Wait until every outstanding request of a session is resolved."""
        live = self._sessions.get(session_id)
        if live is None:
            return
        futures = [future for _, future in live.pending]
        if futures:
            await asyncio.gather(*futures)

    async def shutdown(self) -> None:
        """Kill everything and wait for exit handlers to finish."""
        self.kill_all()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
