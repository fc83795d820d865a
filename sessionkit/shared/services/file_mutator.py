"""Transactional file mutator behind undo/redo of agent edits.

A batch of operations is validated up front, replayed in memory per
target file, and only then committed to disk. A failure during commit restores every file the
commit wrote or deleted to what it was before the batch started; a
failure during replay leaves the disk untouched.

Operation types mirror the agent's Edit/Write tools:

- ``reverse-edit`` / ``apply-edit``: replace ``old_string`` with
  ``new_string`` (exactly once, or everywhere with ``replace_all``)
- ``create-write``: write ``content`` (creating the file if needed)
- ``delete-write``: remove the file
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from sessionkit.engine.config import DEFAULT_FORBIDDEN_PREFIXES, SessionKitConfig
from sessionkit.engine.errors import (
    AccessDeniedError,
    ConflictError,
    PayloadTooLargeError,
    ValidationError,
)
from sessionkit.shared.services.durable_write import atomic_write_text, remove_file

logger = logging.getLogger(__name__)


class UndoOpType(str, Enum):
    REVERSE_EDIT = "reverse-edit"
    APPLY_EDIT = "apply-edit"
    CREATE_WRITE = "create-write"
    DELETE_WRITE = "delete-write"


_EDIT_TYPES = frozenset({UndoOpType.REVERSE_EDIT, UndoOpType.APPLY_EDIT})


@dataclass
class UndoOperation:
    """One step of an undo/redo batch."""
    type: UndoOpType
    file_path: str
    old_string: str | None = None
    new_string: str | None = None
    replace_all: bool = False
    content: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> UndoOperation:
        """Build from the wire shape (camelCase keys)."""
        if not isinstance(data, dict):
            raise ValidationError("Each operation must be an object")
        try:
            op_type = UndoOpType(data.get("type"))
        except ValueError:
            raise ValidationError(f"Unknown operation type: {data.get('type')!r}") from None
        file_path = data.get("filePath", data.get("file_path"))
        if not isinstance(file_path, str) or not file_path:
            raise ValidationError("Each operation needs a filePath")
        op = cls(
            type=op_type,
            file_path=file_path,
            old_string=data.get("oldString", data.get("old_string")),
            new_string=data.get("newString", data.get("new_string")),
            replace_all=bool(data.get("replaceAll", data.get("replace_all", False))),
            content=data.get("content"),
        )
        op.check_fields()
        return op

    def check_fields(self) -> None:
        if self.type in _EDIT_TYPES:
            if self.old_string is not None and not isinstance(self.old_string, str):
                raise ValidationError(f"oldString must be a string ({self.file_path})")
            if self.old_string and not isinstance(self.new_string, str):
                raise ValidationError(f"newString is required with oldString ({self.file_path})")
        elif self.type == UndoOpType.CREATE_WRITE:
            if not isinstance(self.content, str):
                raise ValidationError(f"create-write needs string content ({self.file_path})")

    def payload_bytes(self) -> int:
        return sum(
            len(value.encode("utf-8"))
            for value in (self.old_string, self.new_string, self.content)
            if isinstance(value, str)
        )


@dataclass
class BatchResult:
    """A committed batch."""
    applied: int
    files_written: int = 0
    files_deleted: int = 0


@dataclass
class _Original:
    content: str
    existed: bool


def count_occurrences(content: str, needle: str) -> int:
    return content.count(needle) if needle else 0


class FileMutator:
    """All-or-nothing application of undo/redo batches.

    Paths are trusted only after ``validate``: absolute, already
    normalized, under ``permitted_root`` and outside every forbidden
    prefix.
    """

    def __init__(
        self,
        permitted_root: str | Path,
        forbidden_prefixes: Iterable[str] = DEFAULT_FORBIDDEN_PREFIXES,
        max_payload_bytes: int | None = None,
    ) -> None:
        self._root = os.path.normpath(str(permitted_root))
        self._forbidden = tuple(forbidden_prefixes)
        self._max_payload_bytes = max_payload_bytes

    @classmethod
    def from_config(cls, config: SessionKitConfig) -> FileMutator:
        return cls(
            permitted_root=config.permitted_root,
            forbidden_prefixes=config.forbidden_prefixes,
            max_payload_bytes=config.max_payload_bytes,
        )

    # ── Pre-flight ──

    def _is_under_root(self, path: str) -> bool:
        if path == self._root:
            return True
        prefix = self._root if self._root.endswith(os.sep) else self._root + os.sep
        return path.startswith(prefix)

    def check_path(self, path: str) -> None:
        """Raise AccessDeniedError unless *path* is safe to mutate."""
        if not os.path.isabs(path) or os.path.normpath(path) != path:
            raise AccessDeniedError(path, "Invalid file path")
        if not self._is_under_root(path):
            raise AccessDeniedError(path, "File operations restricted to permitted root")
        if any(path.startswith(prefix) for prefix in self._forbidden):
            raise AccessDeniedError(path, "Cannot modify system files")

    def validate(self, operations: list[UndoOperation]) -> None:
        if not operations:
            raise ValidationError("operations array required")
        if self._max_payload_bytes is not None:
            size = sum(op.payload_bytes() for op in operations)
            if size > self._max_payload_bytes:
                raise PayloadTooLargeError(size, self._max_payload_bytes)
        for op in operations:
            op.check_fields()
            self.check_path(op.file_path)

    # ── Execution ──

    def apply(self, operations: list[UndoOperation]) -> BatchResult:
        """Apply *operations* atomically.

        Raises ValidationError / AccessDeniedError / PayloadTooLargeError
        before touching disk, and ConflictError (with ``rolled_back``)
        when the batch fails after reading began.
        """
        self.validate(operations)

        originals: dict[str, _Original] = {}
        # path -> new content, or None when the batch ends with a delete
        buffers: dict[str, str | None] = {}
        # Paths the commit phase has started writing or deleting
        touched: list[str] = []

        try:
            for op in operations:
                self._replay(op, originals, buffers)
            result = self._commit(operations, originals, buffers, touched)
        except (ConflictError, OSError, UnicodeDecodeError) as exc:
            rolled_back = self._rollback(originals, touched)
            reason = exc.reason if isinstance(exc, ConflictError) else f"Failed to apply batch: {exc}"
            logger.warning(
                "Undo batch failed (%d ops, %d files rolled back): %s",
                len(operations), rolled_back, reason,
            )
            raise ConflictError(reason, rolled_back=rolled_back) from exc

        logger.info(
            "Undo batch applied: %d ops, %d written, %d deleted",
            result.applied, result.files_written, result.files_deleted,
        )
        return result

    def _capture(self, path: str, originals: dict[str, _Original], *, must_exist: bool) -> str | None:
        """Read *path* from disk, remembering it for rollback on first touch."""
        try:
            # newline="" so CRLF files round-trip unchanged
            with open(path, encoding="utf-8", newline="") as f:
                content = f.read()
        except FileNotFoundError:
            if must_exist:
                raise ConflictError(
                    f"Conflict: {path} no longer exists. File may have been modified externally."
                ) from None
            originals.setdefault(path, _Original(content="", existed=False))
            return None
        originals.setdefault(path, _Original(content=content, existed=True))
        return content

    def _replay(
        self,
        op: UndoOperation,
        originals: dict[str, _Original],
        buffers: dict[str, str | None],
    ) -> None:
        path = op.file_path

        if op.type in _EDIT_TYPES:
            if path in buffers:
                content = buffers[path]
                if content is None:
                    raise ConflictError(
                        f"Conflict: {path} was deleted earlier in this batch."
                    )
            else:
                content = self._capture(path, originals, must_exist=True)
                assert content is not None
            if op.old_string:
                content = self._replace(path, content, op)
            buffers[path] = content
            return

        if path not in originals:
            self._capture(path, originals, must_exist=False)

        if op.type == UndoOpType.CREATE_WRITE:
            buffers[path] = op.content
        else:
            buffers[path] = None

    @staticmethod
    def _replace(path: str, content: str, op: UndoOperation) -> str:
        old = op.old_string or ""
        new = op.new_string or ""
        occurrences = count_occurrences(content, old)
        if occurrences == 0:
            raise ConflictError(
                f"Conflict: expected string not found in {path}. "
                "File may have been modified externally."
            )
        if op.replace_all:
            return content.replace(old, new)
        if occurrences > 1:
            raise ConflictError(
                f"Conflict: expected exactly 1 occurrence in {path}, "
                f"found {occurrences}. Cannot safely apply edit."
            )
        return content.replace(old, new, 1)

    @staticmethod
    def _commit(
        operations: list[UndoOperation],
        originals: dict[str, _Original],
        buffers: dict[str, str | None],
        touched: list[str],
    ) -> BatchResult:
        result = BatchResult(applied=len(operations))
        for path, content in buffers.items():
            if content is None and originals[path].existed:
                touched.append(path)
                remove_file(Path(path))
                result.files_deleted += 1
        for path, content in buffers.items():
            if content is None:
                continue
            touched.append(path)
            atomic_write_text(Path(path), content, make_parents=False)
            result.files_written += 1
        return result

    @staticmethod
    def _rollback(originals: dict[str, _Original], touched: list[str]) -> int:
        """Restore the originals of *touched* paths; best-effort.

        Files that were only read during replay are never rewritten.
        """
        for path in touched:
            original = originals[path]
            try:
                if original.existed:
                    atomic_write_text(Path(path), original.content, make_parents=False)
                else:
                    remove_file(Path(path))
            except OSError as exc:
                logger.warning("Rollback of %s failed: %s", path, exc)
        return len(touched)


def apply_operations(
    raw_operations: Any,
    config: SessionKitConfig,
) -> BatchResult:
    """Parse wire-format operations and apply them with *config*'s policy."""
    if not isinstance(raw_operations, list) or not raw_operations:
        raise ValidationError("operations array required")
    operations = [UndoOperation.from_dict(item) for item in raw_operations]
    return FileMutator.from_config(config).apply(operations)
