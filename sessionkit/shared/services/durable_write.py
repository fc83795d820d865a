from __future__ import annotations

import os
import stat
import tempfile
from pathlib import Path


def _fsync_dir(dir_path: Path) -> None:
    """Best-effort directory fsync to persist rename/unlink metadata."""
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Some platforms/filesystems do not support directory fsync.
        pass


def atomic_write_text(
    path: Path,
    content: str,
    *,
    encoding: str = "utf-8",
    make_parents: bool = True,
) -> None:
    """Replace *path* with *content* via temp file + rename.

    An existing file keeps its permission bits. Readers never observe a
    half-written file.
    """
    if make_parents:
        path.parent.mkdir(parents=True, exist_ok=True)
    try:
        mode: int | None = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        mode = None

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        # newline="" keeps the caller's line endings byte-for-byte
        with os.fdopen(fd, "w", encoding=encoding, newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


def append_lines(path: Path, lines: list[str], *, encoding: str = "utf-8") -> int:
    """Append JSONL lines (newline-terminated) in one write. Returns count."""
    if not lines:
        return 0
    payload = "".join(line.rstrip("\n") + "\n" for line in lines)
    with open(path, "a", encoding=encoding, newline="") as f:
        f.write(payload)
        f.flush()
    return len(lines)


def remove_file(path: Path) -> bool:
    """Unlink *path*; False if it was already gone."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    _fsync_dir(path.parent)
    return True
