"""Atomic file writes, tolerant reads, project-tree walking, and root discovery."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from pathlib import Path

from ghostpipe.core.config import LOCAL_CONFIG_NAMES

GHOSTPIPE_ROOT_ENV = "GHOSTPIPE_ROOT"

# Directory names never synced or watched.  Dot-prefixed names are skipped too.
IGNORED_NAMES: frozenset[str] = frozenset({"node_modules", "dist", "build", "__pycache__"})


class UnreadableFileError(OSError):
    """Raised when a file exists but is not UTF-8 text."""


def _fsync_directory(path: Path) -> None:
    """Fsync a directory so a rename into it is durable.

    Some platforms (notably macOS HFS+) may not support fsync on directory
    file descriptors, so ``OSError`` is silently ignored.
    """
    try:
        fd = os.open(str(path), os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        pass


def atomic_write(path: Path, content: str | bytes, *, make_parents: bool = False) -> None:
    """Write content to path atomically via temp file + fsync + rename.

    The temp file lives next to the target (same filesystem, so the rename
    is atomic) and carries a ``.tmp.`` prefix, which the watcher ignores.

    Raises:
        FileNotFoundError: If the parent directory does not exist and
            *make_parents* is false.
    """
    parent = path.parent
    if make_parents:
        parent.mkdir(parents=True, exist_ok=True)
    if not parent.is_dir():
        raise FileNotFoundError(f"Parent directory does not exist: {parent}")

    data = content.encode("utf-8") if isinstance(content, str) else content

    fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=".tmp.")
    closed = False
    try:
        # os.write() can short-write; loop until all bytes are flushed.
        mv = memoryview(data)
        while mv:
            written = os.write(fd, mv)
            mv = mv[written:]
        os.fsync(fd)
        os.close(fd)
        closed = True
        if path.exists():
            os.chmod(tmp_path, path.stat().st_mode & 0o777)
        os.replace(tmp_path, path)
        _fsync_directory(parent)
    except BaseException:
        if not closed:
            os.close(fd)
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_text(path: Path) -> str | None:
    """Return the UTF-8 content of *path*, or ``None`` if it does not exist.

    Raises:
        UnreadableFileError: If the file is binary / not valid UTF-8.
        OSError: For any other read failure (permissions, I/O).
    """
    try:
        data = path.read_bytes()
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise UnreadableFileError(f"Not a UTF-8 text file: {path}") from exc


def remove_file(path: Path) -> bool:
    """Delete *path* if it exists.  Returns ``True`` if something was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    _fsync_directory(path.parent)
    return True


def is_ignored(rel_path: str) -> bool:
    """True if any segment of a relative path is hidden or an ignored directory."""
    for part in rel_path.replace("\\", "/").split("/"):
        if not part or part == ".":
            continue
        if part.startswith(".") or part in IGNORED_NAMES:
            return True
    return False


def iter_project_files(root: Path) -> Iterator[str]:
    """Yield relative POSIX paths of every non-ignored regular file under *root*.

    Sorted per directory so repeated walks are deterministic.
    """
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in IGNORED_NAMES
        )
        rel_dir = Path(dirpath).relative_to(root)
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            rel = (rel_dir / name).as_posix()
            if (root / rel).is_file():
                yield rel


def find_root(start: Path | None = None) -> Path:
    """Find the project root for a ghostpipe run.

    Checks ``GHOSTPIPE_ROOT`` first.  If set, it must be an existing
    directory (no fallback).

    Otherwise walks up from *start* (defaults to cwd) looking for a local
    config file, and falls back to *start* itself when none is found.

    Raises:
        GhostpipeRootError: If ``GHOSTPIPE_ROOT`` is set but invalid.
    """
    env_root = os.environ.get(GHOSTPIPE_ROOT_ENV)
    if env_root is not None:
        if not env_root:
            raise GhostpipeRootError("GHOSTPIPE_ROOT is set but empty")
        env_path = Path(env_root)
        if not env_path.is_dir():
            raise GhostpipeRootError(
                f"GHOSTPIPE_ROOT points to a path that does not exist: {env_root}"
            )
        return env_path.resolve()

    origin = (start or Path.cwd()).resolve()
    current = origin
    while True:
        if any((current / name).is_file() for name in LOCAL_CONFIG_NAMES):
            return current
        parent = current.parent
        if parent == current:
            # Reached filesystem root
            return origin
        current = parent


class GhostpipeRootError(Exception):
    """Raised when GHOSTPIPE_ROOT env var is set but invalid."""
