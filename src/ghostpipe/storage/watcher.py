"""Debounced local filesystem events, backed by watchdog.

watchdog delivers raw events on its observer thread.  They are handed to
the asyncio loop with ``call_soon_threadsafe`` and coalesced per path, so
the handler always runs on the loop and sees at most one event per path
per quiet window.

The reported kind is decided when the window closes, from what is on disk
at that moment:

* exists, previously unknown -> ``added``
* exists, previously known   -> ``changed``
* missing                    -> ``removed``

so an editor's write-temp-then-rename save collapses into one ``changed``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ghostpipe.core.debounce import KeyedDebouncer
from ghostpipe.storage.fs import is_ignored, iter_project_files

logger = logging.getLogger(__name__)

ADDED = "added"
CHANGED = "changed"
REMOVED = "removed"

DEFAULT_QUIET_WINDOW = 0.1  # seconds

LocalEventHandler = Callable[[str, str], None]  # (path, kind)


class _ObserverHandler(FileSystemEventHandler):
    """Forward raw watchdog events to the owning watcher (observer thread)."""

    def __init__(self, watcher: LocalWatcher) -> None:
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        self.watcher._threadsafe_raw(_as_str(event.src_path))
        dest = getattr(event, "dest_path", "")
        if dest:
            self.watcher._threadsafe_raw(_as_str(dest))


def _as_str(path: str | bytes) -> str:
    return path.decode() if isinstance(path, bytes) else path


class LocalWatcher:
    """Watch a project tree (or a set of registered files) for changes.

    Args:
        root: Project root; every reported path is relative to it.
        handler: Called as ``handler(path, kind)`` on the event loop.
        paths: If given, only these relative paths are reported (their
            parent directories are watched).  If ``None`` the whole tree is
            watched recursively, ignoring hidden and build directories.
        quiet_window: Seconds of silence before a path's event is emitted.
        name: Interface name used in log lines.
    """

    def __init__(
        self,
        root: Path,
        handler: LocalEventHandler,
        *,
        paths: Iterable[str] | None = None,
        quiet_window: float = DEFAULT_QUIET_WINDOW,
        name: str = "watcher",
    ) -> None:
        self.root = root.resolve()
        self.handler = handler
        self.name = name
        self._registered: set[str] | None = set(paths) if paths is not None else None
        self._debouncer = KeyedDebouncer(quiet_window)
        self._known: set[str] = set()
        self._watched_dirs: set[Path] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer: Observer | None = None
        self._event_handler = _ObserverHandler(self)

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Start the observer.  Must be called from the running event loop."""
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._observer = Observer()

        if self._registered is None:
            self._known.update(iter_project_files(self.root))
            self._schedule(self.root, recursive=True)
        else:
            for rel in sorted(self._registered):
                self._arm(rel)

        self._observer.start()
        logger.debug("[%s] watching %s", self.name, self.root)

    def stop(self) -> None:
        """Stop the observer and drop pending events."""
        self._debouncer.cancel_all()
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)
        self._watched_dirs.clear()
        logger.debug("[%s] watcher stopped", self.name)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _arm(self, rel_path: str) -> None:
        if (self.root / rel_path).is_file():
            self._known.add(rel_path)
        directory = (self.root / rel_path).parent
        # A file may sit in a directory that does not exist yet; watch the
        # nearest existing ancestor recursively so its creation is seen.
        recursive = False
        while not directory.is_dir() and directory != self.root:
            directory = directory.parent
            recursive = True
        self._schedule(directory, recursive=recursive)

    def _schedule(self, directory: Path, *, recursive: bool) -> None:
        if directory in self._watched_dirs or self._observer is None:
            return
        try:
            self._observer.schedule(self._event_handler, str(directory), recursive=recursive)
        except OSError as exc:
            logger.warning("[%s] cannot watch %s: %s", self.name, directory, exc)
            return
        self._watched_dirs.add(directory)

    def _threadsafe_raw(self, abs_path: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._on_raw_event, abs_path)
        except RuntimeError:
            # Loop shut down between the check and the call.
            pass

    def _relative(self, abs_path: str) -> str | None:
        try:
            return Path(abs_path).resolve().relative_to(self.root).as_posix()
        except ValueError:
            return None

    def _on_raw_event(self, abs_path: str) -> None:
        rel = self._relative(abs_path)
        if not rel or rel == ".":
            return
        if self._registered is not None:
            if rel not in self._registered:
                return
        elif is_ignored(rel):
            return
        self._debouncer.schedule(rel, self._emit, rel)

    def _emit(self, rel: str) -> None:
        if (self.root / rel).is_file():
            kind = CHANGED if rel in self._known else ADDED
            self._known.add(rel)
        else:
            if rel not in self._known:
                return
            kind = REMOVED
            self._known.discard(rel)
        logger.debug("[%s] local %s: %s", self.name, kind, rel)
        self.handler(rel, kind)
