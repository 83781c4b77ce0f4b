"""Two-way reconciliation between project files and one replicated document.

Local -> remote: the watcher reports a path, the bridge waits for the quiet
window, reads the disk and writes the content into the document if the
interface may read the path and the value actually differs.

Remote -> local: document observers report key changes from a peer, the
bridge waits for the quiet window, and writes (or removes) the file if the
interface may write the path and the disk actually differs.

Every remote-triggered disk write leaves a fingerprint in the session's
:class:`SuppressionTable`, so the watcher event caused by that very write
is recognised and dropped instead of being bounced back to the document.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from ghostpipe.core.debounce import KeyedDebouncer
from ghostpipe.core.errors import PermissionDenied
from ghostpipe.core.ids import fingerprint
from ghostpipe.core.permissions import WRITE, PermissionRouter
from ghostpipe.storage.fs import (
    UnreadableFileError,
    atomic_write,
    iter_project_files,
    read_text,
    remove_file,
)
from ghostpipe.sync.changes import (
    BASE_FILES_MAP,
    HEAD_FILES_MAP,
    ChangeObserver,
    MapChange,
    is_local_origin,
)
from ghostpipe.sync.suppression import SuppressionTable

if TYPE_CHECKING:
    from contextlib import AbstractContextManager

    from ghostpipe.diff.git_reader import GitRepository

logger = logging.getLogger(__name__)

DEFAULT_QUIET_WINDOW = 0.3  # seconds


class DocumentLike(Protocol):
    """The slice of :class:`~ghostpipe.sync.documents.ReplicatedDocument` the bridge uses."""

    doc_id: str

    def get(self, map_name: str, key: str, default: Any = None) -> Any: ...

    def has(self, map_name: str, key: str) -> bool: ...

    def transact(self, origin: str = ...) -> AbstractContextManager[Any]: ...

    def observe(self, callback: ChangeObserver, map_name: str | None = None) -> Any: ...


class SyncBridge:
    """Reconcile one interface's document with the files under *root*.

    Args:
        name: Interface name, used in log lines.
        document: The session's replicated document.
        router: Permissions of the interface.
        root: Project root; document keys are relative to it.
        suppressions: The session's echo-suppression table.
        quiet_window: Debounce delay for both directions.
        git: Repository used to read ``diff_base`` content.
        diff_base: When set, ``base-files``/``head-files`` are kept next to
            ``files`` for every synced path.
    """

    def __init__(
        self,
        name: str,
        document: DocumentLike,
        router: PermissionRouter,
        root: Path,
        suppressions: SuppressionTable,
        *,
        quiet_window: float = DEFAULT_QUIET_WINDOW,
        git: GitRepository | None = None,
        diff_base: str | None = None,
    ) -> None:
        self.name = name
        self.document = document
        self.router = router
        self.root = root
        self.suppressions = suppressions
        self.git = git
        self.diff_base = diff_base if git is not None else None
        self._local_timers = KeyedDebouncer(quiet_window)
        self._remote_timers = KeyedDebouncer(quiet_window)
        self._unsubscribe: Any = None

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def bootstrap(self) -> int:
        """Load every readable file into the document in one transaction.

        Returns the number of files loaded.
        """
        paths = set(iter_project_files(self.root))
        # Mapped single files may live where the tree walk does not look.
        for rule in self.router.rules:
            if rule.is_mapped and (self.root / rule.pattern).is_file():
                paths.add(rule.pattern)

        loaded = 0
        with self.document.transact() as tx:
            for path in sorted(paths):
                if not self.router.can_read(path):
                    continue
                content = self._read_disk(path)
                if content is None:
                    continue
                map_name, key = self.router.document_key(path)
                tx.set(map_name, key, content)
                self._set_diff_maps(tx, path, key, content)
                loaded += 1
        logger.debug("[%s] loaded %d file(s) into the document", self.name, loaded)
        return loaded

    def attach(self) -> None:
        """Start listening for document changes."""
        if self._unsubscribe is None:
            self._unsubscribe = self.document.observe(self.on_document_change)

    def close(self) -> None:
        """Cancel pending timers and stop listening.  Pending work is dropped."""
        self._local_timers.cancel_all()
        self._remote_timers.cancel_all()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ------------------------------------------------------------------
    # local -> remote
    # ------------------------------------------------------------------

    def on_local_event(self, path: str, kind: str) -> None:
        """Watcher callback; the kind is re-derived from disk when the timer fires."""
        logger.debug("[%s] local %s queued: %s", self.name, kind, path)
        self._local_timers.schedule(path, self._flush_local, path)

    def _flush_local(self, path: str) -> None:
        try:
            content = read_text(self.root / path)
        except UnreadableFileError:
            logger.debug("[%s] skipping non-text file %s", self.name, path)
            return
        except OSError as exc:
            logger.warning("[%s] cannot read %s: %s", self.name, path, exc)
            return

        if self.suppressions.consume(self.document.doc_id, path, fingerprint(content)):
            logger.debug("[%s] ignoring echo of our own write: %s", self.name, path)
            return

        if not self.router.can_read(path):
            logger.debug("[%s] no read permission for %s", self.name, path)
            return

        map_name, key = self.router.document_key(path)
        current = self.document.get(map_name, key)

        if content is None:
            if not self.document.has(map_name, key):
                return
            with self.document.transact() as tx:
                tx.delete(map_name, key)
                if self.diff_base is not None:
                    tx.delete(BASE_FILES_MAP, key)
                    tx.delete(HEAD_FILES_MAP, key)
            logger.info("[%s] removed %s from the document", self.name, path)
            return

        if content == current:
            return
        with self.document.transact() as tx:
            tx.set(map_name, key, content)
            self._set_diff_maps(tx, path, key, content)
        logger.info("[%s] sent %s", self.name, path)

    def _set_diff_maps(self, tx: Any, path: str, key: str, content: str) -> None:
        if self.diff_base is None or self.git is None:
            return
        base = self.git.read_at_ref(self.diff_base, path)
        tx.set(BASE_FILES_MAP, key, base if base is not None else "")
        tx.set(HEAD_FILES_MAP, key, content)

    def _read_disk(self, path: str) -> str | None:
        try:
            return read_text(self.root / path)
        except UnreadableFileError:
            logger.debug("[%s] skipping non-text file %s", self.name, path)
        except OSError as exc:
            logger.warning("[%s] cannot read %s: %s", self.name, path, exc)
        return None

    # ------------------------------------------------------------------
    # remote -> local
    # ------------------------------------------------------------------

    def on_document_change(self, changes: list[MapChange], origin: str) -> None:
        """Document observer; only changes made by remote peers reach the disk."""
        if is_local_origin(origin):
            return
        for change in changes:
            path = self.router.path_for_key(change.map, change.key)
            if path is None:
                logger.debug(
                    "[%s] %s:%s maps to no local file", self.name, change.map, change.key
                )
                continue
            try:
                self.router.require(path, WRITE)
            except PermissionDenied as exc:
                logger.info("[%s] not saved: %s", self.name, exc)
                continue
            self._remote_timers.schedule(
                path, self._flush_remote, path, change.map, change.key
            )

    def _flush_remote(self, path: str, map_name: str, key: str) -> None:
        value = self.document.get(map_name, key)
        if value is not None and not isinstance(value, str):
            logger.warning("[%s] %s:%s is not text, not saved", self.name, map_name, key)
            return

        target = self.root / path
        try:
            disk = read_text(target)
        except OSError as exc:
            logger.warning("[%s] cannot read %s: %s", self.name, path, exc)
            return
        if disk == value:
            return

        try:
            if value is None:
                remove_file(target)
            else:
                atomic_write(target, value, make_parents=True)
        except OSError as exc:
            logger.warning("[%s] cannot write %s: %s", self.name, path, exc)
            return
        self.suppressions.record(self.document.doc_id, path, fingerprint(value))
        logger.info("[%s] %s %s", self.name, "deleted" if value is None else "saved", path)

        # The echo of this write is suppressed, so head-files is refreshed here.
        if self.diff_base is not None:
            with self.document.transact() as tx:
                if value is None:
                    tx.delete(BASE_FILES_MAP, key)
                    tx.delete(HEAD_FILES_MAP, key)
                else:
                    self._set_diff_maps(tx, path, key, value)

    # ------------------------------------------------------------------
    # introspection (tests, shutdown)
    # ------------------------------------------------------------------

    @property
    def pending(self) -> int:
        return len(self._local_timers) + len(self._remote_timers)
