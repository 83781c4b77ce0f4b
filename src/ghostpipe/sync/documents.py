"""Named key/value maps on top of one Automerge document.

Every session owns one document holding a handful of top-level maps
(``files``, ``base-files``, ``head-files``, ``metadata`` ...).  String
values are stored as collaborative Text; merging concurrent edits is
entirely Automerge's business.

Automerge has no change observers, so this wrapper snapshots the maps
around every local transaction and every applied sync message, diffs them
key by key, and notifies observers together with the change's origin:
``LOCAL_ORIGIN`` for transactions made here, the sending peer's id for
changes received over the wire.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from automerge import Document, core

from ghostpipe.sync.changes import (
    LOCAL_ORIGIN,
    MAP_NAMES,
    ChangeObserver,
    MapChange,
    diff_maps,
)

logger = logging.getLogger(__name__)

_DELETE = object()


class Transaction:
    """Operations collected inside :meth:`ReplicatedDocument.transact`."""

    def __init__(self) -> None:
        self.ops: list[tuple[str, str, Any]] = []

    def set(self, map_name: str, key: str, value: Any) -> None:
        self.ops.append((map_name, key, value))

    def delete(self, map_name: str, key: str) -> None:
        self.ops.append((map_name, key, _DELETE))


class ReplicatedDocument:
    """One Automerge document exposed as named maps with observers."""

    def __init__(self, doc_id: str, doc: Document | None = None) -> None:
        self.doc_id = doc_id
        self._doc = doc if doc is not None else Document()
        self._observers: list[tuple[str | None, ChangeObserver]] = []

    @classmethod
    def load(cls, doc_id: str, data: bytes) -> ReplicatedDocument:
        """Rebuild a document from :meth:`save` output."""
        return cls(doc_id, _wrap_core_doc(core.Document.load(data)))

    def save(self) -> bytes:
        return self._doc._doc.save()

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def to_py(self) -> dict[str, dict[str, Any]]:
        """Plain-Python snapshot of every known map."""
        data = self._doc.to_py()
        state: dict[str, dict[str, Any]] = {}
        for name in MAP_NAMES:
            value = data.get(name)
            if isinstance(value, dict):
                state[name] = _plain(value)
        return state

    def items(self, map_name: str) -> dict[str, Any]:
        return self.to_py().get(map_name, {})

    def get(self, map_name: str, key: str, default: Any = None) -> Any:
        return self.items(map_name).get(key, default)

    def has(self, map_name: str, key: str) -> bool:
        return key in self.items(map_name)

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    @contextmanager
    def transact(self, origin: str = LOCAL_ORIGIN) -> Iterator[Transaction]:
        """Batch writes into a single Automerge change.

        Usage::

            with doc.transact() as tx:
                tx.set("files", "api.yml", content)
                tx.delete("files", "old.yml")

        Nothing is written if the block raises.
        """
        tx = Transaction()
        yield tx
        if not tx.ops:
            return

        before = self.to_py()
        with self._doc.change() as d:
            live: dict[str, set[str]] = {name: set(keys) for name, keys in before.items()}
            for map_name, key, value in tx.ops:
                if value is _DELETE:
                    if key in live.get(map_name, ()):
                        del d[map_name][key]
                        live[map_name].discard(key)
                    continue
                if map_name not in live:
                    d[map_name] = {}
                    live[map_name] = set()
                d[map_name][key] = _to_automerge(value)
                live[map_name].add(key)
        self._dispatch(before, self.to_py(), origin)

    # ------------------------------------------------------------------
    # observers
    # ------------------------------------------------------------------

    def observe(self, callback: ChangeObserver, map_name: str | None = None) -> Callable[[], None]:
        """Call ``callback(changes, origin)`` after every change.

        Restrict to one map with *map_name*.  Returns an unsubscribe function.
        """
        entry = (map_name, callback)
        self._observers.append(entry)

        def _unsubscribe() -> None:
            try:
                self._observers.remove(entry)
            except ValueError:
                pass

        return _unsubscribe

    def _dispatch(self, before: dict, after: dict, origin: str) -> None:
        changes: list[MapChange] = []
        for name in MAP_NAMES:
            changes.extend(diff_maps(name, before.get(name, {}), after.get(name, {})))
        if not changes:
            return
        for map_name, callback in list(self._observers):
            selected = changes if map_name is None else [c for c in changes if c.map == map_name]
            if not selected:
                continue
            try:
                callback(selected, origin)
            except Exception:
                logger.exception("document observer failed (%s)", self.doc_id)

    # ------------------------------------------------------------------
    # Automerge sync protocol
    # ------------------------------------------------------------------

    @staticmethod
    def new_sync_state() -> core.SyncState:
        return core.SyncState()

    def generate_sync_message(self, sync_state: core.SyncState) -> bytes | None:
        """Next message for a peer, or ``None`` when it is up to date."""
        msg = self._doc._doc.generate_sync_message(sync_state)
        if msg is None:
            return None
        return msg.encode()

    def receive_sync_message(self, peer_id: str, sync_state: core.SyncState, data: bytes) -> None:
        """Apply a peer's sync message; observers see the change with origin *peer_id*."""
        before = self.to_py()
        self._doc._doc.receive_sync_message(sync_state, core.Message.decode(data))
        self._dispatch(before, self.to_py(), peer_id)

    def merge(self, other: ReplicatedDocument, origin: str) -> None:
        """Merge a full remote document (e.g. a saved snapshot from a peer)."""
        before = self.to_py()
        self._doc._doc.merge(other._doc._doc)
        self._dispatch(before, self.to_py(), origin)


def _to_automerge(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_to_automerge(v) for v in value]
    if isinstance(value, list):
        return [_to_automerge(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _to_automerge(v) for k, v in value.items()}
    return value


def _plain(value: Any) -> Any:
    """Convert ``to_py()`` output (Text, nested proxies) into plain Python."""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, (bool, int, float)) or value is None:
        return value
    return str(value)


def _wrap_core_doc(core_doc: core.Document) -> Document:
    """Wrap a core.Document in the high-level Document class."""
    doc = Document.__new__(Document)
    doc._doc = core_doc
    # Initialize the MapReadProxy base class
    from automerge.document import MapReadProxy

    MapReadProxy.__init__(doc, core_doc, core.ROOT, None)
    return doc
