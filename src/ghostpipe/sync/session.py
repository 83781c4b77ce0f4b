"""Sessions: one document + one transport per configured interface.

In sync mode every session bootstraps its document from disk, then a
:class:`~ghostpipe.sync.bridge.SyncBridge` driven by a whole-tree
:class:`~ghostpipe.storage.watcher.LocalWatcher` keeps both sides in step.

In diff mode a session publishes a :class:`~ghostpipe.diff.snapshot.DiffSnapshot`
instead; with the head branch checked out, a watcher on the changed paths
keeps ``head-files`` live.  Remote edits of a diff session never reach the
disk.

Sessions share nothing with each other: each owns its suppression table
and its debounce timers.
"""

from __future__ import annotations

import logging
import webbrowser
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import quote

from ghostpipe.core.config import DEFAULT_SIGNALING_SERVER, GhostpipeConfig, InterfaceDeclaration
from ghostpipe.core.errors import GhostpipeError
from ghostpipe.core.ids import generate_channel_id, utc_now
from ghostpipe.core.permissions import PermissionRouter
from ghostpipe.diff.git_reader import GitRepository
from ghostpipe.diff.snapshot import DiffSnapshot, DiffSnapshotter
from ghostpipe.storage.watcher import DEFAULT_QUIET_WINDOW, LocalWatcher
from ghostpipe.sync.bridge import DEFAULT_QUIET_WINDOW as BRIDGE_QUIET_WINDOW
from ghostpipe.sync.bridge import SyncBridge
from ghostpipe.sync.changes import META_MAP, METADATA_MAP
from ghostpipe.sync.suppression import SuppressionTable

logger = logging.getLogger(__name__)

DocumentFactory = Callable[[str], Any]  # channel id -> document
TransportFactory = Callable[[str, list[str], Any, str], Any]  # (channel, endpoints, doc, name)


def connection_url(host: str, channel_id: str, signaling: str, *, diff: bool = False) -> str:
    """``<host>?pipe=<id>&signaling=<encoded endpoint>[&mode=diff]``.

    Hosts without a scheme get ``http://``.
    """
    base = host if host.startswith(("http://", "https://")) else f"http://{host}"
    url = f"{base}?pipe={channel_id}&signaling={quote(signaling, safe='')}"
    if diff:
        url += "&mode=diff"
    return url


def default_document_factory(channel_id: str) -> Any:
    try:
        from ghostpipe.sync.documents import ReplicatedDocument
    except ImportError as exc:
        raise GhostpipeError(
            "Syncing requires the automerge package: pip install ghostpipe[sync]"
        ) from exc
    return ReplicatedDocument(channel_id)


def default_transport_factory(
    channel_id: str, endpoints: list[str], document: Any, name: str
) -> Any:
    from ghostpipe.sync.transport import SignalingTransport

    return SignalingTransport(channel_id, endpoints, document, name=name)


@dataclass
class Session:
    """Runtime binding of one interface to one document and one transport."""

    interface: InterfaceDeclaration
    channel_id: str
    url: str
    document: Any
    suppressions: SuppressionTable
    transport: Any = None
    bridge: SyncBridge | None = None
    watcher: LocalWatcher | None = None
    snapshot: DiffSnapshot | None = None

    @property
    def name(self) -> str:
        return self.interface.name


class SessionManager:
    """Create, wire and tear down the sessions of one ghostpipe run.

    Args:
        root: Project root.
        config: Loaded configuration (for the signaling server).
        document_factory: Builds the document for a channel id.
        transport_factory: Builds the transport for a document.
        git: Repository used by diff mode and ``diff_base``.
        quiet_window: Bridge debounce delay.
        watch_window: Watcher coalescing delay.
        open_browser: Called with the url of every ``open`` interface.
    """

    def __init__(
        self,
        root: Path,
        config: GhostpipeConfig,
        *,
        document_factory: DocumentFactory | None = None,
        transport_factory: TransportFactory | None = None,
        git: GitRepository | None = None,
        quiet_window: float = BRIDGE_QUIET_WINDOW,
        watch_window: float = DEFAULT_QUIET_WINDOW,
        open_browser: Callable[[str], Any] = webbrowser.open,
    ) -> None:
        self.root = root
        self.signaling = config.get("signalingServer") or DEFAULT_SIGNALING_SERVER
        self.document_factory = document_factory or default_document_factory
        self.transport_factory = transport_factory or default_transport_factory
        self.git = git
        self.quiet_window = quiet_window
        self.watch_window = watch_window
        self.open_browser = open_browser
        self.sessions: list[Session] = []

    # ------------------------------------------------------------------
    # startup
    # ------------------------------------------------------------------

    def start(
        self,
        interfaces: Iterable[InterfaceDeclaration],
        *,
        diff: tuple[str, str] | None = None,
        diff_base: str | None = None,
    ) -> list[Session]:
        """Start one session per interface.  Must run inside the event loop.

        Args:
            diff: ``(base, head)`` to publish a diff snapshot instead of syncing.
            diff_base: In sync mode, also keep ``base-files``/``head-files``
                against this branch.

        Raises:
            GitError: If diff mode is requested and the repository or a
                ref is unusable.
        """
        started: list[Session] = []
        for interface in interfaces:
            session = self._start_session(interface, diff=diff, diff_base=diff_base)
            started.append(session)
        self._link_manager()

        for session in started:
            if session.interface.auto_open:
                try:
                    self.open_browser(session.url)
                except Exception as exc:
                    logger.warning("[%s] cannot open browser: %s", session.name, exc)
        return started

    def _start_session(
        self,
        interface: InterfaceDeclaration,
        *,
        diff: tuple[str, str] | None,
        diff_base: str | None,
    ) -> Session:
        channel_id = generate_channel_id()
        document = self.document_factory(channel_id)
        session = Session(
            interface=interface,
            channel_id=channel_id,
            url=connection_url(interface.host, channel_id, self.signaling, diff=diff is not None),
            document=document,
            suppressions=SuppressionTable(),
        )
        # Registered before any fallible step so shutdown() can clean up.
        self.sessions.append(session)
        logger.debug("[%s] pipe created: %s", interface.name, channel_id)

        with document.transact() as tx:
            tx.set(METADATA_MAP, "created", utc_now())
            tx.set(METADATA_MAP, "cwd", str(self.root))

        router = PermissionRouter.for_interface(interface)
        if diff is not None:
            self._start_diff(session, router, diff)
        else:
            self._start_sync(session, router, diff_base)

        session.transport = self.transport_factory(
            channel_id, [self.signaling], document, interface.name
        )
        session.transport.start()
        return session

    def _start_sync(self, session: Session, router: PermissionRouter, diff_base: str | None) -> None:
        git = self.git if diff_base else None
        if git is not None:
            with session.document.transact() as tx:
                tx.set(META_MAP, "base-branch", diff_base)
                tx.set(META_MAP, "head-branch", git.current_branch() or "")

        bridge = SyncBridge(
            session.name,
            session.document,
            router,
            self.root,
            session.suppressions,
            quiet_window=self.quiet_window,
            git=git,
            diff_base=diff_base,
        )
        bridge.bootstrap()
        bridge.attach()
        session.bridge = bridge

        watcher = LocalWatcher(
            self.root, bridge.on_local_event, quiet_window=self.watch_window, name=session.name
        )
        watcher.start()
        session.watcher = watcher

    def _start_diff(
        self, session: Session, router: PermissionRouter, diff: tuple[str, str]
    ) -> None:
        if self.git is None:
            self.git = GitRepository(self.root)
        snapshotter = DiffSnapshotter(self.git, self.root, router, name=session.name)
        snap = snapshotter.snapshot(*diff)
        snapshotter.publish(snap, session.document)
        session.snapshot = snap
        if snap.empty:
            logger.info("[%s] no files changed between branches", session.name)

        if snap.is_working_directory and snap.changed_files:

            def _refresh(path: str, kind: str) -> None:
                snapshotter.refresh_head(snap, session.document, path)

            watcher = LocalWatcher(
                self.root,
                _refresh,
                paths=snap.changed_files,
                quiet_window=self.watch_window,
                name=session.name,
            )
            watcher.start()
            session.watcher = watcher

    def _link_manager(self) -> None:
        managers = [s for s in self.sessions if s.interface.manager]
        if not managers:
            return
        manager = managers[0]
        links = {s.name: s.url for s in self.sessions if s is not manager}
        with manager.document.transact() as tx:
            tx.set(METADATA_MAP, "interfaces", links)

    # ------------------------------------------------------------------
    # shutdown
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Stop watchers, then bridges, then transports.  Never raises."""
        for session in self.sessions:
            if session.watcher is not None:
                try:
                    session.watcher.stop()
                except Exception:
                    logger.exception("[%s] error stopping watcher", session.name)
        for session in self.sessions:
            if session.bridge is not None:
                try:
                    session.bridge.close()
                except Exception:
                    logger.exception("[%s] error closing bridge", session.name)
        for session in self.sessions:
            if session.transport is not None:
                try:
                    session.transport.destroy()
                except Exception:
                    logger.exception("[%s] error closing transport", session.name)

    async def wait_closed(self) -> None:
        """Let cancelled transports finish closing their connections."""
        for session in self.sessions:
            waiter = getattr(session.transport, "wait_closed", None)
            if waiter is None:
                continue
            try:
                await waiter()
            except Exception:
                logger.exception("[%s] error closing transport", session.name)
