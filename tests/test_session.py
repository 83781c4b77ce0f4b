"""Tests for sync/session.py: session wiring, urls, metadata and shutdown."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from ghostpipe.core.config import InterfaceDeclaration
from ghostpipe.core.errors import GitError
from ghostpipe.diff.git_reader import GitRepository
from ghostpipe.sync.changes import (
    BASE_FILES_MAP,
    FILES_MAP,
    HEAD_FILES_MAP,
    META_MAP,
    METADATA_MAP,
)
from ghostpipe.sync.session import SessionManager, connection_url

QUIET = 0.01


def _interface(name: str = "app", host: str = "https://app.example", **kwargs) -> InterfaceDeclaration:
    kwargs.setdefault("files", ("** rw",))
    return InterfaceDeclaration(name=name, host=host, **kwargs)


@pytest.fixture()
def make_manager(make_document, transport_factory):
    def _make(root: Path, config: dict | None = None, **kwargs) -> SessionManager:
        kwargs.setdefault("quiet_window", QUIET)
        kwargs.setdefault("watch_window", QUIET)
        kwargs.setdefault("open_browser", lambda url: None)
        return SessionManager(
            root,
            config or {},
            document_factory=make_document,
            transport_factory=transport_factory,
            **kwargs,
        )

    return _make


def _run(manager: SessionManager, interfaces, **kwargs):
    """Start sessions inside a loop, hand them back, and shut down."""

    async def scenario():
        try:
            return manager.start(interfaces, **kwargs)
        finally:
            manager.shutdown()
            await manager.wait_closed()

    return asyncio.run(scenario())


class TestConnectionUrl:
    def test_format(self) -> None:
        url = connection_url("https://app.example", "a" * 32, "wss://signal.example")
        assert url == (
            "https://app.example?pipe=" + "a" * 32 + "&signaling=wss%3A%2F%2Fsignal.example"
        )

    def test_host_without_scheme_gets_http(self) -> None:
        assert connection_url("localhost:3000", "x", "wss://s").startswith(
            "http://localhost:3000?pipe=x&"
        )

    def test_diff_mode(self) -> None:
        assert connection_url("https://a", "x", "wss://s", diff=True).endswith("&mode=diff")


class TestSyncSessions:
    def test_one_session_per_interface(self, project: Path, make_manager, transports) -> None:
        manager = make_manager(project, {"signalingServer": "wss://signal.example"})
        sessions = _run(manager, [_interface("a"), _interface("b")])

        assert [s.name for s in sessions] == ["a", "b"]
        assert len({s.channel_id for s in sessions}) == 2
        assert [t.name for t in transports] == ["a", "b"]
        assert all(t.started and t.destroyed for t in transports)
        assert transports[0].endpoints == ["wss://signal.example"]
        assert "signaling=wss%3A%2F%2Fsignal.example" in sessions[0].url
        assert sessions[0].channel_id in sessions[0].url

    def test_default_signaling_server(self, project: Path, make_manager, transports) -> None:
        from ghostpipe.core.config import DEFAULT_SIGNALING_SERVER

        _run(make_manager(project), [_interface()])
        assert transports[0].endpoints == [DEFAULT_SIGNALING_SERVER]

    def test_metadata_and_bootstrap(self, project: Path, make_manager) -> None:
        (project / "a.txt").write_text("hello")
        (project / "secret.env").write_text("x")
        sessions = _run(
            make_manager(project),
            [_interface(files=("*.txt rw",))],
        )
        doc = sessions[0].document

        assert doc.get(METADATA_MAP, "cwd") == str(project)
        assert doc.get(METADATA_MAP, "created").endswith("Z")
        assert doc.items(FILES_MAP) == {"a.txt": "hello"}

    def test_documents_are_isolated(self, project: Path, make_manager) -> None:
        (project / "a.txt").write_text("A")
        (project / "b.txt").write_text("B")
        sessions = _run(
            make_manager(project),
            [_interface("one", files=("a.txt rw",)), _interface("two", files=("b.txt r",))],
        )
        assert sessions[0].document.items(FILES_MAP) == {"a.txt": "A"}
        assert sessions[1].document.items(FILES_MAP) == {"b.txt": "B"}
        assert sessions[0].suppressions is not sessions[1].suppressions

    def test_remote_edit_reaches_disk(self, project: Path, make_manager) -> None:
        (project / "a.txt").write_text("old")
        manager = make_manager(project)

        async def scenario() -> None:
            try:
                [session] = manager.start([_interface()])
                session.document.remote_set(FILES_MAP, "a.txt", "new")
                await asyncio.sleep(QUIET * 10)
            finally:
                manager.shutdown()
                await manager.wait_closed()

        asyncio.run(scenario())
        assert (project / "a.txt").read_text() == "new"

    def test_manager_gets_links_to_other_interfaces(self, project: Path, make_manager) -> None:
        sessions = _run(
            make_manager(project),
            [_interface("hub", manager=True), _interface("a"), _interface("b")],
        )
        hub, a, b = sessions
        assert hub.document.get(METADATA_MAP, "interfaces") == {"a": a.url, "b": b.url}
        assert a.document.get(METADATA_MAP, "interfaces") is None

    def test_auto_open(self, project: Path, make_manager) -> None:
        opened: list[str] = []
        sessions = _run(
            make_manager(project, open_browser=opened.append),
            [_interface("a", auto_open=True), _interface("b")],
        )
        assert opened == [sessions[0].url]

    def test_browser_failure_is_not_fatal(self, project: Path, make_manager) -> None:
        def broken(url: str) -> None:
            raise OSError("no browser")

        sessions = _run(make_manager(project, open_browser=broken), [_interface(auto_open=True)])
        assert len(sessions) == 1

    def test_diff_base_fills_meta_and_diff_maps(
        self, git_repo: Path, make_manager
    ) -> None:
        (git_repo / "f.txt").write_text("edited\n")
        manager = make_manager(git_repo, git=GitRepository(git_repo))
        [session] = _run(manager, [_interface(files=("*.txt rw",))], diff_base="main")
        doc = session.document

        assert doc.get(META_MAP, "base-branch") == "main"
        assert doc.get(META_MAP, "head-branch") == "main"
        assert doc.get(BASE_FILES_MAP, "f.txt") == "base\n"
        assert doc.get(HEAD_FILES_MAP, "f.txt") == "edited\n"


class TestDiffSessions:
    def test_working_directory_snapshot(self, git_repo: Path, make_manager) -> None:
        (git_repo / "f.txt").write_text("changed\n")
        (git_repo / "new.txt").write_text("fresh\n")
        manager = make_manager(git_repo)
        [session] = _run(manager, [_interface()], diff=("main", "main"))
        doc = session.document

        assert session.url.endswith("&mode=diff")
        assert doc.items(BASE_FILES_MAP) == {"f.txt": "base\n", "new.txt": ""}
        assert doc.items(HEAD_FILES_MAP) == {"f.txt": "changed\n", "new.txt": "fresh\n"}
        assert doc.get(METADATA_MAP, "mode") == "diff"
        assert doc.get(METADATA_MAP, "includesWorkingDirectory") is True
        assert doc.get(METADATA_MAP, "changedFiles") == ["f.txt", "new.txt"]
        assert doc.items(FILES_MAP) == {}
        assert session.watcher is not None

    def test_remote_edits_never_reach_disk(self, git_repo: Path, make_manager) -> None:
        (git_repo / "f.txt").write_text("changed\n")
        manager = make_manager(git_repo)

        async def scenario() -> None:
            try:
                [session] = manager.start([_interface()], diff=("main", "main"))
                session.document.remote_set(FILES_MAP, "f.txt", "remote")
                session.document.remote_set(HEAD_FILES_MAP, "f.txt", "remote")
                await asyncio.sleep(QUIET * 10)
            finally:
                manager.shutdown()
                await manager.wait_closed()

        asyncio.run(scenario())
        assert (git_repo / "f.txt").read_text() == "changed\n"

    def test_unknown_branch_raises_and_cleans_up(
        self, git_repo: Path, make_manager, transports
    ) -> None:
        manager = make_manager(git_repo)
        with pytest.raises(GitError, match="does not exist"):
            _run(manager, [_interface()], diff=("nope", "main"))
        assert len(manager.sessions) == 1
        assert transports == []


class TestShutdown:
    def test_errors_are_logged_not_raised(
        self, project: Path, make_manager, transports, caplog: pytest.LogCaptureFixture
    ) -> None:
        manager = make_manager(project)

        async def scenario() -> None:
            manager.start([_interface("a"), _interface("b")])

            def explode() -> None:
                raise RuntimeError("boom")

            transports[0].destroy = explode
            manager.shutdown()
            await manager.wait_closed()

        asyncio.run(scenario())
        assert transports[1].destroyed
        assert "error closing transport" in caplog.text
        assert all(not s.watcher.running for s in manager.sessions)
