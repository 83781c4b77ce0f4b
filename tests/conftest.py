"""Shared test fixtures."""

from __future__ import annotations

import json
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from ghostpipe.sync.changes import LOCAL_ORIGIN, MAP_NAMES, MapChange, diff_maps

# ---------------------------------------------------------------------------
# In-memory document
# ---------------------------------------------------------------------------


class FakeTransaction:
    def __init__(self) -> None:
        self.ops: list[tuple[str, str, Any, bool]] = []

    def set(self, map_name: str, key: str, value: Any) -> None:
        self.ops.append((map_name, key, value, False))

    def delete(self, map_name: str, key: str) -> None:
        self.ops.append((map_name, key, None, True))


class FakeDocument:
    """Dict-backed stand-in for ReplicatedDocument.

    Same read/transact/observe surface, no CRDT.  ``writes`` counts
    transactions that changed anything, ``history`` keeps their changes.
    """

    def __init__(self, doc_id: str = "doc") -> None:
        self.doc_id = doc_id
        self.maps: dict[str, dict[str, Any]] = {}
        self.writes = 0
        self.history: list[tuple[str, list[MapChange]]] = []
        self._observers: list[tuple[str | None, Any]] = []

    def to_py(self) -> dict[str, dict[str, Any]]:
        return {name: dict(values) for name, values in self.maps.items()}

    def items(self, map_name: str) -> dict[str, Any]:
        return dict(self.maps.get(map_name, {}))

    def get(self, map_name: str, key: str, default: Any = None) -> Any:
        return self.maps.get(map_name, {}).get(key, default)

    def has(self, map_name: str, key: str) -> bool:
        return key in self.maps.get(map_name, {})

    @contextmanager
    def transact(self, origin: str = LOCAL_ORIGIN):
        tx = FakeTransaction()
        yield tx
        before = self.to_py()
        for map_name, key, value, delete in tx.ops:
            if delete:
                self.maps.get(map_name, {}).pop(key, None)
            else:
                self.maps.setdefault(map_name, {})[key] = value
        changes: list[MapChange] = []
        after = self.to_py()
        for name in MAP_NAMES:
            changes.extend(diff_maps(name, before.get(name, {}), after.get(name, {})))
        if not changes:
            return
        self.writes += 1
        self.history.append((origin, changes))
        for map_name, callback in list(self._observers):
            selected = [c for c in changes if map_name is None or c.map == map_name]
            if selected:
                callback(selected, origin)

    def observe(self, callback, map_name: str | None = None):
        entry = (map_name, callback)
        self._observers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._observers:
                self._observers.remove(entry)

        return _unsubscribe

    def remote_set(self, map_name: str, key: str, value: Any, peer: str = "peer_remote") -> None:
        with self.transact(origin=peer) as tx:
            tx.set(map_name, key, value)

    def remote_delete(self, map_name: str, key: str, peer: str = "peer_remote") -> None:
        with self.transact(origin=peer) as tx:
            tx.delete(map_name, key)


class FakeTransport:
    """Records lifecycle calls instead of opening a websocket."""

    def __init__(self, channel_id: str, endpoints: list[str], document: Any, name: str) -> None:
        self.channel_id = channel_id
        self.endpoints = endpoints
        self.document = document
        self.name = name
        self.started = False
        self.destroyed = False

    def start(self) -> None:
        self.started = True

    def destroy(self) -> None:
        self.destroyed = True


@pytest.fixture()
def fake_document() -> FakeDocument:
    return FakeDocument()


@pytest.fixture()
def make_document():
    """Factory for FakeDocument instances (also usable as a document factory)."""
    return FakeDocument


@pytest.fixture()
def transports() -> list[FakeTransport]:
    """Every FakeTransport built through ``transport_factory``."""
    return []


@pytest.fixture()
def transport_factory(transports: list[FakeTransport]):
    def _factory(channel_id, endpoints, document, name):
        transport = FakeTransport(channel_id, endpoints, document, name)
        transports.append(transport)
        return transport

    return _factory


# ---------------------------------------------------------------------------
# Projects and repositories
# ---------------------------------------------------------------------------


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    """Return an empty project directory."""
    root = tmp_path / "project"
    root.mkdir()
    return root


def git(root: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=root, capture_output=True, text=True, check=True
    )
    return result.stdout


def commit_all(root: Path, message: str = "commit") -> None:
    git(root, "add", "-A")
    git(root, "commit", "-q", "-m", message)


@pytest.fixture()
def git_repo(project: Path) -> Path:
    """Return a project that is a git repository on ``main`` with one commit.

    Tracked files: ``f.txt`` ("base\\n") and ``keep.txt`` ("keep\\n").
    """
    git(project, "init", "-q")
    git(project, "symbolic-ref", "HEAD", "refs/heads/main")
    git(project, "config", "user.email", "test@example.com")
    git(project, "config", "user.name", "Test")
    git(project, "config", "commit.gpgsign", "false")
    (project / "f.txt").write_text("base\n")
    (project / "keep.txt").write_text("keep\n")
    commit_all(project, "initial")
    return project


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@pytest.fixture()
def cli_runner() -> CliRunner:
    """Return a Click CliRunner for invoking CLI commands."""
    return CliRunner()


@pytest.fixture()
def cli_env(project: Path, tmp_path: Path) -> dict[str, str]:
    """Env with GHOSTPIPE_ROOT at the project and HOME away from the real one."""
    home = tmp_path / "home"
    home.mkdir()
    return {"GHOSTPIPE_ROOT": str(project), "HOME": str(home)}


@pytest.fixture()
def invoke(cli_runner: CliRunner, cli_env: dict[str, str]):
    """Return a helper that invokes CLI commands with the right environment.

    Usage::

        result = invoke("diff", "main", "feature")
    """
    from ghostpipe.cli.main import cli

    def _invoke(*args: str, **kwargs):
        return cli_runner.invoke(cli, list(args), env=cli_env, **kwargs)

    return _invoke


@pytest.fixture()
def write_config(project: Path):
    """Write ``ghostpipe.config.json`` into the project.

    Usage::

        write_config({"interfaces": ["https://example.com"]})
    """

    def _write(data: dict) -> Path:
        path = project / "ghostpipe.config.json"
        path.write_text(json.dumps(data))
        return path

    return _write


@pytest.fixture()
def write_global_config(cli_env: dict[str, str]):
    """Write ``~/.config/ghostpipe/config.json`` under the test HOME.

    Keeps config out of the project tree (and out of ``git status``).
    """

    def _write(data: dict) -> Path:
        path = Path(cli_env["HOME"]) / ".config" / "ghostpipe" / "config.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data))
        return path

    return _write


@pytest.fixture()
def run_git():
    """Return ``git(root, *args) -> stdout``."""
    return git


@pytest.fixture()
def commit():
    """Return ``commit(root, message)`` staging everything first."""
    return commit_all
