"""Tests for atomic writes, tolerant reads, tree walking and root discovery."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from ghostpipe.storage.fs import (
    GHOSTPIPE_ROOT_ENV,
    GhostpipeRootError,
    UnreadableFileError,
    atomic_write,
    find_root,
    is_ignored,
    iter_project_files,
    read_text,
    remove_file,
)


class TestAtomicWrite:
    """atomic_write() writes content safely via temp + fsync + rename."""

    def test_writes_expected_content(self, tmp_path: Path) -> None:
        target = tmp_path / "api.yml"
        atomic_write(target, "openapi: 3.0\n")

        assert target.read_text() == "openapi: 3.0\n"

    def test_no_temp_file_left_after_success(self, tmp_path: Path) -> None:
        target = tmp_path / "api.yml"
        atomic_write(target, "content\n")

        assert list(tmp_path.iterdir()) == [target]

    def test_parent_directory_must_exist(self, tmp_path: Path) -> None:
        target = tmp_path / "nonexistent" / "api.yml"

        with pytest.raises(FileNotFoundError, match="Parent directory does not exist"):
            atomic_write(target, "content\n")

    def test_make_parents(self, tmp_path: Path) -> None:
        target = tmp_path / "a" / "b" / "api.yml"
        atomic_write(target, "x", make_parents=True)

        assert target.read_text() == "x"

    def test_preserves_mode_of_existing_file(self, tmp_path: Path) -> None:
        target = tmp_path / "run.sh"
        target.write_text("echo old\n")
        target.chmod(0o755)

        atomic_write(target, "echo new\n")

        assert target.stat().st_mode & 0o777 == 0o755

    def test_handles_short_writes(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """os.write() can return fewer bytes than requested; atomic_write must loop."""
        target = tmp_path / "output.bin"
        payload = b"ABCDEFGHIJ"

        real_write = os.write
        call_count = 0

        def short_write(fd: int, data: bytes | memoryview) -> int:
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                n = max(1, len(data) // 2)
                return real_write(fd, bytes(data[:n]))
            return real_write(fd, bytes(data))

        monkeypatch.setattr(os, "write", short_write)
        atomic_write(target, payload)

        assert target.read_bytes() == payload
        assert call_count >= 2

    def test_fsyncs_parent_directory(self, tmp_path: Path) -> None:
        target = tmp_path / "api.yml"
        with patch("ghostpipe.storage.fs._fsync_directory") as mock_fsync:
            atomic_write(target, "content\n")
        mock_fsync.assert_called_once_with(tmp_path)


class TestReadText:
    def test_missing_file_is_none(self, tmp_path: Path) -> None:
        assert read_text(tmp_path / "missing.txt") is None

    def test_directory_is_none(self, tmp_path: Path) -> None:
        assert read_text(tmp_path) is None

    def test_reads_utf8(self, tmp_path: Path) -> None:
        (tmp_path / "a.txt").write_text("héllo", encoding="utf-8")
        assert read_text(tmp_path / "a.txt") == "héllo"

    def test_binary_raises(self, tmp_path: Path) -> None:
        (tmp_path / "img.png").write_bytes(b"\x89PNG\xff\xfe\x00")
        with pytest.raises(UnreadableFileError):
            read_text(tmp_path / "img.png")


class TestRemoveFile:
    def test_removes(self, tmp_path: Path) -> None:
        target = tmp_path / "a.txt"
        target.write_text("x")
        assert remove_file(target) is True
        assert not target.exists()

    def test_missing_is_false(self, tmp_path: Path) -> None:
        assert remove_file(tmp_path / "a.txt") is False


class TestIgnored:
    @pytest.mark.parametrize(
        "path",
        [
            ".git/config",
            "node_modules/pkg/index.js",
            "src/dist/out.js",
            "build/x",
            "pkg/__pycache__/m.pyc",
            ".env",
            "src/.tmp.abc123",
        ],
    )
    def test_ignored(self, path: str) -> None:
        assert is_ignored(path)

    @pytest.mark.parametrize("path", ["api.yml", "src/lib/a.ts", "./notes.md", "distribution/a"])
    def test_not_ignored(self, path: str) -> None:
        assert not is_ignored(path)

    def test_iter_project_files_skips_ignored(self, tmp_path: Path) -> None:
        for rel in ["a.txt", "src/b.ts", "node_modules/x.js", ".git/HEAD", ".hidden", "dist/c.js"]:
            path = tmp_path / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("x")

        assert list(iter_project_files(tmp_path)) == ["a.txt", "src/b.ts"]


class TestFindRoot:
    def test_env_var_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(GHOSTPIPE_ROOT_ENV, str(tmp_path))
        assert find_root(tmp_path / "elsewhere") == tmp_path.resolve()

    def test_env_var_must_exist(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(GHOSTPIPE_ROOT_ENV, str(tmp_path / "missing"))
        with pytest.raises(GhostpipeRootError, match="does not exist"):
            find_root()

    def test_empty_env_var(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(GHOSTPIPE_ROOT_ENV, "")
        with pytest.raises(GhostpipeRootError, match="empty"):
            find_root()

    def test_walks_up_to_local_config(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(GHOSTPIPE_ROOT_ENV, raising=False)
        (tmp_path / "ghostpipe.config.json").write_text("{}")
        nested = tmp_path / "src" / "lib"
        nested.mkdir(parents=True)

        assert find_root(nested) == tmp_path.resolve()

    def test_falls_back_to_start(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(GHOSTPIPE_ROOT_ENV, raising=False)
        start = tmp_path / "plain"
        start.mkdir()

        monkeypatch.setattr(
            "ghostpipe.storage.fs.LOCAL_CONFIG_NAMES", ("ghostpipe-test-nowhere.json",)
        )

        assert find_root(start) == start.resolve()
