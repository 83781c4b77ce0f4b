"""Read-only git queries for diff mode.

Shells out to the ``git`` CLI via :mod:`subprocess`; no Python git
dependencies.  Repository-level failures (not a repository, unknown ref,
a failing diff) raise :class:`~ghostpipe.core.errors.GitError`.  A file
that does not exist at some revision is not an error: ``read_at_ref``
returns ``None``.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from ghostpipe.core.errors import GitError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

GIT_COMMAND_TIMEOUT = 10  # seconds per subprocess call

DEFAULT_BRANCH_CANDIDATES: tuple[str, ...] = ("main", "master")


# ---------------------------------------------------------------------------
# Low-level git helpers
# ---------------------------------------------------------------------------


def _run_git(
    args: list[str],
    cwd: Path,
    *,
    timeout: int = GIT_COMMAND_TIMEOUT,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess.

    Never uses ``shell=True``.  Raises on timeout.
    """
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
    )


def git_available() -> bool:
    """Return True if the ``git`` executable is on PATH."""
    return shutil.which("git") is not None


def _paths(output: str) -> list[str]:
    """Split ``-z`` output; paths come back unquoted and unstripped."""
    return sorted({path for path in output.split("\0") if path})


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class GitRepository:
    """Git queries rooted at a project directory.

    Paths passed in and returned are relative to *root* (not to the git
    top level), so a project living in a subdirectory of a repository
    still gets project-relative keys.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def _git(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            return _run_git(args, self.root)
        except subprocess.TimeoutExpired as exc:
            raise GitError(f"git {' '.join(args)} timed out") from exc
        except OSError as exc:
            raise GitError(f"Cannot run git: {exc}") from exc

    def _checked(self, args: list[str]) -> str:
        result = self._git(args)
        if result.returncode != 0:
            detail = result.stderr.strip() or f"exit status {result.returncode}"
            raise GitError(f"git {' '.join(args)} failed: {detail}")
        return result.stdout

    def is_repository(self) -> bool:
        try:
            result = self._git(["rev-parse", "--is-inside-work-tree"])
        except GitError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def require_repository(self) -> None:
        """Raise :class:`GitError` unless *root* is inside a work tree."""
        if not git_available():
            raise GitError("git is not installed or not on PATH")
        if not self.is_repository():
            raise GitError("Not a git repository")

    def current_branch(self) -> str | None:
        """Return the current branch name, or None if in detached HEAD state."""
        result = self._git(["rev-parse", "--abbrev-ref", "HEAD"])
        if result.returncode != 0:
            return None
        name = result.stdout.strip()
        if name and name != "HEAD":
            return name
        return None

    def branch_exists(self, name: str) -> bool:
        """True if *name* resolves to a commit (branch, tag or sha)."""
        if not name or name.startswith("-"):
            return False
        result = self._git(["rev-parse", "--verify", "--quiet", f"{name}^{{commit}}"])
        return result.returncode == 0

    def default_branch(self) -> str | None:
        """``main`` if it exists, else ``master``, else None."""
        for candidate in DEFAULT_BRANCH_CANDIDATES:
            if self.branch_exists(candidate):
                return candidate
        return None

    def changed_files(self, base: str, head: str) -> list[str]:
        """Paths changed on *head* since it forked from *base* (``base...head``)."""
        return _paths(self._checked(
            ["diff", "--name-only", "-z", "--relative", f"{base}...{head}", "--"]
        ))

    def working_changes(self, base: str) -> list[str]:
        """Paths whose working-tree content differs from *base*."""
        return _paths(self._checked(
            ["diff", "--name-only", "-z", "--relative", base, "--"]
        ))

    def untracked_files(self) -> list[str]:
        """Untracked, non-ignored files under *root*."""
        return _paths(self._checked(
            ["ls-files", "-z", "--others", "--exclude-standard"]
        ))

    def read_at_ref(self, ref: str, path: str) -> str | None:
        """Content of *path* at *ref*; None when the file does not exist there."""
        # ``./`` makes the path relative to the cwd instead of the top level.
        result = self._git(["show", f"{ref}:./{path}"])
        if result.returncode != 0:
            logger.debug("%s not present at %s", path, ref)
            return None
        return result.stdout
