"""Snapshot the files changed between two git revisions.

A snapshot holds, for every changed path the interface may read, the
content at the base revision and at the head revision.  When the head is
the checked-out branch ("working-directory mode") head content comes from
disk instead, uncommitted and untracked changes are included, and the
head side stays live via :meth:`DiffSnapshotter.refresh_head`.  The base
side never changes after the snapshot is taken.

Content missing at a revision is the empty string.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ghostpipe.core.errors import GitError
from ghostpipe.core.ids import utc_now
from ghostpipe.core.permissions import PermissionRouter
from ghostpipe.diff.git_reader import GitRepository
from ghostpipe.storage.fs import UnreadableFileError, read_text
from ghostpipe.sync.changes import BASE_FILES_MAP, HEAD_FILES_MAP, METADATA_MAP

logger = logging.getLogger(__name__)

DIFF_MODE = "diff"


@dataclass
class DiffSnapshot:
    base_ref: str
    head_ref: str
    is_working_directory: bool
    changed_files: list[str] = field(default_factory=list)
    base: dict[str, str] = field(default_factory=dict)
    head: dict[str, str] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.changed_files


class DiffSnapshotter:
    """Build and publish :class:`DiffSnapshot` objects for one interface.

    Args:
        repo: Repository to query.
        root: Project root; disk content for working-directory mode is
            read relative to it.
        router: When given, only paths the interface may read are kept.
        name: Interface name used in log lines.
    """

    def __init__(
        self,
        repo: GitRepository,
        root: Path,
        router: PermissionRouter | None = None,
        *,
        name: str = "diff",
    ) -> None:
        self.repo = repo
        self.root = root
        self.router = router
        self.name = name

    def changed_files(self, base_ref: str, head_ref: str, working_directory: bool) -> list[str]:
        """Sorted, de-duplicated set of changed paths (before permission filtering)."""
        paths = set(self.repo.changed_files(base_ref, head_ref))
        if working_directory:
            paths.update(self.repo.working_changes(base_ref))
            paths.update(self.repo.untracked_files())
        return sorted(paths)

    def snapshot(self, base_ref: str, head_ref: str) -> DiffSnapshot:
        """Collect the changed paths and their base and head content.

        Raises:
            GitError: If *root* is not a repository, a ref is unknown, or
                ``git diff`` fails.
        """
        self.repo.require_repository()
        for ref in (base_ref, head_ref):
            if not self.repo.branch_exists(ref):
                raise GitError(f"Branch '{ref}' does not exist")

        working = head_ref == self.repo.current_branch()
        snap = DiffSnapshot(base_ref=base_ref, head_ref=head_ref, is_working_directory=working)

        for path in self.changed_files(base_ref, head_ref, working):
            if self.router is not None and not self.router.can_read(path):
                logger.debug("[%s] no read permission for %s", self.name, path)
                continue
            snap.changed_files.append(path)
            snap.base[path] = self.repo.read_at_ref(base_ref, path) or ""
            if working:
                snap.head[path] = self._read_disk(path)
            else:
                snap.head[path] = self.repo.read_at_ref(head_ref, path) or ""

        logger.debug(
            "[%s] %d changed file(s) between %s and %s%s",
            self.name,
            len(snap.changed_files),
            base_ref,
            head_ref,
            " (with working changes)" if working else "",
        )
        return snap

    def publish(self, snap: DiffSnapshot, document: Any) -> None:
        """Write the snapshot and its metadata into *document* in one transaction."""
        with document.transact() as tx:
            for path in snap.changed_files:
                tx.set(BASE_FILES_MAP, path, snap.base[path])
                tx.set(HEAD_FILES_MAP, path, snap.head[path])
            tx.set(METADATA_MAP, "mode", DIFF_MODE)
            tx.set(METADATA_MAP, "baseBranch", snap.base_ref)
            tx.set(METADATA_MAP, "headBranch", snap.head_ref)
            tx.set(METADATA_MAP, "created", utc_now())
            tx.set(METADATA_MAP, "includesWorkingDirectory", snap.is_working_directory)
            tx.set(METADATA_MAP, "changedFiles", list(snap.changed_files))

    def refresh_head(self, snap: DiffSnapshot, document: Any, path: str) -> bool:
        """Re-read *path* from disk and update ``head-files`` if it changed.

        Only meaningful in working-directory mode.  Returns True if the
        document was updated.
        """
        if not snap.is_working_directory or path not in snap.head:
            return False
        content = self._read_disk(path)
        if content == snap.head[path]:
            return False
        snap.head[path] = content
        with document.transact() as tx:
            tx.set(HEAD_FILES_MAP, path, content)
        logger.info("[%s] updated %s in diff", self.name, path)
        return True

    def _read_disk(self, path: str) -> str:
        try:
            return read_text(self.root / path) or ""
        except UnreadableFileError:
            logger.debug("[%s] %s is not text", self.name, path)
        except OSError as exc:
            logger.warning("[%s] cannot read %s: %s", self.name, path, exc)
        return ""
