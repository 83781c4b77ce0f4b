"""Exception hierarchy.

Only ``ConfigError`` and ``GitError`` are fatal.  Everything else is
caught at the path level, logged, and the session carries on.
"""

from __future__ import annotations


class GhostpipeError(Exception):
    """Base class for all ghostpipe errors."""


class ConfigError(GhostpipeError):
    """Malformed or missing configuration / interface declarations."""


class PermissionDenied(GhostpipeError):
    """A path crossed a boundary its interface has no permission for."""

    def __init__(self, interface: str, path: str, permission: str) -> None:
        self.interface = interface
        self.path = path
        self.permission = permission
        super().__init__(f"{interface}: no '{permission}' permission for {path}")


class GitError(GhostpipeError):
    """Repository-level git failure (not a repo, unknown ref, failing diff)."""
