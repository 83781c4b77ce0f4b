"""Glob + permission declarations and the router that evaluates them.

A declaration is a string of the form::

    <glob> [<mapping>] <permissions>

``permissions`` is any non-empty combination of ``r`` (the interface may
*read* the path, i.e. local changes flow into its document) and ``w``
(the interface may *write* the path, i.e. document changes flow to disk).

``mapping`` optionally relocates a single file inside the document as
``[<map>:]<key>``.  Without it a path lives in the ``files`` map under its
own relative path.  Examples::

    "*.yml r"
    "src/**/*.ts rw"
    "notes.md data:content rw"
    "'my notes.txt' rw"

Tokens split the way a POSIX shell splits them, so a path containing
whitespace is written in quotes (see :func:`file_declaration`).
Declarations on one interface are OR-ed; there is no negation.
"""

from __future__ import annotations

import shlex
from collections.abc import Iterable
from dataclasses import dataclass
from fnmatch import fnmatchcase
from functools import lru_cache
from typing import TYPE_CHECKING

from ghostpipe.core.errors import ConfigError, PermissionDenied
from ghostpipe.sync.changes import FILES_MAP

if TYPE_CHECKING:
    from ghostpipe.core.config import InterfaceDeclaration

READ = "r"
WRITE = "w"
VALID_PERMISSIONS: frozenset[str] = frozenset({READ, WRITE})

_GLOB_CHARS = frozenset("*?[")


@dataclass(frozen=True)
class FileRule:
    """One parsed declaration."""

    pattern: str
    permissions: frozenset[str]
    map_name: str = FILES_MAP
    key: str | None = None  # only set for mapped (single-file) rules

    @property
    def is_mapped(self) -> bool:
        return self.key is not None

    def covers(self, path: str) -> bool:
        if self.is_mapped:
            return path == self.pattern
        return glob_match(path, self.pattern)


def normalize_path(path: str) -> str:
    """Return *path* as a relative POSIX path without a leading ``./``."""
    p = path.replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


def is_safe_path(path: str) -> bool:
    """True if a relative path stays inside the project (no ``..`` segments)."""
    parts = normalize_path(path).split("/")
    return bool(path) and ".." not in parts


def glob_match(path: str, pattern: str) -> bool:
    """Match a relative POSIX path against a glob, one segment at a time.

    ``*``, ``?`` and ``[...]`` stay inside a single path segment.  A ``**``
    segment matches zero or more whole segments, so ``*.yml`` covers
    ``api.yml`` but not ``config/api.yml``, while ``src/**/*.ts`` covers
    both ``src/a.ts`` and ``src/lib/a.ts``.
    """
    path_parts = normalize_path(path).split("/")
    pattern_parts = normalize_path(pattern).split("/")
    return _match_segments(tuple(path_parts), tuple(pattern_parts))


@lru_cache(maxsize=1024)
def _match_segments(parts: tuple[str, ...], pattern: tuple[str, ...]) -> bool:
    if not pattern:
        return not parts
    head, rest = pattern[0], pattern[1:]
    if head == "**":
        # zero segments, or swallow one and try again
        return _match_segments(parts, rest) or (
            bool(parts) and _match_segments(parts[1:], pattern)
        )
    if not parts:
        return False
    return fnmatchcase(parts[0], head) and _match_segments(parts[1:], rest)


def file_declaration(path: str, permissions: str = READ + WRITE) -> str:
    """Build the declaration for one literal *path*, quoting it when needed."""
    return f"{shlex.quote(normalize_path(path))} {permissions}"


def parse_rule(declaration: str) -> FileRule:
    """Parse a single ``"<glob> [<mapping>] <perms>"`` declaration.

    Raises:
        ConfigError: On a wrong token count, unknown permission characters,
            or a mapping attached to a wildcard pattern.
    """
    try:
        tokens = shlex.split(declaration)
    except ValueError as exc:
        raise ConfigError(f"Invalid file declaration '{declaration}': {exc}") from exc
    if len(tokens) not in (2, 3):
        raise ConfigError(
            f"Invalid file declaration '{declaration}': "
            "expected '<glob> [<mapping>] <permissions>'"
        )

    pattern = normalize_path(tokens[0])
    perms = tokens[-1]
    if not perms or not set(perms) <= VALID_PERMISSIONS:
        raise ConfigError(
            f"Invalid permissions '{perms}' in '{declaration}': use any of 'r', 'w'"
        )

    if len(tokens) == 2:
        return FileRule(pattern=pattern, permissions=frozenset(perms))

    if _GLOB_CHARS & set(pattern):
        raise ConfigError(
            f"Invalid file declaration '{declaration}': a mapping needs a literal path"
        )
    map_name, sep, key = tokens[1].rpartition(":")
    if not sep:
        map_name = FILES_MAP
    if not map_name or not key:
        raise ConfigError(f"Invalid mapping '{tokens[1]}' in '{declaration}'")
    return FileRule(
        pattern=pattern,
        permissions=frozenset(perms),
        map_name=map_name,
        key=key,
    )


class PermissionRouter:
    """Decide which paths may cross between disk and one interface's document."""

    def __init__(self, rules: Iterable[FileRule], name: str = "interface") -> None:
        self.name = name
        self.rules: tuple[FileRule, ...] = tuple(rules)

    @classmethod
    def from_declarations(
        cls, declarations: Iterable[str], name: str = "interface"
    ) -> PermissionRouter:
        return cls((parse_rule(d) for d in declarations), name=name)

    @classmethod
    def for_interface(cls, interface: InterfaceDeclaration) -> PermissionRouter:
        return cls.from_declarations(interface.files, name=interface.name)

    def matches(self, path: str, permission: str) -> bool:
        """True if any rule covering *path* grants *permission*."""
        path = normalize_path(path)
        return any(
            permission in rule.permissions and rule.covers(path) for rule in self.rules
        )

    def can_read(self, path: str) -> bool:
        return self.matches(path, READ)

    def can_write(self, path: str) -> bool:
        return self.matches(path, WRITE)

    def require(self, path: str, permission: str) -> None:
        """Raise :class:`PermissionDenied` unless *path* has *permission*."""
        if not self.matches(path, permission):
            raise PermissionDenied(self.name, normalize_path(path), permission)

    def document_key(self, path: str) -> tuple[str, str]:
        """Return the ``(map, key)`` location of *path* in the document."""
        path = normalize_path(path)
        for rule in self.rules:
            if rule.is_mapped and rule.pattern == path:
                return rule.map_name, rule.key  # type: ignore[return-value]
        return FILES_MAP, path

    def path_for_key(self, map_name: str, key: str) -> str | None:
        """Inverse of :meth:`document_key`; ``None`` if the key maps to no path."""
        for rule in self.rules:
            if rule.is_mapped and rule.map_name == map_name and rule.key == key:
                return rule.pattern
        if map_name != FILES_MAP:
            return None
        path = normalize_path(key)
        if not is_safe_path(path):
            return None
        # A mapped path is never also addressed through its plain key.
        if any(rule.is_mapped and rule.pattern == path for rule in self.rules):
            return None
        return path or None


def matches(interface: InterfaceDeclaration, path: str, permission: str) -> bool:
    """Pure predicate: may *path* cross *interface* with *permission*?"""
    return PermissionRouter.for_interface(interface).matches(path, permission)
