"""Change records and origin attribution shared by documents, bridge and transport.

Kept free of any CRDT import so the bridge can be driven by any object
that speaks the document interface.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

# Named maps inside one replicated document.
FILES_MAP = "files"
DATA_MAP = "data"
BASE_FILES_MAP = "base-files"
HEAD_FILES_MAP = "head-files"
METADATA_MAP = "metadata"
META_MAP = "meta"

MAP_NAMES: tuple[str, ...] = (
    FILES_MAP,
    DATA_MAP,
    BASE_FILES_MAP,
    HEAD_FILES_MAP,
    METADATA_MAP,
    META_MAP,
)

ADD = "add"
UPDATE = "update"
DELETE = "delete"

# Origin of every transaction this process authors.  Remote changes carry
# the sending peer's id instead.
LOCAL_ORIGIN = "local"


@dataclass(frozen=True)
class MapChange:
    """One key-level change inside one named map."""

    map: str
    key: str
    action: str
    old: Any = None
    new: Any = None


ChangeObserver = Callable[[list[MapChange], str], None]  # (changes, origin)


def is_local_origin(origin: str | None) -> bool:
    """True if a change was authored by this process (no remote peer attribution)."""
    return origin is None or origin == LOCAL_ORIGIN


def diff_maps(map_name: str, old: dict, new: dict) -> list[MapChange]:
    """Compare two plain dicts and produce key-level changes, sorted by key."""
    changes: list[MapChange] = []
    for key in sorted(set(old) | set(new)):
        if key not in new:
            changes.append(MapChange(map_name, key, DELETE, old[key], None))
        elif key not in old:
            changes.append(MapChange(map_name, key, ADD, None, new[key]))
        elif old[key] != new[key]:
            changes.append(MapChange(map_name, key, UPDATE, old[key], new[key]))
    return changes
