"""Echo suppression for remote-triggered disk writes.

After the bridge writes a remote change to disk it records the content
fingerprint here.  The next local detection for that path consults and
removes the record; if the disk still holds exactly what was written (and
the record is fresh) the local event is our own echo and is dropped.

One table per session.  Never share it: one interface's writes must not
silence another interface's view of the same file.
"""

from __future__ import annotations

import time
from collections.abc import Callable

DEFAULT_VALIDITY_SECONDS = 2.0


class SuppressionTable:
    """``(document_id, path) -> (fingerprint, expires_at)``."""

    def __init__(
        self,
        validity: float = DEFAULT_VALIDITY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.validity = validity
        self._clock = clock
        self._records: dict[tuple[str, str], tuple[str, float]] = {}

    def record(self, document_id: str, path: str, fingerprint: str) -> None:
        """Remember that *path* was just written with *fingerprint*."""
        self._records[(document_id, path)] = (fingerprint, self._clock() + self.validity)

    def consume(self, document_id: str, path: str, fingerprint: str) -> bool:
        """Remove the record for *path*; True if it matched and was still fresh."""
        entry = self._records.pop((document_id, path), None)
        if entry is None:
            return False
        expected, expires_at = entry
        return expected == fingerprint and self._clock() <= expires_at

    def has(self, document_id: str, path: str) -> bool:
        return (document_id, path) in self._records

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
