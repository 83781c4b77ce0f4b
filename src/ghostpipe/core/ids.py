"""Channel identifiers, content fingerprints and timestamps."""

from __future__ import annotations

import hashlib
import re
import secrets
from datetime import datetime, timezone

# 16 random bytes -> 32 hex chars (128 bits of entropy).
CHANNEL_ID_BYTES = 16

ABSENT_FINGERPRINT = "absent"

_CHANNEL_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def generate_channel_id() -> str:
    """Return a fresh random channel identifier for one session."""
    return secrets.token_hex(CHANNEL_ID_BYTES)


def validate_channel_id(s: str) -> bool:
    """Return ``True`` if *s* looks like a channel id we generated."""
    return bool(_CHANNEL_ID_RE.match(s))


def generate_peer_id() -> str:
    """Return a short random peer id used for origin attribution on the wire."""
    return f"peer_{secrets.token_hex(8)}"


def fingerprint(content: str | None) -> str:
    """SHA-256 fingerprint of *content*; ``None`` (missing file) has its own marker."""
    if content is None:
        return ABSENT_FINGERPRINT
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def utc_now() -> str:
    """Current UTC time as ISO 8601 with a ``Z`` suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
