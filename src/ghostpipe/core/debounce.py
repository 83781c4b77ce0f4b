"""Per-key debouncing on the asyncio event loop.

Each key has at most one pending timer.  Scheduling a key that already has
one cancels it first, so only the last call inside the quiet window runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class KeyedDebouncer:
    """Map of key -> cancellable ``loop.call_later`` handle."""

    def __init__(
        self,
        delay: float,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.delay = delay
        self._loop = loop
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, fn: Callable[..., Any], *args: Any) -> None:
        """(Re)arm the timer for *key*; ``fn(*args)`` runs after the quiet window."""
        self.cancel(key)
        loop = self._loop or asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.delay, self._fire, key, fn, args)

    def cancel(self, key: str) -> bool:
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def pending(self, key: str) -> bool:
        return key in self._timers

    def __len__(self) -> int:
        return len(self._timers)

    def _fire(self, key: str, fn: Callable[..., Any], args: tuple) -> None:
        self._timers.pop(key, None)
        try:
            fn(*args)
        except Exception:
            # A failing handler must not take the event loop down with it.
            logger.exception("debounced handler for %s failed", key)
