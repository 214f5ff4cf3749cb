"""
Duplicate Call Guard
====================

In-memory record of when each user last triggered a status check, used
to throttle rapid repeated calls.

NOT persistent and process-local: entries are lost on restart and are
not shared between workers. It only saves remote calls and never decides
entitlement. A window of 0 disables it.
"""

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class DuplicateCallGuard:
    """Bounded TTL map of key -> last-seen monotonic timestamp."""

    def __init__(
        self,
        window_seconds: float,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._seen: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def seconds_since_last(self, key: str) -> Optional[float]:
        """Seconds since *key* was last recorded, or None if unknown/expired."""
        seen_at = self._seen.get(key)
        if seen_at is None:
            return None
        elapsed = self._clock() - seen_at
        if elapsed >= self.window_seconds:
            self._seen.pop(key, None)
            return None
        return elapsed

    def is_duplicate(self, key: str) -> bool:
        """True when *key* was recorded less than the window ago."""
        if self.window_seconds <= 0:
            return False
        return self.seconds_since_last(key) is not None

    def record(self, key: str) -> None:
        if self.window_seconds <= 0:
            return
        self._seen[key] = self._clock()
        if len(self._seen) > self.max_entries:
            self._evict()

    def _evict(self) -> None:
        now = self._clock()
        expired = [k for k, ts in self._seen.items() if now - ts >= self.window_seconds]
        for key in expired:
            del self._seen[key]

        # Still over capacity: drop the oldest entries.
        overflow = len(self._seen) - self.max_entries
        if overflow > 0:
            for key in sorted(self._seen, key=self._seen.__getitem__)[:overflow]:
                del self._seen[key]
        logger.debug("Duplicate call guard evicted entries, %d remain", len(self._seen))
