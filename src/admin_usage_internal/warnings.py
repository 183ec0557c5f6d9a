"""Process-lifetime dedupe state for log warnings."""

from __future__ import annotations

import threading


class OnceRegistry:
    """Append-only set of keys that answers "first time seen?" exactly once per key."""

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self._lock = threading.Lock()

    def first_time(self, key: str) -> bool:
        """Record `key` and return True only on its first occurrence."""
        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True

    def reset(self) -> None:
        """Forget every recorded key."""
        with self._lock:
            self._seen.clear()
