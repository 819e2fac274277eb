"""
Entry storage for the cache.

Provides InMemStore (in-memory, time-indexed map) and CacheEntry.
Deadlines are absolute time.monotonic() values computed at write time.
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

DEFAULT_TTL = 20
DEFAULT_RELOAD = 10


def deadline(seconds: float, now: float | None = None) -> float:
    """Turn relative seconds into an absolute deadline (ttl<=0 never expires)."""
    if seconds <= 0:
        return float("inf")
    if now is None:
        now = time.monotonic()
    return now + seconds


# ============================================================================
# Cache Entry - Internal data structure
# ============================================================================


@dataclass
class CacheEntry:
    """Internal cache entry with expiry and optional reload deadline."""

    value: Any
    expires_at: float  # time.monotonic() deadline
    reload_at: float | None = None  # only set for read-through entries
    created_at: float = field(default_factory=time.monotonic)
    version: int = 0

    def is_expired(self, now: float | None = None) -> bool:
        """Check if the hard expiry has passed."""
        if now is None:
            now = time.monotonic()
        return self.expires_at < now

    def needs_reload(self, now: float | None = None) -> bool:
        """Check if a read-through entry is due for revalidation."""
        if self.reload_at is None:
            return False
        if now is None:
            now = time.monotonic()
        return self.reload_at < now

    def age(self) -> float:
        """Get age of entry in seconds."""
        return time.monotonic() - self.created_at

    def ttl_remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())


# ============================================================================
# InMemStore - In-memory entry store with TTL
# ============================================================================


class InMemStore:
    """
    Thread-safe in-memory entry store with TTL support.

    Every removal, explicit or through lazy eviction, goes through
    ``delete`` so the ``on_delete`` hook sees it, even for absent keys.
    ``on_write`` sees every new entry stored by ``set`` or ``set_read_through``.

    Attributes:
        _data: internal entry map
        _lock: re-entrant lock to protect concurrent access
        _versions: write counter stamped on each new entry
    """

    def __init__(
        self,
        on_delete: Callable[[str], Any] | None = None,
        on_write: Callable[[str], Any] | None = None,
    ):
        self._data: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._versions = itertools.count(1)
        self._on_delete = on_delete
        self._on_write = on_write

    def get(self, key: str) -> Any | None:
        """Return value if key has not expired, otherwise drop it."""
        entry = self.live_entry(key)
        return None if entry is None else entry.value

    def live_entry(self, key: str) -> CacheEntry | None:
        """Return the raw entry, evicting it first if it already expired."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None

            if entry.is_expired():
                self.delete(key)
                return None

            return entry

    def get_entry(self, key: str) -> CacheEntry | None:
        """Get raw entry without any expiry check."""
        with self._lock:
            return self._data.get(key)

    def exists(self, key: str) -> bool:
        """Check if an entry is stored for key (swept or not)."""
        with self._lock:
            return key in self._data

    def get_ttl(self, key: str) -> float | None:
        """Absolute expiry deadline of key, or None if absent."""
        entry = self.get_entry(key)
        return None if entry is None else entry.expires_at

    def set(self, key: str, value: Any, ttl: float = DEFAULT_TTL) -> CacheEntry:
        """Store value for ttl seconds (0=forever)."""
        now = time.monotonic()
        entry = CacheEntry(
            value=value,
            expires_at=deadline(ttl, now),
            created_at=now,
            version=next(self._versions),
        )

        with self._lock:
            self._data[key] = entry
            if self._on_write is not None:
                self._on_write(key)
        return entry

    def set_read_through(
        self,
        key: str,
        value: Any,
        reload: float = DEFAULT_RELOAD,
        ttl: float = DEFAULT_TTL,
    ) -> CacheEntry:
        """Store value with both a reload deadline and a hard expiry."""
        now = time.monotonic()
        entry = CacheEntry(
            value=value,
            expires_at=deadline(ttl, now),
            reload_at=now + reload,
            created_at=now,
            version=next(self._versions),
        )

        with self._lock:
            self._data[key] = entry
            if self._on_write is not None:
                self._on_write(key)
        return entry

    def set_ttl(self, key: str, ttl: float) -> None:
        """Reset the expiry of an existing key; no-op if absent."""
        with self._lock:
            entry = self._data.get(key)
            if entry is not None:
                entry.expires_at = deadline(ttl)

    def set_value(self, key: str, value: Any) -> None:
        """Replace the value of an existing key, keeping its deadlines."""
        with self._lock:
            entry = self._data.get(key)
            if entry is not None:
                entry.value = value

    def delete(self, key: str) -> bool:
        """Delete key from store. Returns True if an entry was removed."""
        with self._lock:
            removed = self._data.pop(key, None) is not None
            if self._on_delete is not None:
                self._on_delete(key)
            return removed

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)

    def count(self) -> int:
        with self._lock:
            return len(self._data)

    def expired_keys(self, now: float | None = None) -> list[str]:
        """Keys whose expiry has passed at ``now``."""
        if now is None:
            now = time.monotonic()
        with self._lock:
            return [key for key, entry in self._data.items() if entry.is_expired(now)]

    def clear(self) -> None:
        """Clear all entries without running the delete hook."""
        with self._lock:
            self._data.clear()

    @property
    def lock(self):
        """Get the internal lock (for advanced usage)."""
        return self._lock
