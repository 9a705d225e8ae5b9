"""In-memory cache with a fixed time to live and background cleanup."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable


@dataclass
class _Entry:
    data: Any
    expires_at: float


class CacheService:
    """Thread-safe cache for frequently accessed stats.

    Entries expire ``ttl`` seconds after they are set; a daemon thread purges
    expired entries once per ``ttl`` until the cache is closed.
    """

    def __init__(self, ttl: float | timedelta, *, clock: Callable[[], float] = time.monotonic) -> None:
        seconds = ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)
        if seconds <= 0:
            raise ValueError("ttl must be positive")
        self._ttl = seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._cleanup_loop, name="cache-cleanup", daemon=True)
        self._thread.start()

    @property
    def ttl(self) -> float:
        """Time to live of entries, in seconds."""
        return self._ttl

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    def get(self, key: str) -> Any:
        """Return the cached value; raise KeyError if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._clock() > entry.expires_at:
                raise KeyError(key)
            return entry.data

    def set(self, key: str, value: Any) -> None:
        """Store a value, expiring ``ttl`` seconds from now."""
        with self._lock:
            self._entries[key] = _Entry(value, self._clock() + self._ttl)

    def delete(self, key: str) -> None:
        """Remove a value if present."""
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Drop all expired entries and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def close(self) -> None:
        """Stop the background cleanup thread."""
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __enter__(self) -> CacheService:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _cleanup_loop(self) -> None:
        while not self._stop.wait(self._ttl):
            self.purge_expired()