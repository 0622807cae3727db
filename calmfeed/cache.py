"""TTL-keyed response cache for outbound adapter calls.

Caching is strictly an optimization: every backend failure is logged and
treated as a miss, so callers behave identically with or without a cache.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from calmfeed.models import utcnow

logger = logging.getLogger(__name__)


# TTLs in seconds, by operation volatility
CACHE_TTL: dict[str, int] = {
    "channel": 24 * 60 * 60,   # Channel info changes rarely
    "videos": 6 * 60 * 60,
    "playlist": 6 * 60 * 60,
    "search": 60 * 60,
    "feed": 5 * 60,
}
DEFAULT_TTL = 60 * 60


def make_cache_key(operation: str, params: dict[str, Any]) -> str:
    """Stable key for an operation and its parameters.

    Parameters are serialized with sorted keys so that the same call with
    differently ordered parameters maps to the same key.
    """
    data = f"{operation}:{json.dumps(params, sort_keys=True, default=str)}"
    return hashlib.sha256(data.encode()).hexdigest()


def ttl_for(operation: str) -> int:
    return CACHE_TTL.get(operation, DEFAULT_TTL)


class ResponseCache(ABC):
    """Base class for cache backends.

    Subclasses implement the protected hooks; the public methods add key
    derivation, default TTLs and error swallowing.
    """

    def get(self, operation: str, params: dict[str, Any]) -> Any | None:
        """Return the cached value, or None on miss, expiry or error."""
        key = make_cache_key(operation, params)
        try:
            value = self._get(key)
        except Exception as e:
            logger.warning(f"Cache get failed for {operation}: {e}")
            return None

        if value is None:
            logger.debug(f"Cache miss: {operation} {key[:12]}")
        else:
            logger.debug(f"Cache hit: {operation} {key[:12]}")
        return value

    def set(
        self,
        operation: str,
        params: dict[str, Any],
        value: Any,
        ttl: int | None = None,
    ) -> None:
        """Store a JSON-serializable value for ttl seconds."""
        key = make_cache_key(operation, params)
        ttl = ttl if ttl is not None else ttl_for(operation)
        try:
            self._set(key, operation, value, ttl)
        except Exception as e:
            logger.warning(f"Cache set failed for {operation}: {e}")

    def invalidate(self, operation: str, params: dict[str, Any]) -> None:
        """Drop a single entry."""
        key = make_cache_key(operation, params)
        try:
            self._delete(key)
            logger.debug(f"Invalidated cache entry: {operation} {key[:12]}")
        except Exception as e:
            logger.warning(f"Cache invalidate failed for {operation}: {e}")

    def invalidate_all(self, operation: str) -> None:
        """Drop every entry of one operation type."""
        try:
            count = self._delete_operation(operation)
            logger.info(f"Invalidated {count} cache entries for {operation}")
        except Exception as e:
            logger.warning(f"Cache invalidate_all failed for {operation}: {e}")

    def clean_expired(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        try:
            count = self._clean()
        except Exception as e:
            logger.warning(f"Cache cleanup failed: {e}")
            return 0
        if count:
            logger.info(f"Cleaned {count} expired cache entries")
        return count

    def close(self) -> None:
        pass

    @abstractmethod
    def _get(self, key: str) -> Any | None:
        pass

    @abstractmethod
    def _set(self, key: str, operation: str, value: Any, ttl: int) -> None:
        pass

    @abstractmethod
    def _delete(self, key: str) -> None:
        pass

    @abstractmethod
    def _delete_operation(self, operation: str) -> int:
        pass

    @abstractmethod
    def _clean(self) -> int:
        pass


class MemoryResponseCache(ResponseCache):
    """Process-local cache. Good for tests and the API server."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (operation, expires_at, serialized value)
        self._entries: dict[str, tuple[str, float, str]] = {}

    def _get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            _, expires_at, payload = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
        return json.loads(payload)

    def _set(self, key: str, operation: str, value: Any, ttl: int) -> None:
        # Round-trip through JSON so callers never share mutable state
        payload = json.dumps(value, default=str)
        with self._lock:
            self._entries[key] = (operation, self._clock() + ttl, payload)

    def _delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _delete_operation(self, operation: str) -> int:
        with self._lock:
            keys = [k for k, (op, _, _) in self._entries.items() if op == operation]
            for k in keys:
                del self._entries[k]
        return len(keys)

    def _clean(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp, _) in self._entries.items() if now >= exp]
            for k in expired:
                del self._entries[k]
        return len(expired)


CACHE_SCHEMA = """
CREATE TABLE IF NOT EXISTS response_cache (
    cache_key TEXT PRIMARY KEY,
    operation TEXT NOT NULL,
    response JSON NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_response_cache_operation ON response_cache(operation);
CREATE INDEX IF NOT EXISTS idx_response_cache_expires ON response_cache(expires_at);
"""


class SQLiteResponseCache(ResponseCache):
    """Cache persisted in its own SQLite file, shared across CLI runs."""

    def __init__(self, db_path: str, clock: Callable[[], datetime] = utcnow):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(CACHE_SCHEMA)
        self._conn.commit()

    def _get(self, key: str) -> Any | None:
        row = self._conn.execute(
            "SELECT response, expires_at FROM response_cache WHERE cache_key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return None

        if self._clock() >= datetime.fromisoformat(row["expires_at"]):
            self._conn.execute("DELETE FROM response_cache WHERE cache_key = ?", (key,))
            self._conn.commit()
            return None

        return json.loads(row["response"])

    def _set(self, key: str, operation: str, value: Any, ttl: int) -> None:
        expires_at = self._clock() + timedelta(seconds=ttl)
        self._conn.execute(
            """
            INSERT INTO response_cache (cache_key, operation, response, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(cache_key) DO UPDATE SET
                response = excluded.response,
                expires_at = excluded.expires_at
            """,
            (key, operation, json.dumps(value, default=str), expires_at.isoformat()),
        )
        self._conn.commit()

    def _delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM response_cache WHERE cache_key = ?", (key,))
        self._conn.commit()

    def _delete_operation(self, operation: str) -> int:
        cursor = self._conn.execute(
            "DELETE FROM response_cache WHERE operation = ?", (operation,)
        )
        self._conn.commit()
        return cursor.rowcount

    def _clean(self) -> int:
        cursor = self._conn.execute(
            "DELETE FROM response_cache WHERE expires_at <= ?",
            (self._clock().isoformat(),),
        )
        self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()


def create_cache(cache_type: str, path: str | None = None) -> ResponseCache | None:
    """Factory for cache backends. "none" disables caching."""
    match cache_type:
        case "memory":
            return MemoryResponseCache()
        case "sqlite":
            if not path:
                raise ValueError("sqlite cache requires a path")
            return SQLiteResponseCache(path)
        case "none":
            return None
        case _:
            raise ValueError(f"Unknown cache type: {cache_type}")
