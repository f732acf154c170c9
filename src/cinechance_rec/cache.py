"""
Expiring key-value cache stored in the `cache_entries` table.

Reads and writes never raise: storage or serialization errors are logged and
treated as a miss (reads) or a no-op (writes). Values are JSON documents and
every write replaces the whole value.
"""
import json
import logging
import sqlite3
import time

from .database import get_db

logger = logging.getLogger(__name__)


def taste_map_key(user_id: str) -> str:
    return f"taste-map:{user_id}"


def taste_map_part_key(user_id: str, part: str) -> str:
    """Sub-profile key; part is one of genres, persons, types."""
    return f"taste-map:{user_id}:{part}"


def similar_users_key(user_id: str) -> str:
    return f"similar-users:{user_id}"


def similarity_pair_key(user_a: str, user_b: str) -> str:
    return f"similarity:{user_a}:{user_b}"


def metadata_key(kind: str, media_type: str, content_id: int) -> str:
    return f"tmdb:{kind}:{media_type}:{content_id}"


class TTLCache:
    """SQLite-backed cache with per-entry expiry."""

    def __init__(self, clock=time.time):
        self._clock = clock

    def get(self, key: str):
        """Return the cached value, or None when missing, expired or unreadable."""
        try:
            with get_db(read_only=True) as conn:
                row = conn.execute(
                    "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

        if row is None:
            logger.debug(f"Cache miss: {key}")
            return None

        if row['expires_at'] <= self._clock():
            logger.debug(f"Cache expired: {key}")
            return None

        try:
            value = json.loads(row['value'])
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Corrupt cache entry for {key}: {e}")
            return None

        logger.debug(f"Cache hit: {key}")
        return value

    def set(self, key: str, value, ttl_seconds: int) -> bool:
        """Store value for ttl_seconds. Returns False when the write failed."""
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cannot serialize cache value for {key}: {e}")
            return False

        try:
            with get_db() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, payload, self._clock() + ttl_seconds),
                )
        except sqlite3.Error as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False
        return True

    def delete(self, key: str) -> bool:
        try:
            with get_db() as conn:
                conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        except sqlite3.Error as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            return False
        return True

    def purge_expired(self) -> int:
        """Delete expired entries. Returns the number of rows removed."""
        try:
            with get_db() as conn:
                cursor = conn.execute(
                    "DELETE FROM cache_entries WHERE expires_at <= ?", (self._clock(),)
                )
                removed = cursor.rowcount
        except sqlite3.Error as e:
            logger.warning(f"Cache purge failed: {e}")
            return 0

        if removed:
            logger.info(f"Purged {removed} expired cache entries")
        return removed
