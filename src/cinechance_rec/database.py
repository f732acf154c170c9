import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from .config import DB_PATH

logger = logging.getLogger(__name__)

# SQLite caps bound parameters; leave headroom
CHUNK_SIZE = 900


def parse_timestamp_naive(timestamp_str: str) -> datetime:
    """
    Parse ISO format timestamp string to naive datetime.

    Stored timestamps are always naive; aware inputs are stripped so
    comparisons never mix naive and aware datetimes.
    """
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


def _to_iso(value: datetime | str | None) -> str:
    if value is None:
        return datetime.now().isoformat()
    if isinstance(value, datetime):
        return value.replace(tzinfo=None).isoformat()
    return parse_timestamp_naive(value).isoformat()


class ConnectionPool:
    """
    Thread-aware SQLite connection pool.

    SQLite connections are not shared across threads, so each thread
    (including asyncio.to_thread workers) gets its own connection. Connections
    of threads that have exited are closed periodically.
    """

    def __init__(self, db_path, max_size: int = 50):
        self._db_path = db_path
        self._max_size = max_size

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._transaction_depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")

        return conn

    def _maybe_cleanup(self, force: bool = False):
        """Close connections owned by threads that no longer exist."""
        now = time.time()
        if not force and now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections.keys()) - alive_threads

        for thread_id in dead_threads:
            conn = self._connections.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            if conn:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

        if dead_threads:
            logger.debug(f"Connection pool cleanup: removed {len(dead_threads)} dead connections")

    def get_connection(self) -> sqlite3.Connection:
        thread_id = threading.get_ident()

        with self._lock:
            self._maybe_cleanup()

            conn = self._connections.get(thread_id)
            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._maybe_cleanup(force=True)
                    if len(self._connections) >= self._max_size:
                        raise RuntimeError(
                            f"Connection pool exhausted ({self._max_size} connections)"
                        )

                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")

            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._transaction_depth.get(thread_id, 1)
            self._transaction_depth[thread_id] = max(0, depth - 1)

    def close_all(self):
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

            self._connections.clear()
            self._transaction_depth.clear()
            logger.debug("Connection pool closed")


# Global pool instance
_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Only the outermost context commits or rolls back; nested contexts are
    no-ops for transaction control.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn

        if is_outermost and not read_only:
            conn.commit()

    except Exception:
        if is_outermost:
            conn.rollback()
        raise

    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS watch_list (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                content_id INTEGER NOT NULL,
                media_type TEXT NOT NULL,      -- movie | tv
                title TEXT,
                status TEXT NOT NULL,          -- want_to_watch | watched | rewatched | dropped
                user_rating REAL,
                vote_average REAL DEFAULT 0,
                watch_count INTEGER DEFAULT 0,
                added_at TEXT NOT NULL,
                UNIQUE (user_id, content_id, media_type)
            );

            CREATE TABLE IF NOT EXISTS rating_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                content_id INTEGER NOT NULL,
                media_type TEXT NOT NULL,
                rating REAL NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS recommendation_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                content_id INTEGER NOT NULL,
                media_type TEXT NOT NULL,
                algorithm TEXT NOT NULL,
                action TEXT NOT NULL,
                context TEXT,       -- JSON object
                shown_at TEXT NOT NULL
            );

            -- Expiring key-value cache (JSON values)
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_watch_user ON watch_list(user_id);
            CREATE INDEX IF NOT EXISTS idx_watch_user_status ON watch_list(user_id, status);
            CREATE INDEX IF NOT EXISTS idx_watch_content ON watch_list(content_id);
            CREATE INDEX IF NOT EXISTS idx_watch_added ON watch_list(added_at);
            CREATE INDEX IF NOT EXISTS idx_rating_history_item ON rating_history(user_id, content_id, media_type);
            CREATE INDEX IF NOT EXISTS idx_reclog_user_shown ON recommendation_log(user_id, shown_at);
            CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at);
        """)


def load_json(val):
    """Safely load a JSON object from a db field."""
    if not val:
        return {}
    if isinstance(val, dict):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return {}


def add_user(user_id: str, email: str | None = None, created_at: datetime | str | None = None) -> None:
    with get_db() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO users (id, email, created_at) VALUES (?, ?, ?)",
            (user_id, email, _to_iso(created_at)),
        )


def upsert_watch_record(
    user_id: str,
    content_id: int,
    media_type: str,
    status: str,
    user_rating: float | None = None,
    vote_average: float = 0.0,
    watch_count: int = 0,
    title: str | None = None,
    added_at: datetime | str | None = None,
) -> None:
    """Insert or replace a watch list entry, keyed by (user, content, media type)."""
    with get_db() as conn:
        conn.execute("""
            INSERT INTO watch_list
            (user_id, content_id, media_type, title, status, user_rating, vote_average, watch_count, added_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id, content_id, media_type) DO UPDATE SET
                title = excluded.title,
                status = excluded.status,
                user_rating = excluded.user_rating,
                vote_average = excluded.vote_average,
                watch_count = excluded.watch_count
        """, (
            user_id, content_id, media_type, title, status, user_rating,
            vote_average, watch_count, _to_iso(added_at),
        ))


def add_rating_history(
    user_id: str,
    content_id: int,
    media_type: str,
    rating: float,
    created_at: datetime | str | None = None,
) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT INTO rating_history (user_id, content_id, media_type, rating, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, content_id, media_type, rating, _to_iso(created_at)))


def load_watch_records(
    user_id: str,
    statuses: list[str] | tuple[str, ...] | None = None,
    content_ids: list[int] | set[int] | None = None,
) -> list[dict]:
    """
    Load a user's watch list entries in stored order.

    Args:
        user_id: Owner of the records
        statuses: Optional status filter
        content_ids: Optional content id filter (chunked to respect SQLite limits)
    """
    query = """
        SELECT user_id, content_id, media_type, title, status, user_rating,
               vote_average, watch_count, added_at
        FROM watch_list
        WHERE user_id = ?
    """
    params: list = [user_id]
    if statuses is not None:
        if not statuses:
            return []
        query += f" AND status IN ({','.join('?' * len(statuses))})"
        params.extend(statuses)

    with get_db(read_only=True) as conn:
        if content_ids is None:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
            return [dict(row) for row in rows]

        ids = list(content_ids)
        records = []
        for i in range(0, len(ids), CHUNK_SIZE):
            chunk = ids[i:i + CHUNK_SIZE]
            chunk_query = query + f" AND content_id IN ({','.join('?' * len(chunk))}) ORDER BY id"
            records.extend(dict(row) for row in conn.execute(chunk_query, [*params, *chunk]))
        return records


def count_watch_records(user_id: str) -> int:
    with get_db(read_only=True) as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM watch_list WHERE user_id = ?", (user_id,)
        ).fetchone()[0]


def load_recent_user_ids(since: datetime, exclude_user_id: str, limit: int) -> list[str]:
    """Distinct users (other than exclude_user_id) with an entry added at or after `since`."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT user_id
            FROM watch_list
            WHERE added_at >= ? AND user_id != ?
            GROUP BY user_id
            ORDER BY MIN(id)
            LIMIT ?
        """, (_to_iso(since), exclude_user_id, limit)).fetchall()
    return [row['user_id'] for row in rows]


def list_users_with_history(exclude_user_id: str, min_history: int, limit: int) -> list[dict]:
    """Users other than exclude_user_id holding at least `min_history` watch list entries."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT u.id AS id, COUNT(w.id) AS record_count
            FROM users u
            LEFT JOIN watch_list w ON w.user_id = u.id
            WHERE u.id != ?
            GROUP BY u.id
            HAVING COUNT(w.id) >= ?
            ORDER BY u.created_at, u.id
            LIMIT ?
        """, (exclude_user_id, min_history, limit)).fetchall()
    return [dict(row) for row in rows]


def load_user_info_batch(user_ids: list[str]) -> dict[str, dict]:
    """
    Load display info (watch count, membership date) for many users in one query.
    """
    if not user_ids:
        return {}

    with get_db(read_only=True) as conn:
        placeholders = ','.join('?' * len(user_ids))
        rows = conn.execute(f"""
            SELECT u.id AS id, u.created_at AS created_at, COUNT(w.id) AS watch_count
            FROM users u
            LEFT JOIN watch_list w ON w.user_id = u.id
            WHERE u.id IN ({placeholders})
            GROUP BY u.id
        """, user_ids).fetchall()

    return {row['id']: dict(row) for row in rows}


def find_watch_record(user_id: str, content_id: int, media_type: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT user_id, content_id, media_type, title, status, user_rating,
                   vote_average, watch_count, added_at
            FROM watch_list
            WHERE user_id = ? AND content_id = ? AND media_type = ?
        """, (user_id, content_id, media_type)).fetchone()
    return dict(row) if row else None


def count_rating_history(user_id: str, content_id: int, media_type: str) -> int:
    with get_db(read_only=True) as conn:
        return conn.execute("""
            SELECT COUNT(*) FROM rating_history
            WHERE user_id = ? AND content_id = ? AND media_type = ?
        """, (user_id, content_id, media_type)).fetchone()[0]


def append_recommendation_log(
    user_id: str,
    content_id: int,
    media_type: str,
    algorithm: str,
    action: str,
    context: dict | None = None,
    shown_at: datetime | str | None = None,
) -> int:
    """Append one recommendation event. Returns the new row id."""
    with get_db() as conn:
        cursor = conn.execute("""
            INSERT INTO recommendation_log
            (user_id, content_id, media_type, algorithm, action, context, shown_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            user_id, content_id, media_type, algorithm, action,
            json.dumps(context or {}), _to_iso(shown_at),
        ))
        return cursor.lastrowid


def load_recent_recommendations(user_id: str, since: datetime) -> list[dict]:
    """(content_id, media_type) pairs shown to the user at or after `since`."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT content_id, media_type
            FROM recommendation_log
            WHERE user_id = ? AND shown_at >= ?
        """, (user_id, _to_iso(since))).fetchall()
    return [dict(row) for row in rows]


def load_recommendation_history(user_id: str, limit: int = 20) -> list[dict]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT id, content_id, media_type, algorithm, action, context, shown_at
            FROM recommendation_log
            WHERE user_id = ?
            ORDER BY shown_at DESC, id DESC
            LIMIT ?
        """, (user_id, limit)).fetchall()

    history = []
    for row in rows:
        entry = dict(row)
        entry['context'] = load_json(entry['context'])
        history.append(entry)
    return history


def load_active_user_ids(limit: int) -> list[str]:
    """Users ordered by most recent watch list activity."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT user_id
            FROM watch_list
            GROUP BY user_id
            ORDER BY MAX(added_at) DESC
            LIMIT ?
        """, (limit,)).fetchall()
    return [row['user_id'] for row in rows]
