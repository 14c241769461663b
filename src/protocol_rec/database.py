import sqlite3
import json
import logging
import queue
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable

from .config import DB_PATH, SINK_MAX_RETRIES, SINK_RETRY_DELAY
from .catalog import Protocol
from .errors import ValidationError
from .feedback import UserFeedback
from .utils import parse_timestamp_naive, retry_with_backoff

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    - One connection per thread (SQLite threading requirement)
    - Health check via SELECT 1 before reusing a stale connection
    - Connections of threads that have exited are closed lazily
    - Tracks transaction nesting so only the outermost get_db() commits
    """

    def __init__(self, db_path, max_size: int = 16, health_check_interval: int = 300):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")  # Lets the sink write while the CLI reads
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _drop_dead_threads(self) -> None:
        # Caller holds the lock
        alive = {t.ident for t in threading.enumerate()}
        for thread_id in set(self._connections) - alive:
            conn = self._connections.pop(thread_id)
            self._last_health_check.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            logger.debug(f"Closed connection of exited thread {thread_id}")

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating it if necessary."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            conn = self._connections.get(thread_id)

            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._is_healthy(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    self._connections.pop(thread_id, None)
                    conn = None

            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._drop_dead_threads()
                if len(self._connections) >= self._max_size:
                    raise RuntimeError(
                        f"Connection pool exhausted ({self._max_size} connections)"
                    )
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
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
        """Close all connections (call on application shutdown)."""
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._last_health_check.clear()
            self._transaction_depth.clear()
        logger.debug("Connection pool closed")

    def stats(self) -> dict:
        with self._lock:
            return {
                'active_connections': len(self._connections),
                'max_size': self._max_size,
            }


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

    Nested calls share the outer transaction: only the outermost context
    commits or rolls back.
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
            -- Append-only feedback log; id order is arrival order
            CREATE TABLE IF NOT EXISTS feedback (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                protocol_id TEXT NOT NULL,
                rating REAL NOT NULL,
                completed INTEGER NOT NULL,
                effectiveness REAL NOT NULL,
                difficulty REAL NOT NULL,
                enjoyment REAL NOT NULL,
                timestamp TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_feedback_user ON feedback(user_id);
            CREATE INDEX IF NOT EXISTS idx_feedback_protocol ON feedback(protocol_id);

            CREATE TABLE IF NOT EXISTS protocols (
                id TEXT PRIMARY KEY,
                definition TEXT NOT NULL,   -- JSON object
                updated_at TEXT NOT NULL
            );
        """)


def _feedback_row(feedback: UserFeedback) -> tuple:
    return (
        feedback.user_id,
        feedback.protocol_id,
        feedback.rating,
        int(feedback.completed),
        feedback.effectiveness,
        feedback.difficulty,
        feedback.enjoyment,
        feedback.timestamp.isoformat() if feedback.timestamp else None,
    )


_INSERT_FEEDBACK = """
    INSERT INTO feedback
    (user_id, protocol_id, rating, completed, effectiveness, difficulty, enjoyment, timestamp)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""


def save_feedback(feedback: UserFeedback) -> None:
    with get_db() as conn:
        conn.execute(_INSERT_FEEDBACK, _feedback_row(feedback))


def save_feedback_batch(entries: Iterable[UserFeedback]) -> int:
    rows = [_feedback_row(f) for f in entries]
    if not rows:
        return 0
    with get_db() as conn:
        conn.executemany(_INSERT_FEEDBACK, rows)
    return len(rows)


def load_feedback(limit: int | None = None) -> list[UserFeedback]:
    """
    Load the feedback log oldest first.

    With a limit, only the most recent `limit` entries are returned. Rows
    that no longer validate are skipped with a warning.
    """
    with get_db(read_only=True) as conn:
        if limit is None:
            rows = conn.execute("SELECT * FROM feedback ORDER BY id").fetchall()
        else:
            rows = conn.execute("""
                SELECT * FROM (SELECT * FROM feedback ORDER BY id DESC LIMIT ?)
                ORDER BY id
            """, (limit,)).fetchall()

    entries = []
    for row in rows:
        try:
            entries.append(UserFeedback(
                user_id=row['user_id'],
                protocol_id=row['protocol_id'],
                rating=row['rating'],
                completed=bool(row['completed']),
                effectiveness=row['effectiveness'],
                difficulty=row['difficulty'],
                enjoyment=row['enjoyment'],
                timestamp=parse_timestamp_naive(row['timestamp']),
            ))
        except (ValidationError, ValueError) as e:
            logger.warning(f"Skipping invalid feedback row {row['id']}: {e}")
    return entries


def count_feedback() -> int:
    with get_db(read_only=True) as conn:
        return conn.execute("SELECT COUNT(*) FROM feedback").fetchone()[0]


def clear_feedback() -> int:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM feedback")
        return cursor.rowcount


def save_protocols(protocols: Iterable[Protocol]) -> int:
    now = datetime.now().isoformat()
    rows = [(p.id, json.dumps(p.to_dict()), now) for p in protocols]
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO protocols (id, definition, updated_at)
            VALUES (?, ?, ?)
        """, rows)
    return len(rows)


def load_protocols() -> list[Protocol]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("SELECT id, definition FROM protocols ORDER BY id").fetchall()

    protocols = []
    for row in rows:
        try:
            protocols.append(Protocol.from_dict(json.loads(row['definition'])))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Skipping stored protocol {row['id']}: {e}")
    return protocols


_STOP = object()


class SqliteFeedbackSink:
    """
    Fire-and-forget persistence of feedback entries.

    submit() only enqueues; a daemon worker writes each entry, retrying on
    sqlite3.OperationalError (e.g. a locked database). An entry that still
    fails, or fails with any other error, is logged and dropped: the
    in-memory log stays authoritative.
    """

    def __init__(self, max_retries: int = SINK_MAX_RETRIES, retry_delay: float = SINK_RETRY_DELAY):
        self._queue: queue.Queue = queue.Queue()
        self._write = retry_with_backoff(
            max_retries=max_retries,
            initial_delay=retry_delay,
            exceptions=(sqlite3.OperationalError,),
        )(save_feedback)
        self._closed = False
        self.written = 0
        self.failed = 0
        self._thread = threading.Thread(target=self._run, name="feedback-sink", daemon=True)
        self._thread.start()

    def submit(self, feedback: UserFeedback) -> None:
        if self._closed:
            raise RuntimeError("Feedback sink is closed")
        self._queue.put(feedback)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                try:
                    self._write(item)
                    self.written += 1
                except Exception:
                    self.failed += 1
                    logger.exception(
                        f"Dropping feedback write for {item.user_id}/{item.protocol_id}"
                    )
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every submitted entry has been written or dropped."""
        self._queue.join()

    def close(self, timeout: float | None = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._thread.join(timeout)
