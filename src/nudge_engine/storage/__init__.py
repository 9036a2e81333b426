"""SQLite storage for user memories and decision records."""

import sqlite3
import threading
import weakref
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from nudge_engine.config import Settings, ensure_data_dir, get_settings
from nudge_engine.logging import get_logger
from nudge_engine.migrations import (
    SCHEMA,
    SCHEMA_VERSION,
    SchemaVersionError,
    check_schema_version,
    run_migrations,
)
from nudge_engine.storage.decision_log import DecisionLogMixin
from nudge_engine.storage.lifecycle import LifecycleMixin
from nudge_engine.storage.memory_crud import MemoryCrudMixin, ValidationError
from nudge_engine.storage.retrieval import (
    RetrievalMixin,
    calculate_relevance_score,
    relevance_sort_key,
)

log = get_logger("storage")

__all__ = [
    "SchemaVersionError",
    "Storage",
    "ValidationError",
    "calculate_relevance_score",
    "relevance_sort_key",
]


class Storage(MemoryCrudMixin, RetrievalMixin, LifecycleMixin, DecisionLogMixin):
    """SQLite storage manager with thread-safe connection handling.

    All statements go through one connection guarded by a reentrant lock.
    Read-modify-write operations on a user's memories additionally hold that
    user's lock (see ``user_lock``) so decay, prune and reinforcement of the
    same user never interleave.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()  # Reentrant lock for nested calls
        # Entries vanish once no thread holds the lock
        self._user_locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._user_locks_guard = threading.Lock()
        log.info("Storage initialized with db_path={}", self.settings.db_path)

    @property
    def db_path(self) -> Path:
        return self.settings.db_path

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection. Must be called with lock held."""
        if self._conn is None:
            ensure_data_dir(self.settings)
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30.0,  # Wait up to 30s for locks
            )
            self._conn.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrency
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=30000")  # 30s busy timeout

            self._init_schema()
        return self._conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for read operations with thread safety."""
        with self._lock:
            yield self._get_connection()

    def _init_schema(self) -> None:
        """Initialize database schema with version tracking."""
        conn = self._conn
        if conn is None:
            return

        # Check existing schema version before applying migrations
        check_schema_version(conn)

        # Apply base schema first (uses IF NOT EXISTS, safe to re-run)
        conn.executescript(SCHEMA)

        existing_version = conn.execute(
            "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
        ).fetchone()
        current_version = existing_version[0] if existing_version else 0

        run_migrations(conn, current_version)

        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            log.info("Database migrated from v{} to v{}", current_version, SCHEMA_VERSION)

        conn.commit()
        log.debug("Database schema initialized (version={})", SCHEMA_VERSION)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for transactions with thread safety."""
        with self._lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        """Serialize read-modify-write operations on one user's memories.

        Acquire before ``transaction()``; never the other way round.
        """
        with self._user_locks_guard:
            lock = self._user_locks.setdefault(user_id, threading.RLock())
        with lock:
            yield

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def get_schema_version(self) -> int:
        """Get current database schema version."""
        with self._connection() as conn:
            result = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()
            return result[0] if result else 0
