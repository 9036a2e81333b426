"""Database schema and migrations for the nudge engine.

Migrations are versioned and run incrementally when upgrading databases.
"""

import sqlite3

from nudge_engine.logging import get_logger

log = get_logger("migrations")

# Current schema version - increment when making breaking changes
SCHEMA_VERSION = 2

# Timestamps are stored as fixed-width UTC ISO strings so they compare lexicographically
SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT CURRENT_TIMESTAMP
);

-- Per-user memories
CREATE TABLE IF NOT EXISTS user_memories (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    content TEXT NOT NULL,
    context TEXT,
    confidence REAL NOT NULL DEFAULT 0.5,
    evidence_count INTEGER NOT NULL DEFAULT 1,
    decay_rate REAL NOT NULL DEFAULT 0.05,
    created_at TEXT NOT NULL,
    last_used_at TEXT NOT NULL,
    last_decayed_at TEXT NOT NULL,
    expires_at TEXT,
    source_nudge_id TEXT,
    source_protocol_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_user_memories_user ON user_memories(user_id);
CREATE INDEX IF NOT EXISTS idx_user_memories_user_type ON user_memories(user_id, type);
CREATE INDEX IF NOT EXISTS idx_user_memories_decayed ON user_memories(last_decayed_at);
"""


class SchemaVersionError(Exception):
    """Raised when database schema is incompatible."""

    pass


# ========== Individual Migrations ==========


def migrate_v1_to_v2(conn: sqlite3.Connection) -> None:
    """Add decision_log table for decision audit records."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS decision_log (
            id INTEGER PRIMARY KEY,
            user_id TEXT NOT NULL,
            protocol_id TEXT NOT NULL,
            should_deliver INTEGER NOT NULL,
            confidence REAL NOT NULL,
            factors TEXT,
            reasoning TEXT,
            rules_checked TEXT NOT NULL,
            suppressed_by TEXT,
            reason TEXT,
            was_overridden INTEGER NOT NULL DEFAULT 0,
            overridden_rule TEXT,
            nudge_priority TEXT NOT NULL,
            memory_ids TEXT NOT NULL DEFAULT '[]',
            evaluated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_decision_log_user ON decision_log(user_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_decision_log_evaluated ON decision_log(evaluated_at)"
    )
    log.info("Created decision_log table for decision audit")


# ========== Migration Runner ==========


def run_migrations(conn: sqlite3.Connection, from_version: int) -> None:
    """Run schema migrations from from_version to SCHEMA_VERSION."""
    if from_version < 2:
        migrate_v1_to_v2(conn)


def check_schema_version(conn: sqlite3.Connection) -> None:
    """Check schema version compatibility.

    Raises:
        SchemaVersionError: If database schema is newer than supported version.
    """
    table_exists = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name='schema_version'"
    ).fetchone()

    if not table_exists:
        # New database
        return

    current_version = conn.execute(
        "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
    ).fetchone()

    if current_version and current_version[0] > SCHEMA_VERSION:
        raise SchemaVersionError(
            f"Database schema version {current_version[0]} is newer than "
            f"supported version {SCHEMA_VERSION}. Please upgrade nudge-engine."
        )
