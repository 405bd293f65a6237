"""
SQLite Connection Manager
Centralized connection handling with context managers to prevent leaks.
"""

import sqlite3
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Union

from gatekeeper.errors import DatabaseError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS communities (
    id TEXT PRIMARY KEY,
    chat_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    bronze_threshold INTEGER NOT NULL,
    silver_threshold INTEGER NOT NULL,
    gold_threshold INTEGER NOT NULL,
    auto_evict INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memberships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    community_id TEXT NOT NULL REFERENCES communities(id) ON DELETE CASCADE,
    participant_id INTEGER NOT NULL,
    username TEXT,
    wallet_address TEXT NOT NULL,
    score INTEGER NOT NULL DEFAULT 0,
    tier TEXT NOT NULL DEFAULT 'none',
    last_checked TEXT,
    joined_at TEXT NOT NULL,
    UNIQUE (community_id, participant_id)
);

CREATE TABLE IF NOT EXISTS used_nonces (
    nonce TEXT PRIMARY KEY,
    participant_id INTEGER NOT NULL,
    used_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    membership_id INTEGER,
    community_id TEXT NOT NULL,
    participant_id INTEGER NOT NULL,
    action TEXT NOT NULL,
    source TEXT NOT NULL,
    old_score INTEGER,
    new_score INTEGER,
    old_tier TEXT,
    new_tier TEXT,
    details TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memberships_community ON memberships(community_id);
CREATE INDEX IF NOT EXISTS idx_used_nonces_used_at ON used_nonces(used_at);
CREATE INDEX IF NOT EXISTS idx_audit_participant ON audit_log(community_id, participant_id);
"""


class SQLitePool:
    """
    SQLite connection manager for one database file.

    Each `get_connection()` opens a short-lived connection, commits on
    success, rolls back on error and always closes.
    """

    def __init__(self, db_path: Union[str, Path], timeout: float = 10.0):
        """
        Args:
            db_path: Path to SQLite database file
            timeout: Busy timeout in seconds
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout

        logger.info(f"Initialized SQLitePool for {self.db_path}")

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        USAGE:
            with pool.get_connection() as conn:
                conn.execute("SELECT * FROM memberships")

        sqlite3 errors that escape the block are re-raised as DatabaseError.
        """
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.timeout,
                check_same_thread=False
            )
        except sqlite3.Error as e:
            logger.error(f"SQLite connect failed for {self.db_path}: {e}")
            raise DatabaseError(f"Database connection failed: {e}") from e

        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"SQLite error: {e}")
            raise DatabaseError(f"Database operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self.get_connection() as conn:
            conn.executescript(SCHEMA)

    def ping(self) -> bool:
        try:
            with self.get_connection() as conn:
                conn.execute("SELECT 1")
            return True
        except DatabaseError:
            return False
