"""
SQLite Database Connection and Schema Management.

Every worker process opens its own connection; processes coordinate only
through the database file (WAL mode, BEGIN IMMEDIATE write transactions).
"""
import sqlite3
import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Optional
from contextlib import contextmanager

logger = logging.getLogger(__name__)

SCHEMA = """
    -- Projects (owned by a user, created by the upload collaborator)
    CREATE TABLE IF NOT EXISTS projects (
        project_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        source_url TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    -- One row per (project, task type)
    CREATE TABLE IF NOT EXISTS tasks (
        project_id TEXT NOT NULL,
        task_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        progress INTEGER NOT NULL DEFAULT 0,
        payload_json TEXT,
        provider_name TEXT,
        provider_job_id TEXT,
        result_json TEXT,
        error TEXT,
        batch_id TEXT,
        poll_attempts INTEGER NOT NULL DEFAULT 0,
        stalled INTEGER NOT NULL DEFAULT 0,
        submission_claim TEXT,
        claimed_at TEXT,
        started_at TEXT,
        completed_at TEXT,
        last_polled_at TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (project_id, task_type),
        FOREIGN KEY (project_id) REFERENCES projects(project_id) ON DELETE CASCADE,
        UNIQUE (provider_name, provider_job_id)
    );

    -- Fanned-out sub-jobs of batch tasks
    CREATE TABLE IF NOT EXISTS batch_items (
        batch_id TEXT NOT NULL,
        item_index INTEGER NOT NULL,
        project_id TEXT NOT NULL,
        task_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        payload_json TEXT,
        provider_name TEXT,
        provider_job_id TEXT,
        output_url TEXT,
        result_json TEXT,
        error TEXT,
        submission_claim TEXT,
        claimed_at TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (batch_id, item_index),
        FOREIGN KEY (project_id, task_type)
            REFERENCES tasks(project_id, task_type) ON DELETE CASCADE,
        UNIQUE (provider_name, provider_job_id)
    );

    -- Output references persisted on completion
    CREATE TABLE IF NOT EXISTS artifacts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id TEXT NOT NULL,
        task_type TEXT NOT NULL,
        item_index INTEGER,
        kind TEXT NOT NULL,
        url TEXT NOT NULL,
        metadata_json TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY (project_id, task_type)
            REFERENCES tasks(project_id, task_type) ON DELETE CASCADE
    );

    -- Outbound token buckets, keyed by provider and user
    CREATE TABLE IF NOT EXISTS rate_limit_buckets (
        bucket_key TEXT PRIMARY KEY,
        tokens REAL NOT NULL,
        updated_at REAL NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_projects_user_id
        ON projects(user_id);
    CREATE INDEX IF NOT EXISTS idx_tasks_status_updated
        ON tasks(status, updated_at);
    CREATE INDEX IF NOT EXISTS idx_tasks_batch_id
        ON tasks(batch_id);
    CREATE INDEX IF NOT EXISTS idx_batch_items_status
        ON batch_items(status);
    CREATE INDEX IF NOT EXISTS idx_artifacts_task
        ON artifacts(project_id, task_type);
"""


def utc_now() -> datetime:
    """Current UTC time."""
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """
    SQLite connection holder.
    Thread-safe: statements and transactions are serialized by a re-entrant lock.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = RLock()
        self._connection: Optional[sqlite3.Connection] = None

    def connection(self) -> sqlite3.Connection:
        """Get or create the SQLite connection and ensure the schema exists."""
        with self._lock:
            if self._connection is None:
                if self.path != ":memory:":
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)

                conn = sqlite3.connect(
                    self.path,
                    check_same_thread=False,
                    isolation_level=None,
                )
                conn.row_factory = sqlite3.Row

                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA foreign_keys=ON")
                conn.execute("PRAGMA busy_timeout=5000")

                init_schema(conn)
                self._connection = conn
                logger.info(f"SQLite connection established: {self.path}")

            return self._connection

    @contextmanager
    def transaction(self):
        """
        Context manager for write transactions.
        Auto-commits on success, rolls back on exception.
        """
        with self._lock:
            conn = self.connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.connection().execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list:
        with self._lock:
            return self.connection().execute(sql, params).fetchall()

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
                logger.info("SQLite connection closed")


def init_schema(conn: sqlite3.Connection) -> None:
    """
    Initialize database schema.
    Creates tables if they don't exist.
    """
    conn.executescript(SCHEMA)
    logger.info("Database schema initialized")
