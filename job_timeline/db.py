"""SQLite datastore: connection handling and versioned schema migrations."""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .models import to_utc

logger = logging.getLogger(__name__)

DB_PATH = Path(__file__).parent.parent / "data" / "jobs.sqlite"

_db_path: Optional[Path] = None


def get_db_path() -> Path:
    return _db_path if _db_path is not None else DB_PATH


def get_connection() -> sqlite3.Connection:
    """Get SQLite database connection."""
    path = get_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def to_db_time(value: datetime) -> str:
    return to_utc(value).isoformat()


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return to_utc(datetime.fromisoformat(value))


def _column_names(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}


def _add_column(conn: sqlite3.Connection, table: str, name: str, definition: str) -> None:
    if name in _column_names(conn, table):
        logger.debug(f"Column {table}.{name} already present")
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {definition}")


def _create_core_tables(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS raw_messages (
            provider_message_id TEXT NOT NULL,
            account_id TEXT NOT NULL,
            thread_id TEXT,
            subject TEXT NOT NULL DEFAULT '',
            from_address TEXT NOT NULL DEFAULT '',
            received_at TEXT NOT NULL,
            body_text TEXT NOT NULL DEFAULT '',
            ingested_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (provider_message_id, account_id)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS pipeline (
            provider_message_id TEXT NOT NULL,
            account_id TEXT NOT NULL,
            stage TEXT NOT NULL DEFAULT 'fetched',
            is_digest INTEGER,
            digest_reason TEXT,
            is_job_related INTEGER,
            confidence REAL,
            company TEXT,
            position TEXT,
            status TEXT,
            extraction_method TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            model_id TEXT,
            decision TEXT,
            job_id TEXT,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (provider_message_id, account_id),
            FOREIGN KEY (provider_message_id, account_id)
                REFERENCES raw_messages (provider_message_id, account_id)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            company TEXT NOT NULL,
            position TEXT NOT NULL,
            similarity_key TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'Applied',
            first_seen_date TEXT NOT NULL,
            confidence REAL NOT NULL DEFAULT 0,
            classification_model TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS job_emails (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL REFERENCES jobs (id),
            account_id TEXT NOT NULL,
            message_id TEXT NOT NULL,
            date TEXT NOT NULL,
            subject TEXT NOT NULL DEFAULT '',
            UNIQUE (account_id, message_id)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS job_threads (
            account_id TEXT NOT NULL,
            thread_id TEXT NOT NULL,
            job_id TEXT NOT NULL REFERENCES jobs (id),
            PRIMARY KEY (account_id, thread_id)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS review_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            provider_message_id TEXT NOT NULL,
            account_id TEXT NOT NULL,
            classification TEXT NOT NULL,
            confidence REAL NOT NULL,
            retention_days INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            manually_reviewed INTEGER NOT NULL DEFAULT 0,
            UNIQUE (provider_message_id, account_id)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            started_at TEXT NOT NULL,
            accounts_synced INTEGER NOT NULL DEFAULT 0,
            messages_fetched INTEGER NOT NULL DEFAULT 0,
            messages_classified INTEGER NOT NULL DEFAULT 0,
            jobs_found INTEGER NOT NULL DEFAULT 0,
            duration_seconds REAL NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            error TEXT
        )
    """)


def _add_pipeline_failure_columns(conn: sqlite3.Connection) -> None:
    _add_column(conn, "pipeline", "failed", "INTEGER NOT NULL DEFAULT 0")
    _add_column(conn, "pipeline", "last_error", "TEXT")


def _create_status_history(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS status_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL REFERENCES jobs (id),
            status TEXT NOT NULL,
            message_id TEXT,
            changed_at TEXT NOT NULL
        )
    """)


def _add_pipeline_failure_count(conn: sqlite3.Connection) -> None:
    _add_column(conn, "pipeline", "failures", "INTEGER NOT NULL DEFAULT 0")
    conn.execute("UPDATE pipeline SET failures = attempts WHERE failed = 1")


def _create_indexes(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE INDEX IF NOT EXISTS idx_pipeline_account_stage ON pipeline (account_id, stage)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_raw_messages_thread ON raw_messages (account_id, thread_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_account_seen ON jobs (account_id, first_seen_date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_similarity_key ON jobs (account_id, similarity_key)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_review_expires ON review_items (expires_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_status_history_job ON status_history (job_id)")


# Ordered, append-only. Each step must be idempotent and additive so that
# databases holding unprocessed pipeline rows keep working after an upgrade.
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "core_tables", _create_core_tables),
    (2, "pipeline_failure_columns", _add_pipeline_failure_columns),
    (3, "status_history", _create_status_history),
    (4, "indexes", _create_indexes),
    (5, "pipeline_failure_count", _add_pipeline_failure_count),
]


def schema_version(conn: sqlite3.Connection) -> int:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)
    row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
    return row[0] or 0


def apply_migrations(conn: sqlite3.Connection, target: Optional[int] = None) -> list[int]:
    """Apply every pending migration up to ``target`` (all by default)."""
    current = schema_version(conn)
    conn.commit()
    applied = []

    for version, name, migrate in MIGRATIONS:
        if version <= current or (target is not None and version > target):
            continue
        try:
            conn.execute("BEGIN IMMEDIATE")
            migrate(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, name) VALUES (?, ?)",
                (version, name),
            )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            logger.exception(f"Migration {version} ({name}) failed")
            raise
        logger.info(f"Applied migration {version}: {name}")
        applied.append(version)

    return applied


def init_db(db_path: Optional[Path] = None) -> None:
    """Point the module at ``db_path`` (if given) and bring its schema up to date."""
    global _db_path

    if db_path is not None:
        _db_path = Path(db_path)

    conn = get_connection()
    try:
        applied = apply_migrations(conn)
        if applied:
            logger.debug(f"Database initialized at {get_db_path()} (migrations {applied})")
    finally:
        conn.close()
