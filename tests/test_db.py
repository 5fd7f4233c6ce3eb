"""
Tests for schema migrations
"""
import sqlite3
from datetime import datetime, timezone

from job_timeline import db
from job_timeline.db import MIGRATIONS, apply_migrations, from_db_time, schema_version, to_db_time


def _columns(conn, table):
    return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}


class TestMigrations:
    """Migrations are ordered, idempotent and keep existing rows"""

    def _connect(self, path):
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        return conn

    def test_fresh_database_fully_migrated(self, tmp_path):
        conn = self._connect(tmp_path / "fresh.sqlite")
        try:
            applied = apply_migrations(conn)

            assert applied == [version for version, _, _ in MIGRATIONS]
            assert schema_version(conn) == len(MIGRATIONS)
            assert {"failed", "last_error", "failures"} <= _columns(conn, "pipeline")
        finally:
            conn.close()

    def test_rerun_applies_nothing(self, tmp_path):
        conn = self._connect(tmp_path / "again.sqlite")
        try:
            apply_migrations(conn)
            assert apply_migrations(conn) == []
            assert schema_version(conn) == len(MIGRATIONS)
        finally:
            conn.close()

    def test_upgrade_keeps_pending_pipeline_rows(self, tmp_path):
        conn = self._connect(tmp_path / "old.sqlite")
        try:
            assert apply_migrations(conn, target=1) == [1]
            conn.execute(
                "INSERT INTO raw_messages (provider_message_id, account_id, received_at) VALUES (?, ?, ?)",
                ("m1", "me@example.com", "2024-03-01T09:00:00+00:00"),
            )
            conn.execute(
                "INSERT INTO pipeline (provider_message_id, account_id, stage) VALUES (?, ?, ?)",
                ("m1", "me@example.com", "ml_classified"),
            )
            conn.commit()
            assert "failed" not in _columns(conn, "pipeline")

            apply_migrations(conn)

            row = conn.execute("SELECT stage, failed, failures, last_error FROM pipeline").fetchone()
            assert row["stage"] == "ml_classified"
            assert row["failed"] == 0
            assert row["failures"] == 0
            assert row["last_error"] is None
        finally:
            conn.close()

    def test_init_db_uses_given_path(self, tmp_path, monkeypatch):
        monkeypatch.setattr(db, "_db_path", None)
        path = tmp_path / "nested" / "jobs.sqlite"

        db.init_db(path)

        assert path.exists()
        assert db.get_db_path() == path


class TestTimes:
    def test_naive_times_stored_as_utc(self):
        stored = to_db_time(datetime(2024, 3, 1, 9, 0))
        assert from_db_time(stored) == datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        assert from_db_time(None) is None
