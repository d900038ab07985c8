"""Tests for continuum/db/engine.py: PostgreSQL engine.

Requires a running PostgreSQL instance. Skipped if unavailable.
"""

import pytest

from continuum.core.config import DatabaseConfig
from continuum.core.exceptions import ConnectionError, DatabaseError
from continuum.db.engine import DatabaseEngine

from tests.conftest import requires_postgres


@requires_postgres
class TestDatabaseEngine:
    def test_connect_and_ping(self, db_engine):
        assert db_engine.ping() is True
        assert db_engine.fetch_one("SELECT 1 AS num")["num"] == 1

    def test_schema_initialized(self, db_engine):
        """Schema creates every pipeline table."""
        tables = db_engine.fetch_all(
            """SELECT table_name FROM information_schema.tables
               WHERE table_schema = 'public' AND table_type = 'BASE TABLE'"""
        )
        table_names = {r["table_name"] for r in tables}
        expected = {
            "reflections", "insights", "triage_decisions", "tasks",
            "suppression_ledger", "continuity_audit", "agent_pauses", "settings",
        }
        assert expected.issubset(table_names), f"Missing tables: {expected - table_names}"

    def test_schema_is_idempotent(self, db_engine):
        db_engine.initialize_schema()

    def test_execute_returns_rowcount(self, db_engine):
        count = db_engine.execute(
            "INSERT INTO settings (key, value) VALUES (%s, %s::jsonb)", ["exec-test", '{"a": 1}']
        )
        assert count == 1
        row = db_engine.fetch_one("SELECT value FROM settings WHERE key = %s", ["exec-test"])
        assert row["value"] == {"a": 1}

    def test_fetch_one_no_results(self, db_engine):
        assert db_engine.fetch_one("SELECT * FROM settings WHERE key = %s", ["missing"]) is None

    def test_transaction_commit(self, db_engine):
        with db_engine.transaction() as cur:
            cur.execute("INSERT INTO settings (key, value) VALUES ('txn-test', '{}'::jsonb)")
        assert db_engine.fetch_one("SELECT key FROM settings WHERE key = 'txn-test'") is not None

    def test_transaction_rollback(self, db_engine):
        with pytest.raises(RuntimeError):
            with db_engine.transaction() as cur:
                cur.execute("INSERT INTO settings (key, value) VALUES ('rollback-test', '{}'::jsonb)")
                raise RuntimeError("Force rollback")
        assert db_engine.fetch_one("SELECT key FROM settings WHERE key = 'rollback-test'") is None
        assert db_engine.conn.autocommit is True

    def test_bad_query_raises_database_error(self, db_engine):
        with pytest.raises(DatabaseError):
            db_engine.fetch_all("SELECT * FROM no_such_table")


def test_unreachable_server_raises_connection_error():
    engine = DatabaseEngine(DatabaseConfig(host="127.0.0.1", port=1))
    with pytest.raises(ConnectionError):
        engine.fetch_one("SELECT 1")
