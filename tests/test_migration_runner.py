"""
Tests for the startup migration runner.
"""

from unittest.mock import MagicMock, patch

import pytest

from voucherflow.db import migration_runner
from voucherflow.db.migration_runner import (
    MIGRATION_LOCK_KEY,
    get_sync_database_url,
    run_migrations,
)


def executed_sql(conn: MagicMock) -> list[str]:
    return [str(c.args[0]) for c in conn.execute.call_args_list]


@pytest.fixture
def conn():
    connection = MagicMock()
    engine = MagicMock()
    engine.connect.return_value.__enter__.return_value = connection
    with patch.object(migration_runner, "create_engine", return_value=engine):
        yield connection


def revisions(current, head):
    script = MagicMock()
    script.get_current_head.return_value = head
    context = MagicMock()
    context.get_current_revision.return_value = current
    return (
        patch.object(migration_runner.ScriptDirectory, "from_config", return_value=script),
        patch.object(migration_runner.MigrationContext, "configure", return_value=context),
    )


class TestRunMigrations:
    """Tests for run_migrations."""

    def test_sync_url_uses_psycopg2(self):
        """Alembic gets a synchronous driver URL."""
        assert "psycopg2" in get_sync_database_url()
        assert "asyncpg" not in get_sync_database_url()

    def test_up_to_date_skips_upgrade(self, conn):
        """No upgrade runs when the schema is at head."""
        script_patch, context_patch = revisions("2026_10_18_0001", "2026_10_18_0001")

        with script_patch, context_patch, patch.object(migration_runner.command, "upgrade") as up:
            run_migrations()

        up.assert_not_called()
        sql = executed_sql(conn)
        assert "pg_advisory_lock" in sql[0]
        assert "pg_advisory_unlock" in sql[-1]

    def test_behind_upgrades_under_lock(self, conn):
        """Upgrade runs on the locked connection and is committed."""
        script_patch, context_patch = revisions(None, "2026_10_18_0001")

        with script_patch, context_patch, patch.object(migration_runner.command, "upgrade") as up:
            run_migrations()

        alembic_cfg, target = up.call_args.args
        assert target == "head"
        assert alembic_cfg.attributes["connection"] is conn
        assert conn.execute.call_args_list[0].args[1] == {"key": MIGRATION_LOCK_KEY}
        conn.commit.assert_called()

    def test_failure_releases_lock_and_raises(self, conn):
        """A failed upgrade still unlocks and stops startup."""
        script_patch, context_patch = revisions(None, "2026_10_18_0001")

        with (
            script_patch,
            context_patch,
            patch.object(migration_runner.command, "upgrade", side_effect=ValueError("bad sql")),
        ):
            with pytest.raises(RuntimeError, match="Database migration failed"):
                run_migrations()

        assert "pg_advisory_unlock" in executed_sql(conn)[-1]
