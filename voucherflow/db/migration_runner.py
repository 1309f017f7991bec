"""
Migration Runner - Applies Alembic migrations at application startup.

Only invoked when RUN_MIGRATIONS_ON_STARTUP is set; otherwise migrations are
applied out of band with `alembic upgrade head`.

Several API replicas may start at once. The upgrade runs under a PostgreSQL
session advisory lock, so one replica migrates while the others wait and then
find the schema already at head.
"""

from pathlib import Path

from sqlalchemy import Connection, create_engine, text

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from voucherflow.config import settings
from voucherflow.observability.logging import get_logger

logger = get_logger(__name__)

ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"

# Arbitrary constant shared by every replica; identifies the migration lock
MIGRATION_LOCK_KEY = 0x766F7563


def get_sync_database_url() -> str:
    """Synchronous (psycopg2) form of DATABASE_URL for Alembic."""
    return settings.database_url.replace("asyncpg", "psycopg2")


def build_alembic_config(sync_url: str) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    return alembic_cfg


def _current_revision(conn: Connection) -> str | None:
    return MigrationContext.configure(conn).get_current_revision()


def _upgrade_locked(conn: Connection, alembic_cfg: Config) -> None:
    head = ScriptDirectory.from_config(alembic_cfg).get_current_head()

    conn.execute(text("SELECT pg_advisory_lock(:key)"), {"key": MIGRATION_LOCK_KEY})
    try:
        current = _current_revision(conn)
        if current == head:
            logger.info("database_schema_up_to_date", revision=current)
            return

        logger.info("running_migrations", from_revision=current, to_revision=head)
        # env.py picks up the locked connection instead of opening its own
        alembic_cfg.attributes["connection"] = conn
        command.upgrade(alembic_cfg, "head")
        conn.commit()
        logger.info("migrations_complete", revision=_current_revision(conn))
    finally:
        conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": MIGRATION_LOCK_KEY})
        conn.commit()


def run_migrations() -> None:
    """
    Upgrade the schema to head, if it is behind.

    Raises:
        RuntimeError: Migration failed; the application must not start
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    sync_url = get_sync_database_url()
    engine = create_engine(sync_url)
    try:
        with engine.connect() as conn:
            _upgrade_locked(conn, build_alembic_config(sync_url))
    except Exception as e:
        logger.error("migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e
    finally:
        engine.dispose()
