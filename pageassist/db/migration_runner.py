"""
Migration Runner - Runs Alembic migrations at application startup.

Enabled with AUTO_MIGRATE=true. Only pending migrations are applied.
"""

from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import Engine, create_engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from pageassist.observability.logging import get_logger

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    """Current vs head revision."""

    current_revision: str | None
    head_revision: str | None
    pending: bool


def to_sync_database_url(url: str) -> str:
    """Convert an asyncpg URL to a psycopg2 URL.

    Alembic's command API uses synchronous connections.
    """
    return url.replace("+asyncpg", "+psycopg2")


def _get_current_revision(engine: Engine) -> str | None:
    """Get the current database revision."""
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    """Get the head revision from migration scripts."""
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def _build_config(sync_url: str) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    # Logging is already configured by structlog
    alembic_cfg.attributes["configure_logger"] = False
    return alembic_cfg


def run_migrations(database_url: str) -> None:
    """
    Run pending Alembic migrations against ``database_url``.

    Raises:
        RuntimeError: If a migration fails
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    sync_url = to_sync_database_url(database_url)
    try:
        alembic_cfg = _build_config(sync_url)
        engine = create_engine(sync_url)

        try:
            current = _get_current_revision(engine)
            head = _get_head_revision(alembic_cfg)

            if current == head:
                logger.info("database_schema_up_to_date", revision=current)
                return

            logger.info("database_migration_started", current=current, head=head)
            command.upgrade(alembic_cfg, "head")

            new_current = _get_current_revision(engine)
            logger.info("database_migration_completed", revision=new_current)

        finally:
            engine.dispose()

    except Exception as e:
        logger.error("database_migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e


def check_migrations_status(database_url: str) -> MigrationStatus:
    """Check migration status without applying anything."""
    sync_url = to_sync_database_url(database_url)
    alembic_cfg = _build_config(sync_url)
    engine = create_engine(sync_url)
    try:
        current = _get_current_revision(engine)
        head = _get_head_revision(alembic_cfg)
        return MigrationStatus(
            current_revision=current,
            head_revision=head,
            pending=current != head,
        )
    finally:
        engine.dispose()
