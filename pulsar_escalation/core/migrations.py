"""Database migration utilities."""

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import text

from pulsar_escalation.database import get_engine
from pulsar_escalation.logging_config import get_logger

logger = get_logger(__name__)


def get_alembic_config() -> Config:
    """Get Alembic configuration."""
    # alembic.ini lives at the project root, next to the migrations directory
    app_root = Path(__file__).parent.parent.parent
    alembic_ini = app_root / "alembic.ini"

    if not alembic_ini.exists():
        raise FileNotFoundError(f"alembic.ini not found at {alembic_ini}")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(app_root / "migrations"))

    return config


def run_migrations() -> None:
    """
    Run all pending database migrations synchronously.

    Alembic's env.py drives the async engine itself, so this must not be
    called from inside a running event loop.
    """
    logger.info("Running database migrations...")

    try:
        config = get_alembic_config()
        command.upgrade(config, "head")
        logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error("Database migration failed", error=str(e))
        raise


async def get_database_revision() -> str | None:
    """Revision recorded in alembic_version, or None if nothing is applied."""
    try:
        async with get_engine().connect() as conn:
            result = await conn.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1")
            )
            row = result.fetchone()
            return row[0] if row is not None else None
    except Exception as e:
        logger.warning("Could not read database revision", error=str(e))
        return None


def get_current_revision() -> str | None:
    """Get the head revision shipped with the code."""
    try:
        script = ScriptDirectory.from_config(get_alembic_config())
        return script.get_current_head()
    except Exception as e:
        logger.warning("Could not read migration head", error=str(e))
        return None


async def check_migrations_current() -> bool:
    """
    Check if all migrations have been applied.

    Returns:
        True if the database is at the latest migration, False otherwise.
    """
    applied = await get_database_revision()
    return applied is not None and applied == get_current_revision()


if __name__ == "__main__":
    run_migrations()
