"""
Migration Runner - Runs Alembic migrations at application startup.

Enabled with RUN_MIGRATIONS_ON_STARTUP. Applies pending migrations only.
"""

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import Engine, create_engine
from structlog import get_logger

from oneshot.config import settings

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def get_sync_database_url(url: str | None = None) -> str:
    """Synchronous (psycopg2) URL for Alembic, derived from the asyncpg URL."""
    return (url or settings.database_url).replace("asyncpg", "psycopg2")


def _get_current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def run_migrations() -> None:
    """
    Run pending Alembic migrations.

    Raises:
        RuntimeError: A migration failed; the application must not start
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    sync_url = get_sync_database_url()
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    alembic_cfg.attributes["url_locked"] = True

    engine = create_engine(sync_url)
    try:
        current = _get_current_revision(engine)
        head = _get_head_revision(alembic_cfg)

        if current == head:
            logger.info("database_schema_up_to_date", revision=current)
            return

        logger.info("migrations_starting", from_revision=current, to_revision=head)
        command.upgrade(alembic_cfg, "head")
        logger.info("migrations_complete", revision=_get_current_revision(engine))

    except Exception as exc:
        logger.error("migration_failed", error=str(exc))
        raise RuntimeError(f"Database migration failed: {exc}") from exc

    finally:
        engine.dispose()
