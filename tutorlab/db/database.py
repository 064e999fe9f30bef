"""SQLite access through aiosqlite.

Schema lives in schema.sql and is applied by the Alembic baseline migration
at startup. Every caller opens its own short-lived connection, so nothing
holds a connection across requests.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
from alembic import command
from alembic.config import Config

from tutorlab.config import settings

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


async def connect_db(path: str | None = None) -> aiosqlite.Connection:
    db = await aiosqlite.connect(path or settings.database_path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    return db


@asynccontextmanager
async def open_db(path: str | None = None):
    """Open a connection for the duration of one unit of work."""
    db = await connect_db(path)
    try:
        yield db
    finally:
        await db.close()


async def apply_schema(db: aiosqlite.Connection) -> None:
    """Create all tables directly from schema.sql (tests and throwaway databases)."""
    await db.executescript(SCHEMA_PATH.read_text())
    await db.commit()


def _run_alembic_upgrade():
    """Run Alembic migrations to head (synchronous, called once at startup)."""
    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))
    alembic_cfg.set_main_option("sqlalchemy.url", f"sqlite:///{settings.database_path}")
    command.upgrade(alembic_cfg, "head")


async def init_db():
    # Ensure parent directory exists (for Docker volume mounts)
    db_path = Path(settings.database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Using SQLite backend: %s", settings.database_path)

    # Alembic handles all schema creation and migrations
    _run_alembic_upgrade()
