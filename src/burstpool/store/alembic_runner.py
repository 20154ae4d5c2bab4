"""Schema migrations for the SQLite object store, shipped inside the package."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, pool

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def store_alembic_config(db_path: Path) -> Config:
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def current_revision(db_path: Path) -> str | None:
    """Revision recorded in the store database, ``None`` before the first upgrade."""

    engine = create_engine(f"sqlite:///{db_path}", poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> str | None:
    """Bring the store schema to the newest revision and return it."""

    config = store_alembic_config(db_path)
    head = ScriptDirectory.from_config(config).get_current_head()
    if current_revision(db_path) == head:
        return head
    logger.info("Migrating object store %s to revision %s", db_path, head)
    command.upgrade(config, "head")
    return head
