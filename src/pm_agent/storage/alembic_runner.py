"""Programmatic Alembic migrations for the pm-agent SQLite database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, pool

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def upgrade_head(db_path: Path) -> None:
    """Migrate `db_path` to the newest revision; a database already at head is left alone.

    Every CLI command opens its repositories through here, so the common case
    is a cheap revision lookup.
    """

    config = _alembic_config(db_path)
    head = ScriptDirectory.from_config(config).get_current_head()
    current = current_revision(db_path)
    if current == head:
        return
    logger.info("Migrating %s from %s to %s", db_path, current or "empty schema", head)
    command.upgrade(config, "head")


def current_revision(db_path: Path) -> str | None:
    """Revision stored in `alembic_version`, None for an unmigrated database."""

    engine = create_engine(f"sqlite:///{db_path}", poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def _alembic_config(db_path: Path) -> Config:
    config = Config()
    config.set_main_option("script_location", str(_MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config
