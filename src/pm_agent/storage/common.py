"""Time, id and engine helpers shared by the repositories."""

from __future__ import annotations

import secrets
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_epoch_millis(value: datetime) -> int:
    """Epoch milliseconds for event payloads."""

    return int(to_utc_aware(value).timestamp() * 1000)


def to_db_datetime(value: datetime) -> datetime:
    """Naive UTC value as stored by SQLite."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware(value: datetime) -> datetime:
    """Attach UTC to naive values read back from SQLite."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine for one repository: WAL journal, busy timeout, enforced foreign keys.

    NullPool opens a fresh connection per session, so every connection gets
    the pragmas and threads never share one.
    """

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": busy_timeout_ms / 1000.0},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in _connection_pragmas(busy_timeout_ms):
                cursor.execute(pragma)
        finally:
            cursor.close()

    return engine


def _connection_pragmas(busy_timeout_ms: int) -> tuple[str, ...]:
    return (
        "PRAGMA journal_mode = WAL",
        "PRAGMA synchronous = NORMAL",
        f"PRAGMA busy_timeout = {busy_timeout_ms}",
        "PRAGMA foreign_keys = ON",
    )


def new_entity_id(prefix: str, now: datetime) -> str:
    """Sortable opaque id: `<prefix>-<epoch millis>-<6 hex chars>`."""

    return f"{prefix}-{to_epoch_millis(now)}-{secrets.token_hex(3)}"
