"""Timestamp conventions and the SQLite engine shared by the plan archive."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

_PRAGMAS = ("journal_mode = WAL", "foreign_keys = ON")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """Naive values are stored as UTC; attach the zone or convert to it."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Archive columns hold naive UTC."""

    return as_utc(value).replace(tzinfo=None)


def to_iso(value: datetime) -> str:
    return as_utc(value).isoformat()


def from_iso(value: str) -> datetime:
    return as_utc(datetime.fromisoformat(value))


def sqlite_engine(db_path: Path, *, busy_timeout_ms: int = 5_000) -> Engine:
    """Engine without pooling; each connection gets WAL, busy timeout and FK enforcement."""

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": max(1.0, busy_timeout_ms / 1000)},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _configure(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in (*_PRAGMAS, f"busy_timeout = {max(1, busy_timeout_ms)}"):
                cursor.execute(f"PRAGMA {pragma}")
        finally:
            cursor.close()

    return engine
