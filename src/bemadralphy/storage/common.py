"""SQLite engine policy and timestamp conventions for the task store."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

SQLITE_PRAGMAS = ("journal_mode = WAL", "foreign_keys = ON")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def db_now() -> datetime:
    """Naive UTC timestamp; SQLite columns store no offset."""

    return utc_now().replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive column value read back from SQLite."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_iso(value: str) -> datetime:
    return as_utc(datetime.fromisoformat(value))


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """NullPool engine; every new connection gets WAL, busy_timeout and FK pragmas.

    Connections are opened per session and shared across execute-phase worker
    threads, hence ``check_same_thread=False``.
    """

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    busy_timeout = max(1, busy_timeout_ms)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in (*SQLITE_PRAGMAS, f"busy_timeout = {busy_timeout}"):
                cursor.execute(f"PRAGMA {pragma}")
        finally:
            cursor.close()

    return engine
