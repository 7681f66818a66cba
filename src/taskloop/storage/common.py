"""Common helpers for storage repositories."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Normalize to naive UTC, the representation SQLite stores."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def optional_utc(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""

    db_url = f"sqlite:///{db_path}"
    engine = create_engine(
        db_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def load_json_list(raw: str | None, *, field_name: str, record_id: str) -> list[object]:
    """Decode a stored JSON array, tolerating malformed rows.

    Malformed values are logged and treated as empty so one corrupted record
    never aborts a poll cycle.
    """

    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed JSON in %s for record %s, using []", field_name, record_id)
        return []
    if not isinstance(parsed, list):
        logger.warning("Expected JSON array in %s for record %s, using []", field_name, record_id)
        return []
    return parsed


def load_json_dict(raw: str | None, *, field_name: str, record_id: str) -> dict[str, object]:
    """Decode a stored JSON object, tolerating malformed rows."""

    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed JSON in %s for record %s, using {}", field_name, record_id)
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Expected JSON object in %s for record %s, using {}", field_name, record_id)
        return {}
    return parsed


def load_str_list(raw: str | None, *, field_name: str, record_id: str) -> list[str]:
    return [
        item
        for item in load_json_list(raw, field_name=field_name, record_id=record_id)
        if isinstance(item, str)
    ]


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()
