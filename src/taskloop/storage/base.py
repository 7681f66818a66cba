"""Shared SQLite store facade used by the coordinator and learning repositories."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlmodel import Session, col, select

from taskloop.storage.alembic_runner import upgrade_head
from taskloop.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskloop.storage.sqlmodel_models import WorkerHeartbeat


@dataclass(slots=True)
class HeartbeatView:
    """Last-seen marker of one polling loop."""

    name: str
    last_seen: datetime
    status: str | None


class StoreRepository:
    """Owns the engine for one SQLite store; one short session per operation."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def record_heartbeat(self, *, name: str, status: str | None = None) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(WorkerHeartbeat, name)
            if row is None:
                row = WorkerHeartbeat(name=name, last_seen=now, status=status)
            else:
                row.last_seen = now
                row.status = status
            session.add(row)
            session.commit()

    def list_heartbeats(self) -> list[HeartbeatView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkerHeartbeat).order_by(col(WorkerHeartbeat.name).asc()),
            ).all()
        return [
            HeartbeatView(
                name=row.name,
                last_seen=to_utc_aware_datetime(row.last_seen),
                status=row.status,
            )
            for row in rows
        ]
