from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import ConversionDispatchRecord, ConversionType


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    Snapshot-plus-ledger persistence. Uses SQLAlchemy and supports both SQLite and PostgreSQL URLs.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.state_snapshots = Table(
            "state_snapshots",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.conversion_dispatches = Table(
            "conversion_dispatches",
            self.metadata,
            Column("id", String(255), primary_key=True),
            Column("contact_id", String(64), nullable=False, index=True),
            Column("event_name", String(50), nullable=False),
            Column("event_id", String(255), nullable=False),
            Column("event_time", BigInteger, nullable=False),
            Column("dispatched_at_utc", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def save_snapshot(self, payload: dict) -> None:
        with self._lock:
            serialized = json.dumps(payload)
            now = datetime.now(timezone.utc).replace(tzinfo=None)
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.state_snapshots.c.id).where(self.state_snapshots.c.id == "default")
                ).first()
                if existing:
                    conn.execute(
                        self.state_snapshots.update()
                        .where(self.state_snapshots.c.id == "default")
                        .values(payload_json=serialized, updated_at_utc=now)
                    )
                else:
                    conn.execute(
                        self.state_snapshots.insert().values(
                            id="default",
                            payload_json=serialized,
                            updated_at_utc=now,
                        )
                    )

    def load_snapshot(self) -> Optional[dict]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.state_snapshots.c.payload_json).where(
                        self.state_snapshots.c.id == "default"
                    )
                ).first()
            if not row:
                return None
            return json.loads(row[0])

    def insert_conversion_dispatch(self, record: ConversionDispatchRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.conversion_dispatches.c.id).where(
                        self.conversion_dispatches.c.id == record.id
                    )
                ).first()
                if existing:
                    return
                conn.execute(
                    self.conversion_dispatches.insert().values(
                        id=record.id,
                        contact_id=record.contact_id,
                        event_name=record.event_name.value,
                        event_id=record.event_id,
                        event_time=record.event_time,
                        dispatched_at_utc=_as_utc(record.dispatched_at).replace(tzinfo=None),
                    )
                )

    def list_conversion_dispatches(self, limit: int = 500) -> list[ConversionDispatchRecord]:
        safe_limit = max(1, min(limit, 5000))
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(
                        self.conversion_dispatches.c.id,
                        self.conversion_dispatches.c.contact_id,
                        self.conversion_dispatches.c.event_name,
                        self.conversion_dispatches.c.event_id,
                        self.conversion_dispatches.c.event_time,
                        self.conversion_dispatches.c.dispatched_at_utc,
                    )
                    .order_by(self.conversion_dispatches.c.dispatched_at_utc.desc())
                    .limit(safe_limit)
                ).all()

        output: list[ConversionDispatchRecord] = []
        for row in rows:
            output.append(
                ConversionDispatchRecord(
                    id=row.id,
                    contact_id=row.contact_id,
                    event_name=ConversionType(row.event_name),
                    event_id=row.event_id,
                    event_time=int(row.event_time),
                    dispatched_at=_as_utc(row.dispatched_at_utc),
                )
            )
        return output
