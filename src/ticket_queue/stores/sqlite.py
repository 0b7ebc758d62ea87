"""SQLite-backed store for pending tasks (SQLModel + SQLAlchemy)."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sqlalchemy import Column, Float, Index, Text, event, func
from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_PATH = Path(".ticket_queue.db")

CONNECTION_PRAGMAS = ("journal_mode = WAL", "synchronous = NORMAL", "temp_store = MEMORY")


class PendingTaskRow(SQLModel, table=True):
    __tablename__ = "pending_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_pending_tasks_order", "priority", "seq"),)

    seq: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(unique=True, index=True)
    payload: str = Field(sa_column=Column(Text, nullable=False))
    priority: float = Field(default=0.0, sa_column=Column(Float, nullable=False))


@dataclass(slots=True)
class PendingTaskView:
    """Read-only view of one pending row for listings."""

    seq: int
    task_id: str
    priority: float
    payload: Any


class SqliteStore:
    """Pending tasks persisted in one SQLite table.

    Payloads must be JSON-serializable. ``take_*`` select and delete the
    returned rows inside a single transaction.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        busy_timeout_ms: int = 5_000,
        **_options: Any,
    ) -> None:
        self.db_path = Path(path) if path is not None else DEFAULT_SQLITE_PATH
        self.busy_timeout_ms = busy_timeout_ms
        self._engine: Engine | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("SqliteStore.connect() has not been called")
        return self._engine

    def connect(self) -> None:
        if self._engine is not None:
            return
        engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False},
            poolclass=NullPool,
        )
        event.listen(engine, "connect", self._configure_connection)
        self._engine = engine
        SQLModel.metadata.create_all(self._engine, tables=[PendingTaskRow.__table__])
        logger.info("SQLite store ready at %s", self.db_path)

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def put_task(self, task_id: str, task: Any, priority: float | None = None) -> None:
        payload = json.dumps(task)
        with Session(self.engine) as session:
            row = session.exec(
                select(PendingTaskRow).where(PendingTaskRow.task_id == task_id),
            ).one_or_none()
            if row is None:
                row = PendingTaskRow(task_id=task_id, payload=payload)
            row.payload = payload
            row.priority = float(priority or 0)
            session.add(row)
            session.commit()

    def get_task(self, task_id: str) -> Any | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(PendingTaskRow).where(PendingTaskRow.task_id == task_id),
            ).one_or_none()
            return None if row is None else json.loads(row.payload)

    def delete_task(self, task_id: str) -> None:
        with Session(self.engine) as session:
            session.execute(sa_delete(PendingTaskRow).where(col(PendingTaskRow.task_id) == task_id))
            session.commit()

    def take_first_n(self, n: int) -> dict[str, Any]:
        return self._take(n, newest_first=False)

    def take_last_n(self, n: int) -> dict[str, Any]:
        return self._take(n, newest_first=True)

    def count(self) -> int:
        with Session(self.engine) as session:
            return session.exec(select(func.count()).select_from(PendingTaskRow)).one()

    def list_pending(self, *, limit: int = 100) -> list[PendingTaskView]:
        """Pending rows in first-out order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(PendingTaskRow)
                .order_by(col(PendingTaskRow.priority).desc(), col(PendingTaskRow.seq).asc())
                .limit(limit),
            ).all()
            return [
                PendingTaskView(
                    seq=row.seq or 0,
                    task_id=row.task_id,
                    priority=row.priority,
                    payload=json.loads(row.payload),
                )
                for row in rows
            ]

    def _take(self, n: int, *, newest_first: bool) -> dict[str, Any]:
        if n <= 0:
            return {}
        seq_order = col(PendingTaskRow.seq).desc() if newest_first else col(PendingTaskRow.seq).asc()
        with Session(self.engine) as session:
            rows = session.exec(
                select(PendingTaskRow)
                .order_by(col(PendingTaskRow.priority).desc(), seq_order)
                .limit(n),
            ).all()
            taken = {row.task_id: json.loads(row.payload) for row in rows}
            for row in rows:
                session.delete(row)
            session.commit()
        return taken

    def _configure_connection(self, dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in (*CONNECTION_PRAGMAS, f"busy_timeout = {max(1, self.busy_timeout_ms)}"):
                cursor.execute(f"PRAGMA {pragma}")
        finally:
            cursor.close()
