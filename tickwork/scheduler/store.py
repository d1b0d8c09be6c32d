"""
Run-record persistence.

One durable row per job name, so "last ran at" and "already ran today"
survive a restart. The tracker saves on every begin/complete and loads
everything once at engine start.

DB: ~/.tickwork/runs.db

Table: run_records
    name                 TEXT  PK
    last_run_started_at  REAL
    last_run_ended_at    REAL
    last_outcome         TEXT
    last_error           TEXT
    is_running           INT   (0/1)
    running_since        REAL
    run_count            INT
    updated_at           REAL
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path

import aiosqlite

from tickwork.core.errors import StorageError
from tickwork.scheduler.tracker import Outcome, RunRecord

logger = logging.getLogger(__name__)


class RunStore(ABC):
    """
    Abstract persistence for run records.

    Implementations:
        SQLiteRunStore — file-based, default
        InMemoryRunStore — for testing
    """

    @abstractmethod
    async def load_run_records(self) -> dict[str, RunRecord]:
        """Every persisted record, keyed by job name."""
        ...

    @abstractmethod
    async def save_run_record(self, name: str, record: RunRecord) -> None:
        """Insert or replace the record of *name*."""
        ...

    @abstractmethod
    async def delete_run_record(self, name: str) -> bool:
        """Delete the record of *name*. Returns True if it existed."""
        ...

    async def close(self) -> None:
        """Release any resources. Default: nothing to do."""
        return None


class InMemoryRunStore(RunStore):
    """Dict-backed store. Data lost when process exits."""

    def __init__(self) -> None:
        self._data: dict[str, RunRecord] = {}

    async def load_run_records(self) -> dict[str, RunRecord]:
        return {name: replace(r) for name, r in self._data.items()}

    async def save_run_record(self, name: str, record: RunRecord) -> None:
        self._data[name] = replace(record)

    async def delete_run_record(self, name: str) -> bool:
        return self._data.pop(name, None) is not None


class SQLiteRunStore(RunStore):
    """
    SQLite-backed run records via aiosqlite.

    Usage:
        store = SQLiteRunStore("~/.tickwork/runs.db")
        await store.initialize()

        await store.save_run_record("backup", record)
        records = await store.load_run_records()
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._db_path = Path(db_path or Path.home() / ".tickwork" / "runs.db").expanduser()
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the database and create the table."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(str(self._db_path))
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute(
                """
                CREATE TABLE IF NOT EXISTS run_records (
                    name                TEXT PRIMARY KEY,
                    last_run_started_at REAL,
                    last_run_ended_at   REAL,
                    last_outcome        TEXT NOT NULL DEFAULT 'never_run',
                    last_error          TEXT,
                    is_running          INTEGER NOT NULL DEFAULT 0,
                    running_since       REAL,
                    run_count           INTEGER NOT NULL DEFAULT 0,
                    updated_at          REAL NOT NULL
                )
                """
            )
            await self._db.commit()
            logger.debug(f"SQLiteRunStore initialised at {self._db_path}")
        except Exception as e:
            raise StorageError(f"Failed to initialize SQLite at {self._db_path}: {e}") from e

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db  # type: ignore[return-value]

    async def load_run_records(self) -> dict[str, RunRecord]:
        db = await self._ensure_db()
        try:
            async with db.execute("SELECT * FROM run_records ORDER BY name") as cursor:
                rows = await cursor.fetchall()
        except Exception as e:
            raise StorageError(f"Failed to load run records: {e}") from e
        return {row["name"]: self._row_to_record(row) for row in rows}

    async def save_run_record(self, name: str, record: RunRecord) -> None:
        db = await self._ensure_db()
        try:
            await db.execute(
                """
                INSERT INTO run_records (
                    name, last_run_started_at, last_run_ended_at, last_outcome,
                    last_error, is_running, running_since, run_count, updated_at
                )
                VALUES (
                    :name, :last_run_started_at, :last_run_ended_at, :last_outcome,
                    :last_error, :is_running, :running_since, :run_count, :updated_at
                )
                ON CONFLICT(name) DO UPDATE SET
                    last_run_started_at=excluded.last_run_started_at,
                    last_run_ended_at=excluded.last_run_ended_at,
                    last_outcome=excluded.last_outcome,
                    last_error=excluded.last_error,
                    is_running=excluded.is_running,
                    running_since=excluded.running_since,
                    run_count=excluded.run_count,
                    updated_at=excluded.updated_at
                """,
                {
                    **record.to_dict(),
                    "name": name,
                    "is_running": int(record.is_running),
                    "updated_at": time.time(),
                },
            )
            await db.commit()
        except Exception as e:
            raise StorageError(f"Failed to save run record for {name!r}: {e}") from e

    async def delete_run_record(self, name: str) -> bool:
        db = await self._ensure_db()
        try:
            cursor = await db.execute("DELETE FROM run_records WHERE name = ?", (name,))
            await db.commit()
        except Exception as e:
            raise StorageError(f"Failed to delete run record for {name!r}: {e}") from e
        return cursor.rowcount > 0

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> RunRecord:
        d = dict(row)
        d["is_running"] = bool(d["is_running"])
        d["last_outcome"] = d.get("last_outcome") or Outcome.NEVER_RUN.value
        return RunRecord.from_dict(d)
