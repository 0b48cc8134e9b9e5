"""Audit records of finished worker invocations, with SQLite storage."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from taskloom.config import get_config
from taskloom.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class InvocationRecord:
    """One finished worker invocation (audit and cost accounting)."""

    task_id: str
    worker_kind: str
    status: str
    confidence: float
    tokens_in: int = 0
    tokens_out: int = 0
    model: str = ""
    duration: float = 0.0
    error: str | None = None
    outcome: str = ""
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class PersistenceSink(ABC):
    """Receives every completed invocation."""

    @abstractmethod
    async def record(self, record: InvocationRecord) -> None:
        pass

    async def close(self) -> None:
        return None


class NullPersistenceSink(PersistenceSink):
    async def record(self, record: InvocationRecord) -> None:
        return None


class MemoryPersistenceSink(PersistenceSink):
    """Keeps records in a list."""

    def __init__(self) -> None:
        self.records: list[InvocationRecord] = []

    async def record(self, record: InvocationRecord) -> None:
        self.records.append(record)


_COLUMNS = (
    "task_id", "worker_kind", "status", "confidence", "tokens_in", "tokens_out",
    "model", "duration", "error", "outcome", "created_at",
)


class SQLiteInvocationStore(PersistenceSink):
    """Stores invocation records in a single SQLite table."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = Path(get_config().persistence.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS invocations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL,
                    worker_kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    tokens_in INTEGER NOT NULL DEFAULT 0,
                    tokens_out INTEGER NOT NULL DEFAULT 0,
                    model TEXT NOT NULL DEFAULT '',
                    duration REAL NOT NULL DEFAULT 0,
                    error TEXT,
                    outcome TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_invocations_created_at ON invocations(created_at)"
            )
            await self._db.commit()

    async def record(self, record: InvocationRecord) -> None:
        """Insert one record."""
        await self._ensure_db()
        placeholders = ", ".join("?" for _ in _COLUMNS)
        await self._db.execute(
            f"INSERT INTO invocations ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            tuple(getattr(record, column) for column in _COLUMNS),
        )
        await self._db.commit()
        log.debug("Invocation recorded", task_id=record.task_id, status=record.status)

    async def list_recent(self, limit: int = 20) -> list[InvocationRecord]:
        """List the most recent records, newest first.

        Args:
            limit: Maximum number to return

        Returns:
            List of records
        """
        await self._ensure_db()

        async with self._db.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM invocations ORDER BY id DESC LIMIT ?",
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()

        return [InvocationRecord(**dict(zip(_COLUMNS, row))) for row in rows]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


def persistence_from_config() -> PersistenceSink:
    """SQLite store when persistence is enabled, otherwise a null sink."""
    cfg = get_config().persistence
    if not cfg.enabled:
        return NullPersistenceSink()
    return SQLiteInvocationStore(cfg.path)
