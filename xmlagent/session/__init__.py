"""Checkpoint stores: session state keyed by thread id."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from xmlagent.config import SessionConfig, get_config
from xmlagent.exceptions import CheckpointStoreError
from xmlagent.logging import get_logger
from xmlagent.state import SessionState

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class CheckpointInfo:
    """Summary row for listing stored sessions."""

    thread_id: str
    status: str
    entries: int
    updated_at: str


class CheckpointStore(ABC):
    """Load/save contract for session checkpoints."""

    @abstractmethod
    async def load(self, thread_id: str) -> SessionState | None:
        pass

    @abstractmethod
    async def save(self, thread_id: str, state: SessionState) -> None:
        pass

    @abstractmethod
    async def delete(self, thread_id: str) -> bool:
        pass

    @abstractmethod
    async def list_checkpoints(self, limit: int = 10) -> list[CheckpointInfo]:
        pass

    async def close(self) -> None:
        return None


class MemoryCheckpointStore(CheckpointStore):
    """In-process store; states are kept as serialized JSON."""

    def __init__(self):
        self._rows: dict[str, tuple[str, str]] = {}

    async def load(self, thread_id: str) -> SessionState | None:
        row = self._rows.get(thread_id)
        if row is None:
            return None
        return SessionState.from_dict(json.loads(row[0]))

    async def save(self, thread_id: str, state: SessionState) -> None:
        self._rows[thread_id] = (json.dumps(state.to_dict(), ensure_ascii=False), _utcnow_iso())

    async def delete(self, thread_id: str) -> bool:
        return self._rows.pop(thread_id, None) is not None

    async def list_checkpoints(self, limit: int = 10) -> list[CheckpointInfo]:
        items = sorted(self._rows.items(), key=lambda item: item[1][1], reverse=True)[:limit]
        result = []
        for thread_id, (payload, updated_at) in items:
            data = json.loads(payload)
            result.append(CheckpointInfo(
                thread_id=thread_id,
                status=str(data.get("status", "")),
                entries=len(data.get("conversation", [])),
                updated_at=updated_at,
            ))
        return result


class SqliteCheckpointStore(CheckpointStore):
    """Checkpoints in a SQLite table, one row per thread id."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = Path(get_config().session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    thread_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_checkpoints_updated_at ON checkpoints(updated_at)"
            )
            await self._db.commit()
        return self._db

    async def load(self, thread_id: str) -> SessionState | None:
        try:
            async with self._lock:
                db = await self._ensure_db()
                async with db.execute(
                    "SELECT state FROM checkpoints WHERE thread_id = ?",
                    (thread_id,),
                ) as cursor:
                    row = await cursor.fetchone()
            if not row:
                return None
            return SessionState.from_dict(json.loads(row[0]))
        except (aiosqlite.Error, OSError, ValueError, KeyError) as e:
            log.error("Failed to load checkpoint", thread_id=thread_id, error=str(e))
            raise CheckpointStoreError(thread_id, str(e)) from e

    async def save(self, thread_id: str, state: SessionState) -> None:
        try:
            payload = json.dumps(state.to_dict(), ensure_ascii=False)
            async with self._lock:
                db = await self._ensure_db()
                await db.execute(
                    """
                    INSERT OR REPLACE INTO checkpoints (thread_id, state, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    (thread_id, payload, _utcnow_iso()),
                )
                await db.commit()
        except (aiosqlite.Error, OSError, TypeError, ValueError) as e:
            log.error("Failed to save checkpoint", thread_id=thread_id, error=str(e))
            raise CheckpointStoreError(thread_id, str(e)) from e

    async def delete(self, thread_id: str) -> bool:
        try:
            async with self._lock:
                db = await self._ensure_db()
                cursor = await db.execute("DELETE FROM checkpoints WHERE thread_id = ?", (thread_id,))
                await db.commit()
                return cursor.rowcount > 0
        except (aiosqlite.Error, OSError) as e:
            raise CheckpointStoreError(thread_id, str(e)) from e

    async def list_checkpoints(self, limit: int = 10) -> list[CheckpointInfo]:
        """List recently updated checkpoints."""
        async with self._lock:
            db = await self._ensure_db()
            async with db.execute(
                """
                SELECT thread_id, state, updated_at
                FROM checkpoints
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (limit,),
            ) as cursor:
                rows = await cursor.fetchall()

        result = []
        for thread_id, payload, updated_at in rows:
            data = json.loads(payload)
            result.append(CheckpointInfo(
                thread_id=thread_id,
                status=str(data.get("status", "")),
                entries=len(data.get("conversation", [])),
                updated_at=updated_at,
            ))
        return result

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


def create_store(config: SessionConfig | None = None) -> CheckpointStore:
    """Build the store named in config."""
    cfg = config or get_config().session
    if cfg.storage == "memory":
        return MemoryCheckpointStore()
    return SqliteCheckpointStore(cfg.path)


__all__ = [
    "CheckpointInfo",
    "CheckpointStore",
    "MemoryCheckpointStore",
    "SqliteCheckpointStore",
    "create_store",
]
