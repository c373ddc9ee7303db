"""
SQLite storage backend.

All sessions share one database file; record payloads are stored as BLOBs
next to their JSON metadata.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional, List, Iterable

import aiosqlite

from .base import StorageBackend
from ..checkpoint.models import CheckpointRecord, SessionSummary, SessionIndex
from ..utils.errors import NotFoundError, StorageError, CorruptRecordError
from ..utils.logging import get_logger


logger = get_logger("agent-checkpoints.storage.sqlite")

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    summary TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chain_index (
    session_id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS records (
    session_id TEXT NOT NULL,
    record_id TEXT NOT NULL,
    chain_key TEXT NOT NULL,
    metadata TEXT NOT NULL,
    payload BLOB NOT NULL,
    PRIMARY KEY (session_id, record_id)
);

CREATE INDEX IF NOT EXISTS idx_records_chain ON records(session_id, chain_key);
"""


class SqliteBackend(StorageBackend):
    """Async SQLite persistence."""

    name = "sqlite"

    def __init__(self, db_path: Path):
        """
        Initialize SQLite backend.

        Args:
            db_path: Database file path, or a directory to hold checkpoints.db
        """
        db_path = Path(db_path)
        if db_path.suffix not in (".db", ".sqlite", ".sqlite3"):
            db_path = db_path / "checkpoints.db"
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._connection is not None:
            return
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(str(self.db_path))
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.executescript(SCHEMA)
            await self._connection.commit()
        except (OSError, aiosqlite.Error) as e:
            raise StorageError(f"Failed to open database {self.db_path}: {e}", cause=e) from e
        logger.info("sqlite_backend_initialized", path=str(self.db_path))

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _db(self) -> aiosqlite.Connection:
        if self._connection is None:
            await self.initialize()
        return self._connection

    async def _write(self, sql: str, parameters: tuple = ()) -> int:
        async with self._lock:
            db = await self._db()
            try:
                cursor = await db.execute(sql, parameters)
                await db.commit()
                return cursor.rowcount
            except aiosqlite.Error as e:
                await db.rollback()
                raise StorageError(f"Database write failed: {e}", cause=e) from e

    async def _fetchone(self, sql: str, parameters: tuple = ()):
        db = await self._db()
        try:
            async with db.execute(sql, parameters) as cursor:
                return await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(f"Database read failed: {e}", cause=e) from e

    async def _fetchall(self, sql: str, parameters: tuple = ()):
        db = await self._db()
        try:
            async with db.execute(sql, parameters) as cursor:
                return await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(f"Database read failed: {e}", cause=e) from e

    @staticmethod
    def _loads(text: str, what: str):
        try:
            return json.loads(text)
        except ValueError as e:
            raise CorruptRecordError(f"Malformed {what}: {e}", cause=e) from e

    async def save_summary(self, summary: SessionSummary) -> None:
        await self._write(
            "INSERT OR REPLACE INTO sessions (id, summary, updated_at) VALUES (?, ?, ?)",
            (summary.id, json.dumps(summary.to_dict()), summary.updated_at.isoformat())
        )

    async def load_summary(self, session_id: str) -> Optional[SessionSummary]:
        row = await self._fetchone("SELECT summary FROM sessions WHERE id = ?", (session_id,))
        if not row:
            return None
        return SessionSummary.from_dict(self._loads(row[0], "session summary"))

    async def list_summaries(self) -> List[SessionSummary]:
        rows = await self._fetchall("SELECT id, summary FROM sessions ORDER BY id")
        summaries = []
        for session_id, text in rows:
            try:
                summaries.append(SessionSummary.from_dict(self._loads(text, "session summary")))
            except CorruptRecordError as e:
                logger.warning("session_summary_unreadable", session_id=session_id, error=e.message)
        return summaries

    async def save_index(self, session_id: str, index: SessionIndex) -> None:
        await self._write(
            "INSERT OR REPLACE INTO chain_index (session_id, data) VALUES (?, ?)",
            (session_id, json.dumps(index.to_dict()))
        )

    async def load_index(self, session_id: str) -> SessionIndex:
        row = await self._fetchone("SELECT data FROM chain_index WHERE session_id = ?", (session_id,))
        if not row:
            return SessionIndex()
        return SessionIndex.from_dict(self._loads(row[0], "session index"))

    async def save_record(self, session_id: str, record: CheckpointRecord) -> None:
        await self._write(
            """
            INSERT OR REPLACE INTO records (session_id, record_id, chain_key, metadata, payload)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                session_id,
                record.record_id,
                record.chain_key,
                json.dumps(record.metadata_dict()),
                record.payload,
            )
        )

    async def load_record(self, session_id: str, record_id: str) -> CheckpointRecord:
        row = await self._fetchone(
            "SELECT metadata, payload FROM records WHERE session_id = ? AND record_id = ?",
            (session_id, record_id)
        )
        if not row:
            raise NotFoundError(f"Record {record_id} not found", session_id=session_id)
        meta = self._loads(row[0], "record metadata")
        return CheckpointRecord.from_dict(meta, payload=bytes(row[1]))

    async def delete_records(self, session_id: str, record_ids: Iterable[str]) -> int:
        ids = list(record_ids)
        if not ids:
            return 0
        async with self._lock:
            db = await self._db()
            try:
                cursor = await db.executemany(
                    "DELETE FROM records WHERE session_id = ? AND record_id = ?",
                    [(session_id, rid) for rid in ids]
                )
                await db.commit()
                return cursor.rowcount
            except aiosqlite.Error as e:
                await db.rollback()
                raise StorageError(f"Failed to delete records: {e}", cause=e) from e

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            db = await self._db()
            try:
                cursor = await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
                existed = cursor.rowcount > 0
                await db.execute("DELETE FROM chain_index WHERE session_id = ?", (session_id,))
                await db.execute("DELETE FROM records WHERE session_id = ?", (session_id,))
                await db.commit()
                return existed
            except aiosqlite.Error as e:
                await db.rollback()
                raise StorageError(f"Failed to delete session {session_id}: {e}", cause=e) from e
