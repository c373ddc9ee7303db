"""
Filesystem storage backend.

Layout::

    <root>/<session_id>/session.json
    <root>/<session_id>/index.json
    <root>/<session_id>/records/<record_id>.json   metadata
    <root>/<session_id>/records/<record_id>.bin    payload bytes

Every write goes to a temporary file first and is renamed into place, so
readers never see a partially written object.
"""

import asyncio
import json
import shutil
import uuid
from pathlib import Path
from typing import Optional, List, Iterable, Dict, Any

import aiofiles
import aiofiles.os

from .base import StorageBackend
from ..checkpoint.models import CheckpointRecord, SessionSummary, SessionIndex
from ..utils.errors import NotFoundError, StorageError, CorruptRecordError
from ..utils.logging import get_logger


logger = get_logger("agent-checkpoints.storage.disk")

SUMMARY_FILE = "session.json"
INDEX_FILE = "index.json"
RECORDS_DIR = "records"


class DiskBackend(StorageBackend):
    """Stores sessions as directories of JSON and binary files."""

    name = "disk"

    def __init__(self, root: Path):
        """
        Initialize disk backend.

        Args:
            root: Directory holding one subdirectory per session
        """
        self.root = Path(root)

    async def initialize(self) -> None:
        await aiofiles.os.makedirs(self.root, exist_ok=True)
        logger.info("disk_backend_initialized", root=str(self.root))

    def _session_dir(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            raise StorageError(f"Invalid session id: {session_id!r}", session_id=session_id)
        return self.root / session_id

    def _record_paths(self, session_id: str, record_id: str):
        records = self._session_dir(session_id) / RECORDS_DIR
        return records / f"{record_id}.json", records / f"{record_id}.bin"

    async def _write_atomic(self, path: Path, data: bytes) -> None:
        temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(temp_path, 'wb') as f:
                await f.write(data)
            await aiofiles.os.replace(temp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}", cause=e) from e

    async def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        await self._write_atomic(path, json.dumps(data, indent=2).encode("utf-8"))

    async def _read_bytes(self, path: Path) -> Optional[bytes]:
        try:
            async with aiofiles.open(path, 'rb') as f:
                return await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}", cause=e) from e

    async def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        raw = await self._read_bytes(path)
        if raw is None:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise CorruptRecordError(f"Malformed JSON in {path}: {e}", cause=e) from e

    async def save_summary(self, summary: SessionSummary) -> None:
        await self._write_json(self._session_dir(summary.id) / SUMMARY_FILE, summary.to_dict())

    async def load_summary(self, session_id: str) -> Optional[SessionSummary]:
        data = await self._read_json(self._session_dir(session_id) / SUMMARY_FILE)
        return SessionSummary.from_dict(data) if data else None

    async def list_summaries(self) -> List[SessionSummary]:
        if not await aiofiles.os.path.isdir(self.root):
            return []

        summaries = []
        for entry in sorted(await aiofiles.os.listdir(self.root)):
            if entry.startswith("."):
                continue
            try:
                summary = await self.load_summary(entry)
            except CorruptRecordError as e:
                logger.warning("session_summary_unreadable", session_id=entry, error=e.message)
                continue
            if summary:
                summaries.append(summary)
        return summaries

    async def save_index(self, session_id: str, index: SessionIndex) -> None:
        await self._write_json(self._session_dir(session_id) / INDEX_FILE, index.to_dict())

    async def load_index(self, session_id: str) -> SessionIndex:
        data = await self._read_json(self._session_dir(session_id) / INDEX_FILE)
        return SessionIndex.from_dict(data or {})

    async def save_record(self, session_id: str, record: CheckpointRecord) -> None:
        meta_path, payload_path = self._record_paths(session_id, record.record_id)
        # Payload first, then metadata. Rewritten content always gets a new
        # record id, so a failed write never corrupts a committed record
        await self._write_atomic(payload_path, record.payload)
        await self._write_json(meta_path, record.metadata_dict())

    async def load_record(self, session_id: str, record_id: str) -> CheckpointRecord:
        meta_path, payload_path = self._record_paths(session_id, record_id)
        meta = await self._read_json(meta_path)
        if meta is None:
            raise NotFoundError(f"Record {record_id} not found", session_id=session_id)

        payload = await self._read_bytes(payload_path)
        if payload is None:
            raise CorruptRecordError(
                f"Payload for record {record_id} is missing",
                session_id=session_id,
                chain_key=meta.get("chain_key")
            )
        return CheckpointRecord.from_dict(meta, payload=payload)

    async def delete_records(self, session_id: str, record_ids: Iterable[str]) -> int:
        removed = 0
        for record_id in record_ids:
            found = False
            for path in self._record_paths(session_id, record_id):
                try:
                    await aiofiles.os.remove(path)
                    found = True
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise StorageError(f"Failed to delete {path}: {e}", cause=e) from e
            if found:
                removed += 1
        return removed

    async def delete_session(self, session_id: str) -> bool:
        session_dir = self._session_dir(session_id)
        if not await aiofiles.os.path.isdir(session_dir):
            return False
        try:
            await asyncio.to_thread(shutil.rmtree, session_dir)
        except OSError as e:
            raise StorageError(f"Failed to delete session {session_id}: {e}", cause=e) from e
        return True
