"""In-process storage backend"""

from typing import Optional, List, Iterable, Dict, Any

from .base import StorageBackend
from ..checkpoint.models import CheckpointRecord, SessionSummary, SessionIndex
from ..utils.errors import NotFoundError


class MemoryBackend(StorageBackend):
    """Keeps serialized copies in dictionaries.

    Objects are stored as their dict form so callers never share mutable
    state with the backend.
    """

    name = "memory"

    def __init__(self):
        self._summaries: Dict[str, Dict[str, Any]] = {}
        self._indexes: Dict[str, Dict[str, Any]] = {}
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def save_summary(self, summary: SessionSummary) -> None:
        self._summaries[summary.id] = summary.to_dict()

    async def load_summary(self, session_id: str) -> Optional[SessionSummary]:
        data = self._summaries.get(session_id)
        return SessionSummary.from_dict(data) if data else None

    async def list_summaries(self) -> List[SessionSummary]:
        return [SessionSummary.from_dict(d) for d in self._summaries.values()]

    async def save_index(self, session_id: str, index: SessionIndex) -> None:
        self._indexes[session_id] = index.to_dict()

    async def load_index(self, session_id: str) -> SessionIndex:
        return SessionIndex.from_dict(self._indexes.get(session_id, {}))

    async def save_record(self, session_id: str, record: CheckpointRecord) -> None:
        self._records.setdefault(session_id, {})[record.record_id] = record.to_dict()

    async def load_record(self, session_id: str, record_id: str) -> CheckpointRecord:
        data = self._records.get(session_id, {}).get(record_id)
        if data is None:
            raise NotFoundError(f"Record {record_id} not found", session_id=session_id)
        return CheckpointRecord.from_dict(data)

    async def delete_records(self, session_id: str, record_ids: Iterable[str]) -> int:
        records = self._records.get(session_id, {})
        removed = 0
        for record_id in record_ids:
            if records.pop(record_id, None) is not None:
                removed += 1
        return removed

    async def delete_session(self, session_id: str) -> bool:
        existed = session_id in self._summaries
        self._summaries.pop(session_id, None)
        self._indexes.pop(session_id, None)
        self._records.pop(session_id, None)
        return existed
