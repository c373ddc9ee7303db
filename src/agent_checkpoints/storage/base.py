"""
Storage backend interface.

A backend persists three kinds of objects per session:
- the session summary (header)
- the session index (ordered record ids per chain, plus cursors)
- individual checkpoint records

Backends store what they are given; ordering and integrity live above them.
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Iterable

from ..checkpoint.models import CheckpointRecord, SessionSummary, SessionIndex


class StorageBackend(ABC):
    """Abstract async persistence for sessions and records."""

    name: str = "abstract"

    async def initialize(self) -> None:
        """Prepare the backend (create directories, schema, ...)."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def save_summary(self, summary: SessionSummary) -> None:
        pass

    @abstractmethod
    async def load_summary(self, session_id: str) -> Optional[SessionSummary]:
        pass

    @abstractmethod
    async def list_summaries(self) -> List[SessionSummary]:
        pass

    @abstractmethod
    async def save_index(self, session_id: str, index: SessionIndex) -> None:
        pass

    @abstractmethod
    async def load_index(self, session_id: str) -> SessionIndex:
        """Load the index; a missing index is an empty one."""

    @abstractmethod
    async def save_record(self, session_id: str, record: CheckpointRecord) -> None:
        pass

    @abstractmethod
    async def load_record(self, session_id: str, record_id: str) -> CheckpointRecord:
        """
        Load one record.

        Raises:
            NotFoundError: record does not exist
            CorruptRecordError: stored data is malformed
        """

    @abstractmethod
    async def delete_records(self, session_id: str, record_ids: Iterable[str]) -> int:
        """Delete records; unknown ids are ignored. Returns the number removed."""

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        """Delete everything stored for a session."""

    async def session_exists(self, session_id: str) -> bool:
        return await self.load_summary(session_id) is not None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
