"""
Query engine.

Read-only views over sessions and chains: search, listing, history,
statistics and comparison. Results are derived on demand and never
persisted.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterable, Tuple

from .session import SessionManager
from ..checkpoint.chain import CheckpointChain
from ..checkpoint.models import CheckpointRecord, VcsRef
from ..checkpoint.session import Session
from ..utils.errors import ValidationError, CheckpointError, error_context
from ..utils.logging import get_logger


logger = get_logger("agent-checkpoints.query")

SORT_KEYS = ("timestamp", "size", "key")


@dataclass
class RecordInfo:
    """Record metadata as seen by callers"""
    session_id: str
    chain_key: str
    index: int
    record: CheckpointRecord
    is_current: bool = False

    @property
    def created_at(self) -> datetime:
        return self.record.created_at

    def to_dict(self) -> Dict[str, Any]:
        data = self.record.metadata_dict()
        data["session_id"] = self.session_id
        data["index"] = self.index
        data["is_current"] = self.is_current
        return data


@dataclass
class ChainStats:
    chain_key: str
    record_count: int
    full_count: int
    diff_count: int
    stored_bytes: int
    raw_bytes: int
    cursor: int

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class CheckpointStats:
    """Aggregate statistics for one or all sessions"""
    session_count: int = 0
    chain_count: int = 0
    record_count: int = 0
    full_count: int = 0
    diff_count: int = 0
    compressed_count: int = 0
    stored_bytes: int = 0
    raw_bytes: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None
    chains: Dict[str, ChainStats] = field(default_factory=dict)

    @property
    def compression_ratio(self) -> float:
        """Stored bytes over raw payload bytes (1.0 when nothing is stored)"""
        if not self.raw_bytes:
            return 1.0
        return self.stored_bytes / self.raw_bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_count": self.session_count,
            "chain_count": self.chain_count,
            "record_count": self.record_count,
            "full_count": self.full_count,
            "diff_count": self.diff_count,
            "compressed_count": self.compressed_count,
            "stored_bytes": self.stored_bytes,
            "raw_bytes": self.raw_bytes,
            "compression_ratio": round(self.compression_ratio, 4),
            "oldest": self.oldest.isoformat() if self.oldest else None,
            "newest": self.newest.isoformat() if self.newest else None,
            "chains": {key: s.to_dict() for key, s in self.chains.items()},
        }


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class QueryEngine:
    """Searches and summarizes checkpoint history."""

    def __init__(self, manager: SessionManager):
        self.manager = manager

    async def _sessions(self, session_id: Optional[str]) -> List[Session]:
        if session_id is not None:
            return [await self.manager.get_session(session_id)]

        sessions = []
        for summary in await self.manager.list_sessions():
            try:
                sessions.append(await self.manager.get_session(summary.id))
            except CheckpointError as e:
                logger.warning("session_unavailable", session_id=summary.id, error=e.message)
        return sessions

    @staticmethod
    def _infos(session: Session, chain: CheckpointChain) -> Iterable[RecordInfo]:
        cursor = chain.cursor
        for i, record in enumerate(chain.records):
            yield RecordInfo(
                session_id=session.id,
                chain_key=chain.key,
                index=i,
                record=record,
                is_current=i == cursor,
            )

    async def search(
        self,
        session_id: Optional[str] = None,
        key_pattern: Optional[str] = None,
        time_range: Optional[Tuple[Optional[datetime], Optional[datetime]]] = None,
        tags: Optional[Iterable[str]] = None,
        vcs_ref: Optional[VcsRef] = None,
        name_pattern: Optional[str] = None,
        limit: Optional[int] = None,
        newest_first: bool = True
    ) -> List[RecordInfo]:
        """
        Find checkpoints across one session or all sessions.

        Args:
            session_id: Restrict to one session
            key_pattern: Case-insensitive regex matched against chain keys
            time_range: Inclusive (start, end); either bound may be None
            tags: Match records carrying any of these tags
            vcs_ref: Match records whose ref has the given branch/commit
            name_pattern: Case-insensitive regex matched against record names
            limit: Maximum number of results
            newest_first: Sort order by creation time

        Returns:
            Matching records
        """
        try:
            key_re = re.compile(key_pattern, re.IGNORECASE) if key_pattern else None
            name_re = re.compile(name_pattern, re.IGNORECASE) if name_pattern else None
        except re.error as e:
            raise ValidationError("pattern", e.pattern, f"invalid regular expression: {e}") from e
        if limit is not None and limit < 0:
            raise ValidationError("limit", limit, "must be >= 0")

        start, end = (time_range or (None, None))
        start, end = _aware(start), _aware(end)
        wanted_tags = set(tags or ())

        results = []
        for session in await self._sessions(session_id):
            for key, chain in session.chains.items():
                if key_re and not key_re.search(key):
                    continue
                for info in self._infos(session, chain):
                    record = info.record
                    if start and record.created_at < start:
                        continue
                    if end and record.created_at > end:
                        continue
                    if wanted_tags and not (record.tags & wanted_tags):
                        continue
                    if vcs_ref and not (record.vcs_ref and record.vcs_ref.matches(vcs_ref)):
                        continue
                    if name_re and not (record.name and name_re.search(record.name)):
                        continue
                    results.append(info)

        results.sort(key=lambda i: (i.created_at, i.index), reverse=newest_first)
        if limit is not None:
            results = results[:limit]

        logger.debug("search_completed", session_id=session_id, results=len(results))
        return results

    async def list_records(
        self,
        session_id: str,
        sort_by: str = "timestamp",
        ascending: bool = False
    ) -> List[RecordInfo]:
        """Every record of a session, sorted by timestamp, size or key"""
        if sort_by not in SORT_KEYS:
            raise ValidationError("sort_by", sort_by, f"must be one of {', '.join(SORT_KEYS)}")

        session = await self.manager.get_session(session_id)
        infos = [info for chain in session.chains.values() for info in self._infos(session, chain)]

        if sort_by == "timestamp":
            sort_key = lambda i: (i.created_at, i.chain_key, i.index)
        elif sort_by == "size":
            sort_key = lambda i: (i.record.size_bytes, i.chain_key, i.index)
        else:
            sort_key = lambda i: (i.chain_key, i.index)
        return sorted(infos, key=sort_key, reverse=not ascending)

    async def history(self, session_id: str, key: str) -> List[RecordInfo]:
        """All records of one chain in index order"""
        session = await self.manager.get_session(session_id)
        chain = await self.manager.get_chain(session_id, key)
        return list(self._infos(session, chain))

    async def stats(self, session_id: Optional[str] = None) -> CheckpointStats:
        """Counts, sizes, compression ratio and time range"""
        stats = CheckpointStats()
        sessions = await self._sessions(session_id)
        stats.session_count = len(sessions)

        for session in sessions:
            for key, chain in session.chains.items():
                records = chain.records
                if not records:
                    continue
                full = sum(1 for r in records if r.is_full)
                chain_stats = ChainStats(
                    chain_key=key,
                    record_count=len(records),
                    full_count=full,
                    diff_count=len(records) - full,
                    stored_bytes=chain.storage_bytes,
                    raw_bytes=chain.raw_bytes,
                    cursor=chain.cursor,
                )
                label = key if session_id is not None else f"{session.id}:{key}"
                stats.chains[label] = chain_stats

                stats.chain_count += 1
                stats.record_count += chain_stats.record_count
                stats.full_count += chain_stats.full_count
                stats.diff_count += chain_stats.diff_count
                stats.compressed_count += sum(1 for r in records if r.compressed)
                stats.stored_bytes += chain_stats.stored_bytes
                stats.raw_bytes += chain_stats.raw_bytes

                first, last = records[0].created_at, records[-1].created_at
                for ts in (first, last):
                    if stats.oldest is None or ts < stats.oldest:
                        stats.oldest = ts
                    if stats.newest is None or ts > stats.newest:
                        stats.newest = ts

        return stats

    async def compare(
        self,
        session_id: str,
        key: str,
        from_index: int,
        to_index: int
    ) -> Dict[str, Any]:
        """
        Line diff between two checkpoints of one chain.

        Returns:
            Dict with ``added`` and ``removed`` line counts and ``diff_text``
        """
        chain = await self.manager.get_chain(session_id, key)
        with error_context("query", "compare", session_id=session_id, chain_key=key):
            old = chain.reconstruct(from_index)
            new = chain.reconstruct(to_index)

        codec = self.manager.diff_codec
        diff = codec.encode(old, new)
        return {
            "chain_key": key,
            "from_index": from_index,
            "to_index": to_index,
            "added": diff.added,
            "removed": diff.removed,
            "diff_text": codec.render(old, diff),
        }


__all__ = [
    'QueryEngine',
    'RecordInfo',
    'ChainStats',
    'CheckpointStats',
]
