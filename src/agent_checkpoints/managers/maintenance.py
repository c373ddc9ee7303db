"""Maintenance operations on chains

Every operation runs through SessionManager.mutate_chain, so it holds the
chain lock and either persists completely or leaves the chain unchanged.
"""

from typing import Optional, Dict, List, Iterable

from .session import SessionManager
from ..checkpoint.chain import CompactResult
from ..checkpoint.models import CheckpointRecord
from ..utils.errors import error_context
from ..utils.logging import get_logger, log_function_call


logger = get_logger("agent-checkpoints.maintenance")


class MaintenanceEngine:
    """Compaction, anchor rewriting, merge, tagging and deletion"""

    def __init__(self, manager: SessionManager):
        self.manager = manager

    @log_function_call(logger)
    async def compact(
        self,
        session_id: str,
        key: Optional[str] = None,
        keep_every_nth: Optional[int] = None,
        max_records: Optional[int] = None
    ) -> Dict[str, CompactResult]:
        """
        Compact one chain, or every chain of the session when ``key`` is None.

        Args:
            keep_every_nth: Defaults to checkpoint.compact_keep_every_nth
            max_records: Defaults to checkpoint.max_records_per_chain
        """
        config = self.manager.config
        nth = config.compact_keep_every_nth if keep_every_nth is None else keep_every_nth
        cap = config.max_records_per_chain if max_records is None else max_records

        keys = [key] if key is not None else await self._keys(session_id)
        results = {}
        for chain_key in keys:
            with error_context("maintenance", "compact", session_id=session_id, chain_key=chain_key):
                async with self.manager.mutate_chain(session_id, chain_key) as chain:
                    results[chain_key] = chain.compact(nth, cap)

        removed = sum(len(r.removed) for r in results.values())
        logger.info("compact_completed", session_id=session_id, chains=len(results), removed=removed)
        return results

    @log_function_call(logger)
    async def optimize(
        self,
        session_id: str,
        key: Optional[str] = None,
        anchor_every: int = 10
    ) -> Dict[str, List[int]]:
        """Rewrite every ``anchor_every``-th record to FULL; content is unchanged."""
        keys = [key] if key is not None else await self._keys(session_id)
        results = {}
        for chain_key in keys:
            with error_context("maintenance", "optimize", session_id=session_id, chain_key=chain_key):
                async with self.manager.mutate_chain(session_id, chain_key) as chain:
                    results[chain_key] = chain.optimize(anchor_every)

        logger.info(
            "optimize_completed",
            session_id=session_id,
            rewritten=sum(len(v) for v in results.values())
        )
        return results

    async def delete_at(self, session_id: str, key: str, index: int) -> CheckpointRecord:
        with error_context("maintenance", "delete_at", session_id=session_id, chain_key=key, index=index):
            async with self.manager.mutate_chain(session_id, key) as chain:
                record = chain.delete_at(index)
        logger.info("checkpoint_deleted", session_id=session_id, chain_key=key, index=index)
        return record

    async def merge_range(
        self,
        session_id: str,
        key: str,
        start: int,
        end: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None
    ) -> CheckpointRecord:
        with error_context("maintenance", "merge_range", session_id=session_id, chain_key=key):
            async with self.manager.mutate_chain(session_id, key) as chain:
                record = chain.merge_range(start, end, name=name, description=description, tags=tags)
        logger.info("checkpoints_merged", session_id=session_id, chain_key=key, start=start, end=end)
        return record

    async def tag(self, session_id: str, key: str, index: int, tags: Iterable[str]) -> CheckpointRecord:
        with error_context("maintenance", "tag", session_id=session_id, chain_key=key, index=index):
            async with self.manager.mutate_chain(session_id, key) as chain:
                return chain.tag(index, tags)

    async def delete_chain(self, session_id: str, key: str) -> int:
        return await self.manager.delete_chain(session_id, key)

    async def _keys(self, session_id: str) -> List[str]:
        session = await self.manager.get_session(session_id)
        return sorted(key for key, chain in session.chains.items() if len(chain))


__all__ = ['MaintenanceEngine']
