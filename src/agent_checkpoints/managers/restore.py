"""
Restore engine.

Reconstructs checkpoint content and hands it to a caller-supplied writer.
The engine never touches the filesystem itself: ``writer(key, content)``
performs the write and ``reader(key)`` supplies current content for
pre-restore backups. Both may be plain functions or coroutines.
"""

import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable, Iterable, Tuple, Union, Awaitable

from .session import SessionManager
from ..checkpoint.models import CheckpointRecord
from ..utils.errors import CheckpointError, ValidationError, error_context
from ..utils.logging import get_logger


logger = get_logger("agent-checkpoints.restore")

Writer = Callable[[str, str], Union[None, Awaitable[None]]]
Reader = Callable[[str], Union[Optional[str], Awaitable[Optional[str]]]]

BACKUP_NAME = "Pre-restore backup"
BACKUP_TAG = "pre-restore"


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


def _locate(records, target: CheckpointRecord, default: int) -> int:
    """Position of ``target``, following a rewrite under a new id"""
    for i, record in enumerate(records):
        if record.record_id == target.record_id:
            return i
    for i, record in enumerate(records):
        if record.created_at == target.created_at and record.content_hash == target.content_hash:
            return i
    return default


@dataclass
class RestoreOutcome:
    """Result of restoring one chain"""
    chain_key: str
    index: Optional[int]
    success: bool
    content: Optional[str] = None
    written: bool = False
    backup: Optional[CheckpointRecord] = None
    error: Optional[CheckpointError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_key": self.chain_key,
            "index": self.index,
            "success": self.success,
            "written": self.written,
            "backup_record_id": self.backup.record_id if self.backup else None,
            "error": self.error.to_dict()["error"] if self.error else None,
        }


@dataclass
class RestoreReport:
    """Per-entry results of a multi-chain restore

    Earlier successes are never rolled back when a later entry fails.
    """
    outcomes: List[RestoreOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[RestoreOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[RestoreOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": [o.to_dict() for o in self.succeeded],
            "failed": [o.to_dict() for o in self.failed],
            "partial": self.partial,
        }


class RestoreEngine:
    """Restores chains, alone or in bulk, optionally writing content back."""

    def __init__(
        self,
        manager: SessionManager,
        writer: Optional[Writer] = None,
        reader: Optional[Reader] = None
    ):
        """
        Initialize restore engine.

        Args:
            manager: Session manager owning the chains
            writer: Called with (key, content) to write restored content
            reader: Called with key to read current content for backups
        """
        self.manager = manager
        self.writer = writer
        self.reader = reader

    async def restore_one(
        self,
        session_id: str,
        key: str,
        index: Optional[int] = None,
        dry_run: bool = False,
        backup: bool = False
    ) -> RestoreOutcome:
        """
        Restore one chain to ``index`` (default: the cursor).

        With ``dry_run`` the content is reconstructed and returned without
        any write or state change. With ``backup`` the current content
        (from the reader) is checkpointed as a FULL record first.

        Raises:
            NotFoundError: unknown session, key or index
            CorruptRecordError: the content could not be reconstructed
        """
        with error_context("restore", "restore_one", session_id=session_id, chain_key=key, index=index):
            if dry_run:
                chain = await self.manager.get_chain(session_id, key)
                target = chain.cursor if index is None else index
                content = chain.reconstruct(target)
                logger.info("restore_dry_run", session_id=session_id, chain_key=key, index=target)
                return RestoreOutcome(chain_key=key, index=target, success=True, content=content)

            if self.writer is None:
                raise ValidationError("writer", None, "a writer is required unless dry_run is set")

            if backup and self.reader is None:
                raise ValidationError("reader", None, "a reader is required for backups")

            chain = await self.manager.get_chain(session_id, key)
            target = chain.cursor if index is None else index
            content = chain.reconstruct(target)
            target_record = chain.get(target)

            # The backup is committed before the writer runs
            backup_record = None
            if backup:
                current = await _maybe_await(self.reader(key))
                if current is not None:
                    backup_record = await self.manager.create_checkpoint(
                        session_id,
                        key,
                        current,
                        name=BACKUP_NAME,
                        description=f"Before restoring {key} to checkpoint {target}",
                        tags=[BACKUP_TAG],
                        force_full=True,
                        at_tail=True,
                    )

            await _maybe_await(self.writer(key, content))

            async with self.manager.mutate_chain(session_id, key) as chain:
                chain.set_cursor(_locate(chain.records, target_record, chain.tail_index))

        logger.info(
            "restore_completed",
            session_id=session_id,
            chain_key=key,
            index=target,
            backup=backup_record is not None
        )
        return RestoreOutcome(
            chain_key=key,
            index=target,
            success=True,
            content=content,
            written=True,
            backup=backup_record,
        )

    async def restore_many(
        self,
        session_id: str,
        entries: Iterable[Tuple[str, Optional[int]]],
        dry_run: bool = False,
        backup: bool = False
    ) -> RestoreReport:
        """Restore each ``(key, index)`` in order and report per-entry results."""
        report = RestoreReport()
        for key, index in entries:
            try:
                outcome = await self.restore_one(
                    session_id, key, index, dry_run=dry_run, backup=backup
                )
            except CheckpointError as e:
                logger.warning(
                    "restore_entry_failed",
                    session_id=session_id,
                    chain_key=key,
                    index=index,
                    code=e.code,
                    error=e.message
                )
                outcome = RestoreOutcome(chain_key=key, index=index, success=False, error=e)
            report.outcomes.append(outcome)

        logger.info(
            "restore_many_completed",
            session_id=session_id,
            succeeded=len(report.succeeded),
            failed=len(report.failed)
        )
        return report

    async def restore_at_timestamp(
        self,
        session_id: str,
        timestamp: datetime,
        dry_run: bool = False,
        backup: bool = False
    ) -> RestoreReport:
        """Restore every chain to its latest checkpoint created at or before ``timestamp``."""
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        session = await self.manager.get_session(session_id)
        entries = []
        for key in sorted(session.chains):
            chain = session.chains[key]
            target = None
            for i, record in enumerate(chain.records):
                if record.created_at <= timestamp:
                    target = i
            if target is not None:
                entries.append((key, target))

        return await self.restore_many(session_id, entries, dry_run=dry_run, backup=backup)


__all__ = [
    'RestoreEngine',
    'RestoreOutcome',
    'RestoreReport',
    'BACKUP_NAME',
    'BACKUP_TAG',
]
