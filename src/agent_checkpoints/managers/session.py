"""
Session manager for the checkpoint engine.

Owns every chain, grouped into sessions, and is the only component that
mutates them. Provides:
- Session lifecycle (create/resume/close/delete/clear)
- Chain-granular locking and all-or-nothing persistence of mutations
- Edit tracking with automatic checkpoints
- Storage-budget eviction and expiry sweeps
- Session export and import
"""

import asyncio
import inspect
import json
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, Any, List, Set, Tuple, Union, Callable, Awaitable, Iterable

import aiofiles
import aiofiles.os

from .base import BaseManager
from ..checkpoint.chain import CheckpointChain
from ..checkpoint.compression import CompressionCodec
from ..checkpoint.diff import DiffCodec
from ..checkpoint.models import (
    CheckpointRecord,
    SessionSummary,
    SessionIndex,
    VcsRef,
    content_hash,
    utcnow,
)
from ..checkpoint.session import Session
from ..storage.base import StorageBackend
from ..utils.config import CheckpointConfig
from ..utils.errors import (
    CheckpointError,
    NotFoundError,
    CorruptRecordError,
    BudgetExceededError,
    ValidationError,
    error_context,
)
from ..utils.logging import log_function_call, get_logger


EXPORT_FORMAT = "agent-checkpoints/1"

ContentProvider = Callable[[str], Union[str, Awaitable[str]]]


@dataclass
class EvictionReport:
    """Result of a storage-budget pass"""
    budget_bytes: int
    bytes_before: int
    bytes_after: int = 0
    evicted: List[str] = field(default_factory=list)

    @property
    def over_budget(self) -> bool:
        return self.bytes_after > self.budget_bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "budget_bytes": self.budget_bytes,
            "bytes_before": self.bytes_before,
            "bytes_after": self.bytes_after,
            "evicted": list(self.evicted),
            "over_budget": self.over_budget,
        }


class SessionManager(BaseManager):
    """Manages sessions, their chains, and their persistence."""

    def __init__(
        self,
        config: CheckpointConfig,
        backend: StorageBackend,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize session manager.

        Args:
            config: Chain and session policy
            backend: Storage backend
            clock: Returns the current UTC time (injectable for tests)
        """
        super().__init__("session")
        self.config = config
        self.backend = backend
        self._clock = clock or utcnow

        self.diff_codec = DiffCodec()
        self.compression = CompressionCodec(
            level=config.compression_level,
            threshold=config.compression_threshold
        )

        self._sessions: Dict[str, Session] = {}
        self._indexes: Dict[str, SessionIndex] = {}
        self._active: Set[str] = set()

        self._chain_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._persist_locks: Dict[str, asyncio.Lock] = {}
        self._load_lock = asyncio.Lock()
        self._maintenance_lock = asyncio.Lock()

    def apply_config(self, config: CheckpointConfig) -> None:
        """Switch to a new policy; existing records are left as stored."""
        self.config = config
        self.compression = CompressionCodec(
            level=config.compression_level,
            threshold=config.compression_threshold
        )
        for session in self._sessions.values():
            for chain in session.chains.values():
                chain.anchor_interval = config.anchor_interval
                chain.compression = self.compression
        self.logger.info(
            "checkpoint_config_applied",
            anchor_interval=config.anchor_interval,
            max_storage_bytes=config.max_storage_bytes
        )

    # Lifecycle

    async def _initialize(self) -> None:
        await self.backend.initialize()
        if self.config.retention_days > 0:
            expired = await self.sweep_expired()
            if expired:
                self.logger.info("startup_sweep_completed", removed=len(expired))

    async def _start(self) -> None:
        if self.config.sweep_interval_seconds > 0:
            self._spawn(self._sweep_loop(), name="checkpoint-expiry-sweep")

    async def _stop(self) -> None:
        for session_id in list(self._active):
            await self.close_session(session_id)
        await self.backend.close()

    async def _health_check(self) -> Dict[str, Any]:
        return {
            "backend": self.backend.name,
            "loaded_sessions": len(self._sessions),
            "active_sessions": sorted(self._active),
            "broken_chains": sum(len(s.broken_chains) for s in self._sessions.values()),
        }

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            try:
                await self.sweep_expired()
            except CheckpointError as e:
                self.logger.error("periodic_sweep_failed", error=e.message, code=e.code)
            except Exception as e:
                self.logger.error("periodic_sweep_failed", error=str(e), exc_info=True)

    # Sessions

    @property
    def active_sessions(self) -> Set[str]:
        return set(self._active)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    async def create_session(
        self,
        session_id: Optional[str] = None,
        vcs_branch: Optional[str] = None,
        auto_checkpoint_interval: Optional[int] = None
    ) -> Session:
        """
        Create and activate a new session.

        Raises:
            ValidationError: a session with this id already exists
        """
        session_id = session_id or f"session-{uuid.uuid4().hex[:12]}"
        interval = self.config.auto_checkpoint_interval if auto_checkpoint_interval is None else auto_checkpoint_interval
        if interval < 1:
            raise ValidationError("auto_checkpoint_interval", interval, "must be >= 1")

        async with self._load_lock:
            if session_id in self._sessions or await self.backend.session_exists(session_id):
                raise ValidationError("session_id", session_id, "session already exists")

            now = self._clock()
            session = Session(
                id=session_id,
                created_at=now,
                updated_at=now,
                auto_checkpoint_interval=interval,
                vcs_branch=vcs_branch,
            )
            await self.backend.save_summary(session.summary())
            await self.backend.save_index(session_id, SessionIndex())

            self._sessions[session_id] = session
            self._indexes[session_id] = SessionIndex()
            self._active.add(session_id)

        self.logger.info("session_created", session_id=session_id, vcs_branch=vcs_branch)
        await self._notify_event("session_created", {"session_id": session_id})
        return session

    async def resume_session(self, session_id: str) -> Session:
        """Load a persisted session and mark it active."""
        session = await self.get_session(session_id)
        self._active.add(session_id)
        self.logger.info(
            "session_resumed",
            session_id=session_id,
            chains=len(session.chains),
            broken_chains=len(session.broken_chains)
        )
        return session

    async def close_session(self, session_id: str) -> None:
        """Persist the session header, deactivate it and drop it from memory."""
        session = self._sessions.get(session_id)
        if session is not None:
            await self.backend.save_summary(session.summary())
        self._active.discard(session_id)
        self._sessions.pop(session_id, None)
        self._indexes.pop(session_id, None)
        self._drop_locks(session_id)
        self.logger.info("session_closed", session_id=session_id)

    async def get_session(self, session_id: str) -> Session:
        """Return a session, loading it from storage on first use."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session

        async with self._load_lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = await self._load_session(session_id)
                self._sessions[session_id] = session
        return session

    async def _load_session(self, session_id: str) -> Session:
        summary = await self.backend.load_summary(session_id)
        if summary is None:
            raise NotFoundError(f"Session {session_id} not found", session_id=session_id)

        index = await self.backend.load_index(session_id)
        session = Session(
            id=summary.id,
            created_at=summary.created_at,
            updated_at=summary.updated_at,
            auto_checkpoint_interval=summary.auto_checkpoint_interval,
            vcs_branch=summary.vcs_branch,
        )

        for key, record_ids in index.chains.items():
            try:
                records = [await self.backend.load_record(session_id, rid) for rid in record_ids]
                session.chains[key] = self._new_chain(
                    key,
                    records=records,
                    cursor=index.cursors.get(key)
                )
            except (NotFoundError, CorruptRecordError) as e:
                # Other chains stay usable
                session.broken_chains[key] = e.message
                self.logger.error(
                    "chain_load_failed",
                    session_id=session_id,
                    chain_key=key,
                    error=e.message
                )

        self._indexes[session_id] = index
        self.logger.debug("session_loaded", session_id=session_id, chains=len(session.chains))
        return session

    async def list_sessions(self) -> List[SessionSummary]:
        """Summaries of every stored session, most recently updated first."""
        summaries = {s.id: s for s in await self.backend.list_summaries()}
        for session_id, session in self._sessions.items():
            summaries[session_id] = session.summary()
        return sorted(summaries.values(), key=lambda s: s.updated_at, reverse=True)

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and every record it holds."""
        async with self._maintenance_lock:
            deleted = await self._remove_session(session_id)
        if deleted:
            await self._notify_event("session_deleted", {"session_id": session_id})
        return deleted

    async def clear_session(self, session_id: str) -> int:
        """Delete every chain of a session, keeping the session itself.

        Returns:
            Number of records removed
        """
        session = await self.get_session(session_id)
        keys = set(session.chains) | set(session.broken_chains)
        removed = 0
        for key in sorted(keys):
            removed += await self.delete_chain(session_id, key)
        self.logger.info("session_cleared", session_id=session_id, records_removed=removed)
        return removed

    # Chain access

    def _new_chain(
        self,
        key: str,
        records: Optional[Iterable[CheckpointRecord]] = None,
        cursor: Optional[int] = None
    ) -> CheckpointChain:
        return CheckpointChain(
            key,
            anchor_interval=self.config.anchor_interval,
            diff_codec=self.diff_codec,
            compression=self.compression,
            records=records,
            cursor=cursor,
        )

    def _chain_lock(self, session_id: str, key: str) -> asyncio.Lock:
        lock = self._chain_locks.get((session_id, key))
        if lock is None:
            lock = self._chain_locks[(session_id, key)] = asyncio.Lock()
        return lock

    def _persist_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._persist_locks.get(session_id)
        if lock is None:
            lock = self._persist_locks[session_id] = asyncio.Lock()
        return lock

    def _drop_locks(self, session_id: str) -> None:
        for lock_key in [k for k in self._chain_locks if k[0] == session_id]:
            del self._chain_locks[lock_key]
        self._persist_locks.pop(session_id, None)

    def _chain_error(self, session: Session, key: str) -> CheckpointError:
        if key in session.broken_chains:
            return CorruptRecordError(
                f"Chain {key} failed to load: {session.broken_chains[key]}",
                session_id=session.id,
                chain_key=key
            )
        return NotFoundError(f"No checkpoints for {key}", session_id=session.id, chain_key=key)

    def _lookup_chain(self, session: Session, key: str) -> CheckpointChain:
        chain = session.chains.get(key)
        if chain is None:
            raise self._chain_error(session, key)
        return chain

    async def get_chain(self, session_id: str, key: str) -> CheckpointChain:
        """Return a chain for reading; mutate only through mutate_chain()."""
        session = await self.get_session(session_id)
        return self._lookup_chain(session, key)

    async def get_content(self, session_id: str, key: str, index: Optional[int] = None) -> str:
        """Reconstruct content at ``index`` (default: the cursor) without restoring it."""
        chain = await self.get_chain(session_id, key)
        with error_context("session", "get_content", session_id=session_id, chain_key=key):
            return chain.reconstruct(chain.cursor if index is None else index)

    @asynccontextmanager
    async def mutate_chain(self, session_id: str, key: str, create: bool = False):
        """
        Exclusive, all-or-nothing access to one chain.

        Yields a staged copy of the chain under its lock. On clean exit the
        changes are persisted and the copy replaces the live chain; if the
        block or the persistence raises, the copy is discarded and nothing
        new is referenced from storage. Readers only ever see committed
        chains.

        Args:
            session_id: Session id
            key: Chain key
            create: Create the chain if it does not exist yet
        """
        session = await self.get_session(session_id)
        async with self._chain_lock(session_id, key):
            if self._sessions.get(session_id) is not session:
                raise NotFoundError(f"Session {session_id} not found", session_id=session_id)

            live = session.chains.get(key)
            if live is None:
                if not create or key in session.broken_chains:
                    raise self._chain_error(session, key)
                staged = self._new_chain(key)
            else:
                staged = live.fork()
                staged.anchor_interval = self.config.anchor_interval
                staged.compression = self.compression

            yield staged
            removed = await self._commit_chain(session, staged)
            session.chains[key] = staged

            if removed is not None:
                await self._finish_commit(session, removed)

    async def _commit_chain(self, session: Session, chain: CheckpointChain) -> Optional[List[str]]:
        """Persist one chain's records and index; the index write is the commit point.

        Returns:
            Record ids to delete, or None if nothing changed
        """
        async with self._persist_lock(session.id):
            committed = self._indexes.setdefault(session.id, SessionIndex())
            record_ids = [r.record_id for r in chain.records]
            if (committed.chains.get(chain.key) == record_ids
                    and committed.cursors.get(chain.key) == chain.cursor
                    and not chain.has_changes):
                return None

            dirty, removed = chain.drain_changes()
            for record in dirty:
                await self.backend.save_record(session.id, record)

            index = SessionIndex(chains=dict(committed.chains), cursors=dict(committed.cursors))
            index.chains[chain.key] = record_ids
            index.cursors[chain.key] = chain.cursor
            await self.backend.save_index(session.id, index)
            self._indexes[session.id] = index
        return removed

    async def _finish_commit(self, session: Session, removed: List[str]) -> None:
        session.updated_at = self._clock()
        await self.backend.save_summary(session.summary())
        if removed:
            await self.backend.delete_records(session.id, removed)

    async def delete_chain(self, session_id: str, key: str) -> int:
        """Remove every record of one chain.

        Returns:
            Number of records removed
        """
        session = await self.get_session(session_id)
        async with self._chain_lock(session_id, key):
            async with self._persist_lock(session_id):
                committed = self._indexes.setdefault(session_id, SessionIndex())
                if key not in committed.chains and key not in session.chains:
                    raise NotFoundError(f"No checkpoints for {key}", session_id=session_id, chain_key=key)

                record_ids = set(committed.chains.get(key, []))
                chain = session.chains.get(key)
                if chain is not None:
                    record_ids.update(r.record_id for r in chain.records)
                    record_ids.update(chain.drain_changes()[1])

                index = SessionIndex(chains=dict(committed.chains), cursors=dict(committed.cursors))
                index.chains.pop(key, None)
                index.cursors.pop(key, None)
                await self.backend.save_index(session_id, index)
                self._indexes[session_id] = index
                session.chains.pop(key, None)
                session.broken_chains.pop(key, None)

            session.updated_at = self._clock()
            await self.backend.save_summary(session.summary())
            await self.backend.delete_records(session_id, record_ids)

        self.logger.info("chain_deleted", session_id=session_id, chain_key=key, records=len(record_ids))
        return len(record_ids)

    # Checkpoints

    async def create_checkpoint(
        self,
        session_id: str,
        key: str,
        content: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        vcs_ref: Optional[VcsRef] = None,
        force_full: bool = False,
        at_tail: bool = False
    ) -> CheckpointRecord:
        """
        Record ``content`` as the next checkpoint of ``key``.

        When the content equals the checkpoint at the cursor and
        skip_unchanged is enabled, the existing record is returned instead.
        With ``at_tail`` the record is appended after the last checkpoint
        rather than the cursor, so the redo range is kept.
        """
        if not isinstance(content, str):
            raise ValidationError("content", type(content).__name__, "must be decoded text")

        session = await self.get_session(session_id)
        if vcs_ref is None and session.vcs_branch:
            vcs_ref = VcsRef(branch=session.vcs_branch)

        appended = False
        with error_context("session", "create_checkpoint", session_id=session_id, chain_key=key):
            async with self.mutate_chain(session_id, key, create=True) as chain:
                edits = chain.edit_count
                chain.edit_count = 0
                if at_tail and not chain.is_empty:
                    chain.set_cursor(chain.tail_index)

                if (self.config.skip_unchanged and not force_full
                        and chain.head_hash() == content_hash(content)):
                    record = chain.current_record()
                else:
                    record = chain.append(
                        content,
                        name=name,
                        description=description,
                        tags=tags,
                        vcs_ref=vcs_ref,
                        force_full=force_full,
                        created_at=self._clock(),
                        edit_count=edits,
                    )
                    appended = True
                    record = self._enforce_chain_cap(chain) or record

        if not appended:
            self.logger.debug("checkpoint_unchanged", session_id=session_id, chain_key=key)
            return record

        self.logger.info(
            "checkpoint_created",
            session_id=session_id,
            chain_key=key,
            index=record.sequence_index,
            kind=record.kind.value,
            size_bytes=record.size_bytes,
            compressed=record.compressed
        )
        await self._notify_event("checkpoint_created", {
            "session_id": session_id,
            "chain_key": key,
            "record_id": record.record_id,
        })

        await self.enforce_storage_budget()
        return record

    def _enforce_chain_cap(self, chain: CheckpointChain) -> Optional[CheckpointRecord]:
        """Compact a chain past max_records_per_chain; returns the new tail record if it ran"""
        if len(chain) <= self.config.max_records_per_chain:
            return None
        chain.compact(1, self.config.max_records_per_chain)
        return chain.get(chain.tail_index)

    async def track_edit(
        self,
        session_id: str,
        key: str,
        content_provider: ContentProvider
    ) -> Optional[CheckpointRecord]:
        """
        Count an edit of ``key``; checkpoint once the interval is reached.

        Args:
            session_id: Session id
            key: Chain key
            content_provider: Called with ``key`` to obtain the current
                content when an auto-checkpoint is due; may be async

        Returns:
            The auto-checkpoint record, or None if none was due
        """
        session = await self.get_session(session_id)
        async with self._chain_lock(session_id, key):
            chain = session.chains.get(key)
            if chain is None:
                if key in session.broken_chains:
                    raise self._chain_error(session, key)
                chain = session.chains[key] = self._new_chain(key)
            chain.edit_count += 1
            edits = chain.edit_count

        if edits < session.auto_checkpoint_interval:
            return None

        content = content_provider(key)
        if inspect.isawaitable(content):
            content = await content

        return await self.create_checkpoint(
            session_id,
            key,
            content,
            name=f"Auto-checkpoint at {edits} edits"
        )

    async def undo(self, session_id: str, key: str) -> str:
        async with self.mutate_chain(session_id, key) as chain:
            return chain.undo()

    async def redo(self, session_id: str, key: str) -> str:
        async with self.mutate_chain(session_id, key) as chain:
            return chain.redo()

    # Storage budget and expiry

    async def _usage(self) -> Dict[str, SessionSummary]:
        summaries = {s.id: s for s in await self.backend.list_summaries()}
        for session_id, session in self._sessions.items():
            summaries[session_id] = session.summary()
        return summaries

    @log_function_call(get_logger("agent-checkpoints.managers.session"))
    async def enforce_storage_budget(self, strict: bool = False) -> EvictionReport:
        """
        Evict whole inactive sessions, least recently updated first, until
        total stored bytes fit the budget.

        Args:
            strict: Raise BudgetExceededError if still over budget afterwards

        Returns:
            EvictionReport describing what was evicted
        """
        budget = self.config.max_storage_bytes
        async with self._maintenance_lock:
            usage = await self._usage()
            total = sum(s.storage_bytes for s in usage.values())
            report = EvictionReport(budget_bytes=budget, bytes_before=total)

            if total > budget:
                candidates = sorted(
                    (s for s in usage.values() if s.id not in self._active),
                    key=lambda s: s.updated_at
                )
                for summary in candidates:
                    if total <= budget:
                        break
                    if await self._remove_session(summary.id):
                        total -= summary.storage_bytes
                        report.evicted.append(summary.id)
                        self.logger.info(
                            "session_evicted",
                            session_id=summary.id,
                            freed_bytes=summary.storage_bytes,
                            updated_at=summary.updated_at.isoformat()
                        )

            report.bytes_after = total

        for session_id in report.evicted:
            await self._notify_event("session_evicted", {"session_id": session_id})

        if report.over_budget:
            self.logger.warning(
                "storage_budget_exceeded",
                budget_bytes=budget,
                used_bytes=total,
                active_sessions=sorted(self._active)
            )
            if strict:
                raise BudgetExceededError(
                    f"Storage usage {total} bytes exceeds budget {budget} bytes "
                    f"with only active sessions left",
                    budget_bytes=budget,
                    used_bytes=total
                )
        return report

    @log_function_call(get_logger("agent-checkpoints.managers.session"))
    async def sweep_expired(self, max_age_days: Optional[int] = None) -> List[str]:
        """
        Delete inactive sessions not updated within ``max_age_days``.

        Returns:
            Ids of deleted sessions
        """
        days = self.config.retention_days if max_age_days is None else max_age_days
        cutoff = self._clock() - timedelta(days=days)
        removed = []

        async with self._maintenance_lock:
            for summary in (await self._usage()).values():
                if summary.id in self._active or summary.updated_at >= cutoff:
                    continue
                if await self._remove_session(summary.id):
                    removed.append(summary.id)
                    self.logger.info(
                        "session_expired",
                        session_id=summary.id,
                        updated_at=summary.updated_at.isoformat()
                    )

        for session_id in removed:
            await self._notify_event("session_expired", {"session_id": session_id})
        return removed

    async def _remove_session(self, session_id: str) -> bool:
        """Delete a session once no mutation is in flight on it."""
        session = self._sessions.get(session_id)
        keys = set(session.chains) if session else set()
        keys.update(k for (sid, k) in self._chain_locks if sid == session_id)
        locks = [self._chain_lock(session_id, key) for key in sorted(keys)]

        for lock in locks:
            await lock.acquire()
        try:
            deleted = await self.backend.delete_session(session_id)
            deleted = session is not None or deleted
            self._sessions.pop(session_id, None)
            self._indexes.pop(session_id, None)
            self._active.discard(session_id)
        finally:
            for lock in reversed(locks):
                lock.release()

        self._drop_locks(session_id)
        if deleted:
            self.logger.info("session_deleted", session_id=session_id)
        return deleted

    # Export / import

    async def export_session(self, session_id: str, path: Optional[Path] = None) -> Dict[str, Any]:
        """
        Serialize a session with every record.

        Args:
            session_id: Session id
            path: Also write the document here as JSON

        Returns:
            The export document
        """
        session = await self.get_session(session_id)
        chains = {}
        for key, chain in session.chains.items():
            if not len(chain):
                continue
            chains[key] = {
                "cursor": chain.cursor,
                "records": [record.to_dict() for record in chain.records],
            }

        document = {
            "format": EXPORT_FORMAT,
            "exported_at": self._clock().isoformat(),
            "session": session.summary().to_dict(),
            "chains": chains,
        }

        if path is not None:
            await self._write_document(Path(path), document)
            self.logger.info("session_exported", session_id=session_id, path=str(path))
        return document

    async def import_session(
        self,
        source: Union[Dict[str, Any], str, Path],
        overwrite: bool = False
    ) -> Session:
        """
        Recreate a session from an export document or file.

        Every chain is fully reconstructed and verified before anything is
        written.

        Raises:
            ValidationError: malformed document, or the id exists and
                overwrite is False
            CorruptRecordError: a record does not reproduce its content
        """
        document = source if isinstance(source, dict) else await self._read_document(Path(source))
        if document.get("format") != EXPORT_FORMAT:
            raise ValidationError("format", document.get("format"), f"must be {EXPORT_FORMAT!r}")

        summary = SessionSummary.from_dict(document.get("session") or {})
        raw_chains = document.get("chains")
        if not isinstance(raw_chains, dict):
            raise ValidationError("chains", type(raw_chains).__name__, "must be an object")

        session = Session(
            id=summary.id,
            created_at=summary.created_at,
            updated_at=summary.updated_at,
            auto_checkpoint_interval=summary.auto_checkpoint_interval,
            vcs_branch=summary.vcs_branch,
        )
        for key, entry in raw_chains.items():
            records = [CheckpointRecord.from_dict(data) for data in entry.get("records", [])]
            chain = self._new_chain(key, records=records, cursor=entry.get("cursor"))
            with error_context("session", "import_session", session_id=summary.id, chain_key=key):
                for i in range(len(chain)):
                    chain.reconstruct(i)
            chain.drain_changes()
            session.chains[key] = chain

        if await self.backend.session_exists(summary.id) or summary.id in self._sessions:
            if not overwrite:
                raise ValidationError("session_id", summary.id, "session already exists")
            await self.delete_session(summary.id)

        async with self._load_lock:
            for chain in session.chains.values():
                for record in chain.records:
                    await self.backend.save_record(session.id, record)
            index = session.index()
            await self.backend.save_index(session.id, index)
            await self.backend.save_summary(session.summary())

            self._sessions[session.id] = session
            self._indexes[session.id] = index
            self._active.add(session.id)

        self.logger.info(
            "session_imported",
            session_id=session.id,
            chains=len(session.chains),
            records=session.record_count
        )
        return session

    async def _write_document(self, path: Path, document: Dict[str, Any]) -> None:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        temp_path = path.with_suffix(path.suffix + ".tmp")
        async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(document, indent=2))
        await aiofiles.os.replace(temp_path, path)

    async def _read_document(self, path: Path) -> Dict[str, Any]:
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                document = json.loads(await f.read())
        except FileNotFoundError as e:
            raise NotFoundError(f"Export file {path} not found", cause=e) from e
        except ValueError as e:
            raise ValidationError("document", str(path), f"must be valid JSON ({e})") from e
        if not isinstance(document, dict):
            raise ValidationError("document", str(path), "must be a JSON object")
        return document


__all__ = [
    'SessionManager',
    'EvictionReport',
    'EXPORT_FORMAT',
]
