"""
Checkpoint engine facade.

Wires configuration, logging, a storage backend and the managers together
and exposes the collaborator-facing API. Every call takes an explicit
session id; there is no implicit current session.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable, Tuple, Union, Callable

from .checkpoint.chain import CompactResult
from .checkpoint.models import CheckpointRecord, SessionSummary, VcsRef
from .checkpoint.session import Session
from .managers.maintenance import MaintenanceEngine
from .managers.query import QueryEngine, RecordInfo, CheckpointStats
from .managers.restore import RestoreEngine, RestoreOutcome, RestoreReport, Reader, Writer
from .managers.session import SessionManager, EvictionReport, ContentProvider
from .storage import StorageBackend, create_backend
from .utils.config import EngineConfig, ConfigLoader, default_config_paths
from .utils.errors import ConfigurationError
from .utils.logging import setup_logging, get_logger


logger = get_logger("agent-checkpoints.engine")


class CheckpointEngine:
    """Incremental checkpoint engine for agent-edited text resources."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        backend: Optional[StorageBackend] = None,
        writer: Optional[Writer] = None,
        reader: Optional[Reader] = None,
        clock: Optional[Callable[[], datetime]] = None,
        configure_logging: bool = False
    ):
        """
        Initialize engine.

        Args:
            config: Engine configuration (defaults to EngineConfig())
            backend: Storage backend (defaults to the configured one)
            writer: Restore write callback ``writer(key, content)``
            reader: Current-content callback ``reader(key)`` for backups
            clock: UTC clock override
            configure_logging: Run setup_logging() from config.logging
        """
        self.config = config or EngineConfig()
        self.backend = backend or create_backend(self.config.storage)
        self.configure_logging = configure_logging

        self.sessions = SessionManager(self.config.checkpoint, self.backend, clock=clock)
        self.restorer = RestoreEngine(self.sessions, writer=writer, reader=reader)
        self.query = QueryEngine(self.sessions)
        self.maintenance = MaintenanceEngine(self.sessions)

        self._loader: Optional[ConfigLoader] = None
        self.initialized = False

    @classmethod
    async def from_config_files(
        cls,
        config_paths: Optional[List[Union[str, Path]]] = None,
        extra_config: Optional[Dict[str, Any]] = None,
        use_defaults: bool = True,
        **kwargs
    ) -> 'CheckpointEngine':
        """
        Build an engine from configuration files and AGENT_CKPT_* variables.

        With ``enable_hot_reload`` set, later edits to the files update the
        checkpoint policy of the running engine.
        """
        loader = ConfigLoader()
        if use_defaults:
            for i, path in enumerate(default_config_paths()):
                if path.exists():
                    loader.add_source(path, priority=10 + i)
        for i, path in enumerate(config_paths or []):
            loader.add_source(path, priority=20 + i)
        if extra_config:
            loader.add_source(extra_config, priority=90)

        config = await loader.load()
        engine = cls(config=config, **kwargs)
        engine._loader = loader
        loader.register_callback(engine._on_config_reload)
        return engine

    def _on_config_reload(self, config: EngineConfig) -> None:
        if config.storage != self.config.storage:
            logger.warning("storage_config_change_ignored", backend=config.storage.backend)
        self.config = config.model_copy(update={"storage": self.config.storage})
        self.sessions.apply_config(config.checkpoint)

    async def initialize(self) -> None:
        """Open storage, run the startup expiry sweep and start background tasks."""
        if self.initialized:
            return

        if self.configure_logging:
            log = self.config.logging
            setup_logging(
                app_name=self.config.app_name,
                log_level="DEBUG" if self.config.debug else log.level,
                log_dir=log.directory,
                enable_json=log.format == "json",
                enable_sentry=log.enable_sentry,
                sentry_dsn=log.sentry_dsn,
                max_bytes=log.max_size,
                backup_count=log.backup_count,
            )

        logger.info("initializing_engine", backend=self.backend.name)
        await self.sessions.initialize()
        await self.sessions.start()
        self.initialized = True
        logger.info("engine_initialized")

    async def shutdown(self) -> None:
        """Close active sessions and storage."""
        if self._loader is not None:
            self._loader.shutdown()
        if self.initialized:
            await self.sessions.stop()
            self.initialized = False
        logger.info("engine_shutdown")

    async def __aenter__(self) -> 'CheckpointEngine':
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    def _require_ready(self) -> None:
        if not self.initialized:
            raise ConfigurationError("CheckpointEngine is not initialized; call initialize() first")

    # Sessions

    async def create_session(
        self,
        session_id: Optional[str] = None,
        vcs_branch: Optional[str] = None,
        auto_checkpoint_interval: Optional[int] = None
    ) -> Session:
        self._require_ready()
        return await self.sessions.create_session(session_id, vcs_branch, auto_checkpoint_interval)

    async def resume_session(self, session_id: str) -> Session:
        self._require_ready()
        return await self.sessions.resume_session(session_id)

    async def close_session(self, session_id: str) -> None:
        self._require_ready()
        await self.sessions.close_session(session_id)

    async def delete_session(self, session_id: str) -> bool:
        self._require_ready()
        return await self.sessions.delete_session(session_id)

    async def clear_session(self, session_id: str) -> int:
        self._require_ready()
        return await self.sessions.clear_session(session_id)

    async def list_sessions(self) -> List[SessionSummary]:
        self._require_ready()
        return await self.sessions.list_sessions()

    # Checkpoints

    async def track_edit(
        self,
        session_id: str,
        key: str,
        content_provider: ContentProvider
    ) -> Optional[CheckpointRecord]:
        self._require_ready()
        return await self.sessions.track_edit(session_id, key, content_provider)

    async def create_checkpoint(
        self,
        session_id: str,
        key: str,
        content: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        vcs_ref: Optional[VcsRef] = None,
        force_full: bool = False
    ) -> CheckpointRecord:
        self._require_ready()
        return await self.sessions.create_checkpoint(
            session_id,
            key,
            content,
            name=name,
            description=description,
            tags=tags,
            vcs_ref=vcs_ref,
            force_full=force_full,
        )

    async def get_content(self, session_id: str, key: str, index: Optional[int] = None) -> str:
        self._require_ready()
        return await self.sessions.get_content(session_id, key, index)

    async def undo(self, session_id: str, key: str) -> str:
        self._require_ready()
        return await self.sessions.undo(session_id, key)

    async def redo(self, session_id: str, key: str) -> str:
        self._require_ready()
        return await self.sessions.redo(session_id, key)

    # Restore

    async def restore_one(
        self,
        session_id: str,
        key: str,
        index: Optional[int] = None,
        dry_run: bool = False,
        backup: bool = False
    ) -> RestoreOutcome:
        self._require_ready()
        return await self.restorer.restore_one(session_id, key, index, dry_run=dry_run, backup=backup)

    async def restore_many(
        self,
        session_id: str,
        entries: Iterable[Tuple[str, Optional[int]]],
        dry_run: bool = False,
        backup: bool = False
    ) -> RestoreReport:
        self._require_ready()
        return await self.restorer.restore_many(session_id, entries, dry_run=dry_run, backup=backup)

    async def restore_at_timestamp(
        self,
        session_id: str,
        timestamp: datetime,
        dry_run: bool = False,
        backup: bool = False
    ) -> RestoreReport:
        self._require_ready()
        return await self.restorer.restore_at_timestamp(
            session_id, timestamp, dry_run=dry_run, backup=backup
        )

    # Queries

    async def search(self, session_id: Optional[str] = None, **filters) -> List[RecordInfo]:
        self._require_ready()
        return await self.query.search(session_id=session_id, **filters)

    async def list_records(
        self,
        session_id: str,
        sort_by: str = "timestamp",
        ascending: bool = False
    ) -> List[RecordInfo]:
        self._require_ready()
        return await self.query.list_records(session_id, sort_by=sort_by, ascending=ascending)

    async def history(self, session_id: str, key: str) -> List[RecordInfo]:
        self._require_ready()
        return await self.query.history(session_id, key)

    async def stats(self, session_id: Optional[str] = None) -> CheckpointStats:
        self._require_ready()
        return await self.query.stats(session_id)

    async def compare(self, session_id: str, key: str, from_index: int, to_index: int) -> Dict[str, Any]:
        self._require_ready()
        return await self.query.compare(session_id, key, from_index, to_index)

    # Maintenance

    async def tag(self, session_id: str, key: str, index: int, tags: Iterable[str]) -> CheckpointRecord:
        self._require_ready()
        return await self.maintenance.tag(session_id, key, index, tags)

    async def compact(
        self,
        session_id: str,
        key: Optional[str] = None,
        keep_every_nth: Optional[int] = None,
        max_records: Optional[int] = None
    ) -> Dict[str, CompactResult]:
        self._require_ready()
        return await self.maintenance.compact(session_id, key, keep_every_nth, max_records)

    async def optimize(
        self,
        session_id: str,
        key: Optional[str] = None,
        anchor_every: int = 10
    ) -> Dict[str, List[int]]:
        self._require_ready()
        return await self.maintenance.optimize(session_id, key, anchor_every)

    async def delete_at(self, session_id: str, key: str, index: int) -> CheckpointRecord:
        self._require_ready()
        return await self.maintenance.delete_at(session_id, key, index)

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
        self._require_ready()
        return await self.maintenance.merge_range(
            session_id, key, start, end, name=name, description=description, tags=tags
        )

    async def delete_chain(self, session_id: str, key: str) -> int:
        self._require_ready()
        return await self.maintenance.delete_chain(session_id, key)

    async def enforce_storage_budget(self, strict: bool = False) -> EvictionReport:
        self._require_ready()
        return await self.sessions.enforce_storage_budget(strict=strict)

    async def sweep_expired(self, max_age_days: Optional[int] = None) -> List[str]:
        self._require_ready()
        return await self.sessions.sweep_expired(max_age_days)

    # Export / import

    async def export_session(self, session_id: str, path: Optional[Path] = None) -> Dict[str, Any]:
        self._require_ready()
        return await self.sessions.export_session(session_id, path)

    async def import_session(
        self,
        source: Union[Dict[str, Any], str, Path],
        overwrite: bool = False
    ) -> Session:
        self._require_ready()
        return await self.sessions.import_session(source, overwrite=overwrite)


__all__ = ['CheckpointEngine']
