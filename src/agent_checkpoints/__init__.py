"""
Agent Checkpoints - incremental checkpoint and versioning engine for
text resources edited by a coding agent.
"""

__version__ = "0.1.0"

from .engine import CheckpointEngine
from .checkpoint import (
    DiffCodec,
    CompressionCodec,
    CheckpointChain,
    CheckpointRecord,
    RecordKind,
    VcsRef,
    Session,
)
from .managers import (
    SessionManager,
    RestoreEngine,
    QueryEngine,
    MaintenanceEngine,
    RestoreReport,
    EvictionReport,
)
from .storage import StorageBackend, MemoryBackend, DiskBackend, SqliteBackend, create_backend
from .utils.config import EngineConfig, CheckpointConfig, StorageConfig, LoggingConfig, load_config
from .utils.errors import (
    CheckpointError,
    NotFoundError,
    BaseProtectedError,
    InvalidRangeError,
    CorruptRecordError,
    BudgetExceededError,
    StorageError,
    ConfigurationError,
    ValidationError,
)

__all__ = [
    "__version__",
    "CheckpointEngine",
    "DiffCodec",
    "CompressionCodec",
    "CheckpointChain",
    "CheckpointRecord",
    "RecordKind",
    "VcsRef",
    "Session",
    "SessionManager",
    "RestoreEngine",
    "QueryEngine",
    "MaintenanceEngine",
    "RestoreReport",
    "EvictionReport",
    "StorageBackend",
    "MemoryBackend",
    "DiskBackend",
    "SqliteBackend",
    "create_backend",
    "EngineConfig",
    "CheckpointConfig",
    "StorageConfig",
    "LoggingConfig",
    "load_config",
    "CheckpointError",
    "NotFoundError",
    "BaseProtectedError",
    "InvalidRangeError",
    "CorruptRecordError",
    "BudgetExceededError",
    "StorageError",
    "ConfigurationError",
    "ValidationError",
]
