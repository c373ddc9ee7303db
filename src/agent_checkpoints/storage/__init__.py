"""Storage backends"""

from .base import StorageBackend
from .memory import MemoryBackend
from .disk import DiskBackend
from .sqlite import SqliteBackend
from ..utils.config import StorageConfig
from ..utils.errors import ConfigurationError


def create_backend(config: StorageConfig) -> StorageBackend:
    """Build the backend named by ``config.backend``."""
    if config.backend == "disk":
        return DiskBackend(config.path)
    if config.backend == "sqlite":
        return SqliteBackend(config.path)
    if config.backend == "memory":
        return MemoryBackend()
    raise ConfigurationError(f"Unknown storage backend: {config.backend}")


__all__ = [
    'StorageBackend',
    'MemoryBackend',
    'DiskBackend',
    'SqliteBackend',
    'create_backend',
]
