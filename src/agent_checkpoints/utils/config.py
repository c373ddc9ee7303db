"""
Configuration loader for the checkpoint engine.

This module provides configuration management with:
- Multiple configuration sources (JSON, YAML, TOML, .env files, dicts)
- Environment variable overrides (AGENT_CKPT_ prefix)
- Schema validation through pydantic
- Priority-ordered deep merging
- Optional hot reloading through watchdog
"""

import os
import json
import asyncio
from pathlib import Path
from typing import Optional, Dict, Any, List, Union, Callable

import yaml
import toml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("agent-checkpoints.config")

ENV_PREFIX = "AGENT_CKPT_"
ENV_NESTING = "__"


def _default_root() -> Path:
    return Path.home() / ".agent-checkpoints"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"


class CheckpointConfig(BaseModel):
    """Checkpoint chain and session policy."""
    anchor_interval: int = Field(default=10, ge=1)
    compression_threshold: int = Field(default=1024, ge=0)
    compression_level: int = Field(default=3, ge=1, le=22)
    auto_checkpoint_interval: int = Field(default=5, ge=1)
    max_storage_bytes: int = Field(default=500 * 1024 * 1024, ge=0)
    retention_days: int = Field(default=30, ge=0)
    max_records_per_chain: int = Field(default=100, ge=2)
    skip_unchanged: bool = True
    sweep_interval_seconds: int = Field(default=0, ge=0)
    compact_keep_every_nth: int = Field(default=5, ge=1)


class StorageConfig(BaseModel):
    """Storage backend selection."""
    backend: str = "disk"
    path: Path = Field(default_factory=lambda: _default_root() / "checkpoints")

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        """Validate backend name."""
        valid = ("disk", "sqlite", "memory")
        if v.lower() not in valid:
            raise ValueError(f"Unknown storage backend: {v}")
        return v.lower()

    @field_validator('path')
    @classmethod
    def validate_path(cls, v):
        """Expand user and make absolute."""
        return Path(v).expanduser().absolute()


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Path = Field(default_factory=lambda: _default_root() / "logs")
    max_size: int = 10 * 1024 * 1024
    backup_count: int = 10
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class EngineConfig(BaseModel):
    """Root configuration."""
    app_name: str = "agent-checkpoints"
    debug: bool = False

    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    enable_hot_reload: bool = False

    model_config = ConfigDict(validate_assignment=True)


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self):
        self._sources: List[ConfigSource] = []
        self._config: Optional[EngineConfig] = None
        self._observers: List[Observer] = []
        self._callbacks: List[Callable[[EngineConfig], Any]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = asyncio.Lock()

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type or self._detect_source_type(path)
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        # Lowest priority first so later merges win
        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        elif suffix == ".env":
            return "env"
        raise ConfigurationError(f"Unknown config file type: {suffix}")

    async def load(self) -> EngineConfig:
        """
        Load configuration from all sources.

        Returns:
            Merged, validated configuration
        """
        async with self._lock:
            merged: Dict[str, Any] = {}

            for source in self._sources:
                try:
                    data = self._load_source(source)
                except (OSError, ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
                    logger.error(
                        "failed_to_load_source",
                        source=str(source.path or "dict"),
                        error=str(e)
                    )
                    if source.priority >= 100:
                        raise ConfigurationError(
                            f"Failed to load configuration source {source.path}: {e}",
                            cause=e
                        ) from e
                    continue
                merged = self._deep_merge(merged, data)

            merged = self._deep_merge(merged, self._load_env_vars())

            try:
                self._config = EngineConfig(**merged)
            except ValidationError as e:
                errors = []
                for error in e.errors():
                    loc = ".".join(str(x) for x in error["loc"])
                    errors.append(f"{loc}: {error['msg']}")
                raise ConfigurationError(
                    f"Configuration validation failed: {'; '.join(errors)}"
                ) from e

            logger.info("configuration_loaded", sources=len(self._sources))

            if self._config.enable_hot_reload and not self._observers:
                self._setup_hot_reload()

            return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()

        if source.source_type == "json":
            return json.loads(content)
        elif source.source_type == "yaml":
            return yaml.safe_load(content) or {}
        elif source.source_type == "toml":
            return toml.loads(content)
        elif source.source_type == "env":
            return self._parse_env_lines(content.splitlines(), prefix="")
        raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _parse_env_lines(self, lines: List[str], prefix: str) -> Dict[str, Any]:
        pairs = {}
        for line in lines:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            pairs[key.strip()] = value.strip().strip('"').strip("'")
        return self._nest_env(pairs, prefix)

    def _load_env_vars(self) -> Dict[str, Any]:
        return self._nest_env(dict(os.environ), ENV_PREFIX)

    def _nest_env(self, pairs: Dict[str, str], prefix: str) -> Dict[str, Any]:
        """Turn PREFIX_SECTION__FIELD=value pairs into nested dicts."""
        result: Dict[str, Any] = {}

        for key, value in pairs.items():
            if prefix:
                if not key.startswith(prefix):
                    continue
                key = key[len(prefix):]

            parts = [p for p in key.lower().split(ENV_NESTING) if p]
            if not parts:
                continue

            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._convert_value(value)

        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if "," in value:
            return [v.strip() for v in value.split(",")]

        if value.startswith("/") or value.startswith("~"):
            return Path(value).expanduser()

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _setup_hot_reload(self) -> None:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        watched = set()
        for source in self._sources:
            if source.path and source.path.exists() and source.path.parent not in watched:
                watched.add(source.path.parent)
                observer = Observer()
                observer.schedule(ConfigFileHandler(self), str(source.path.parent), recursive=False)
                observer.start()
                self._observers.append(observer)
                logger.info("hot_reload_enabled", path=str(source.path.parent))

    def watched_paths(self) -> List[Path]:
        """Paths of file sources."""
        return [s.path for s in self._sources if s.path is not None]

    def register_callback(self, callback: Callable[[EngineConfig], Any]) -> None:
        """Register configuration change callback."""
        self._callbacks.append(callback)

    async def reload(self) -> Optional[EngineConfig]:
        """Reload configuration and notify callbacks when it changed."""
        logger.info("reloading_configuration")

        old_config = self._config
        try:
            new_config = await self.load()
        except ConfigurationError as e:
            logger.error("reload_failed", error=str(e))
            return None

        if old_config != new_config:
            for callback in self._callbacks:
                try:
                    if asyncio.iscoroutinefunction(callback):
                        await callback(new_config)
                    else:
                        callback(new_config)
                except Exception as e:
                    logger.error(
                        "callback_error",
                        callback=getattr(callback, "__name__", repr(callback)),
                        error=str(e)
                    )

        return new_config

    def schedule_reload(self) -> None:
        """Schedule a reload from a watchdog thread."""
        if self._loop is not None and not self._loop.is_closed():
            asyncio.run_coroutine_threadsafe(self.reload(), self._loop)

    def get_config(self) -> EngineConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config

    def shutdown(self) -> None:
        """Stop hot reload observers."""
        for observer in self._observers:
            observer.stop()
            observer.join()
        self._observers.clear()


class ConfigFileHandler(FileSystemEventHandler):
    """Reload configuration when a watched source file changes."""

    def __init__(self, loader: ConfigLoader):
        self.loader = loader

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if Path(event.src_path) in self.loader.watched_paths():
            logger.info("config_file_modified", path=event.src_path)
            self.loader.schedule_reload()


def default_config_paths() -> List[Path]:
    """Standard configuration file locations, lowest priority first."""
    root = _default_root()
    return [
        root / "config.toml",
        root / "config.json",
        root / "config.yaml",
        Path("./agent-checkpoints.toml"),
        Path("./agent-checkpoints.json"),
        Path("./agent-checkpoints.yaml"),
    ]


async def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    use_defaults: bool = True
) -> EngineConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge on top
        use_defaults: Also read the default locations

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader()

    if use_defaults:
        for i, path in enumerate(default_config_paths()):
            if path.exists():
                loader.add_source(path, priority=10 + i)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=90)

    return await loader.load()


__all__ = [
    'EngineConfig',
    'CheckpointConfig',
    'StorageConfig',
    'LoggingConfig',
    'ConfigLoader',
    'load_config',
    'default_config_paths',
]
