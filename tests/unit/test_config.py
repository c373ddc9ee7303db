"""
Unit tests for configuration loading.
"""

import json
from pathlib import Path

import pytest
import toml
import yaml

from agent_checkpoints.utils.config import (
    ConfigLoader,
    EngineConfig,
    CheckpointConfig,
    StorageConfig,
    load_config,
)
from agent_checkpoints.utils.errors import ConfigurationError


class TestModels:
    """Test config models and their validators."""

    def test_defaults(self):
        config = EngineConfig()

        assert config.checkpoint.anchor_interval == 10
        assert config.checkpoint.compression_threshold == 1024
        assert config.checkpoint.auto_checkpoint_interval == 5
        assert config.checkpoint.max_storage_bytes == 500 * 1024 * 1024
        assert config.checkpoint.retention_days == 30
        assert config.checkpoint.max_records_per_chain == 100
        assert config.storage.backend == "disk"
        assert config.logging.level == "INFO"

    def test_backend_name_normalized(self):
        assert StorageConfig(backend="SQLite").backend == "sqlite"

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValueError):
            StorageConfig(backend="s3")

    def test_path_expanded(self):
        config = StorageConfig(path="~/ckpt")

        assert config.path.is_absolute()
        assert "~" not in str(config.path)

    def test_anchor_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            CheckpointConfig(anchor_interval=0)


class TestConfigLoader:
    """Test ConfigLoader sources and merging."""

    @pytest.mark.asyncio
    async def test_json_yaml_toml_sources(self, temp_dir):
        json_path = temp_dir / "a.json"
        json_path.write_text(json.dumps({"checkpoint": {"anchor_interval": 4}}))
        yaml_path = temp_dir / "b.yaml"
        yaml_path.write_text(yaml.safe_dump({"checkpoint": {"retention_days": 7}}))
        toml_path = temp_dir / "c.toml"
        toml_path.write_text(toml.dumps({"storage": {"backend": "memory"}}))

        loader = ConfigLoader()
        for path in (json_path, yaml_path, toml_path):
            loader.add_source(path)
        config = await loader.load()

        assert config.checkpoint.anchor_interval == 4
        assert config.checkpoint.retention_days == 7
        assert config.storage.backend == "memory"

    @pytest.mark.asyncio
    async def test_higher_priority_wins(self):
        loader = ConfigLoader()
        loader.add_source({"checkpoint": {"anchor_interval": 50}}, priority=5)
        loader.add_source({"checkpoint": {"anchor_interval": 20, "retention_days": 3}}, priority=1)

        config = await loader.load()

        assert config.checkpoint.anchor_interval == 50
        assert config.checkpoint.retention_days == 3

    @pytest.mark.asyncio
    async def test_env_override(self, monkeypatch):
        monkeypatch.setenv("AGENT_CKPT_CHECKPOINT__ANCHOR_INTERVAL", "20")
        monkeypatch.setenv("AGENT_CKPT_CHECKPOINT__SKIP_UNCHANGED", "false")
        monkeypatch.setenv("AGENT_CKPT_STORAGE__PATH", "/tmp/agent-ckpt")

        loader = ConfigLoader()
        loader.add_source({"checkpoint": {"anchor_interval": 5}}, priority=99)
        config = await loader.load()

        assert config.checkpoint.anchor_interval == 20
        assert config.checkpoint.skip_unchanged is False
        assert config.storage.path == Path("/tmp/agent-ckpt")

    @pytest.mark.asyncio
    async def test_dotenv_file(self, temp_dir):
        env_path = temp_dir / "settings.env"
        env_path.write_text(
            "# comment\n"
            "CHECKPOINT__COMPRESSION_LEVEL=9\n"
            "LOGGING__LEVEL='debug'\n"
        )

        loader = ConfigLoader()
        loader.add_source(env_path)
        config = await loader.load()

        assert config.checkpoint.compression_level == 9
        assert config.logging.level == "DEBUG"

    @pytest.mark.asyncio
    async def test_missing_file_ignored(self, temp_dir):
        loader = ConfigLoader()
        loader.add_source(temp_dir / "absent.yaml")

        config = await loader.load()

        assert config == EngineConfig()

    @pytest.mark.asyncio
    async def test_invalid_value_raises(self):
        loader = ConfigLoader()
        loader.add_source({"checkpoint": {"anchor_interval": 0}})

        with pytest.raises(ConfigurationError) as exc_info:
            await loader.load()

        assert "checkpoint.anchor_interval" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_malformed_required_source_raises(self, temp_dir):
        path = temp_dir / "broken.json"
        path.write_text("{not json")

        loader = ConfigLoader()
        loader.add_source(path, priority=100)

        with pytest.raises(ConfigurationError):
            await loader.load()

    @pytest.mark.asyncio
    async def test_malformed_optional_source_skipped(self, temp_dir):
        path = temp_dir / "broken.json"
        path.write_text("{not json")

        loader = ConfigLoader()
        loader.add_source(path)

        config = await loader.load()
        assert config.checkpoint.anchor_interval == 10

    def test_unknown_file_type(self, temp_dir):
        with pytest.raises(ConfigurationError):
            ConfigLoader().add_source(temp_dir / "config.ini")

    @pytest.mark.asyncio
    async def test_reload_notifies_on_change(self, temp_dir):
        path = temp_dir / "config.json"
        path.write_text(json.dumps({"checkpoint": {"anchor_interval": 4}}))
        seen = []

        loader = ConfigLoader()
        loader.add_source(path)
        loader.register_callback(seen.append)
        await loader.load()

        assert await loader.reload() is not None
        assert seen == []

        path.write_text(json.dumps({"checkpoint": {"anchor_interval": 8}}))
        await loader.reload()

        assert [c.checkpoint.anchor_interval for c in seen] == [8]

    def test_get_config_before_load(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader().get_config()


class TestLoadConfig:
    """Test the load_config helper."""

    @pytest.mark.asyncio
    async def test_paths_and_extra_config(self, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text("checkpoint:\n  anchor_interval: 6\n  auto_checkpoint_interval: 2\n")

        config = await load_config(
            config_paths=[path],
            extra_config={"checkpoint": {"anchor_interval": 12}},
            use_defaults=False,
        )

        assert config.checkpoint.anchor_interval == 12
        assert config.checkpoint.auto_checkpoint_interval == 2
