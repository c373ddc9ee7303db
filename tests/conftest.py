"""
Pytest configuration and shared fixtures for agent-checkpoints tests.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Generator, AsyncGenerator, Dict, List

from agent_checkpoints.engine import CheckpointEngine
from agent_checkpoints.managers.session import SessionManager
from agent_checkpoints.storage import MemoryBackend, DiskBackend, SqliteBackend
from agent_checkpoints.utils.config import EngineConfig, CheckpointConfig, StorageConfig


T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeFiles:
    """In-memory stand-in for the files a restore writes to."""

    def __init__(self):
        self.contents: Dict[str, str] = {}
        self.writes: List[str] = []
        self.fail_on: set = set()

    def read(self, key: str):
        return self.contents.get(key)

    def write(self, key: str, content: str) -> None:
        if key in self.fail_on:
            raise OSError(f"disk full while writing {key}")
        self.contents[key] = content
        self.writes.append(key)


def numbered_lines(count: int) -> str:
    return "\n".join(f"line {i}" for i in range(count))


def versions(count: int) -> List[str]:
    """Successive versions of a growing, occasionally edited file."""
    result = []
    for i in range(count):
        lines = [f"line {j}" for j in range(i + 1)]
        if i % 3 == 0:
            lines[0] = f"header v{i}"
        result.append("\n".join(lines))
    return result


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def files() -> FakeFiles:
    return FakeFiles()


@pytest.fixture
def checkpoint_config() -> CheckpointConfig:
    """Policy used by most tests."""
    return CheckpointConfig(
        anchor_interval=10,
        compression_threshold=1024,
        auto_checkpoint_interval=3,
        max_storage_bytes=10 * 1024 * 1024,
        retention_days=30,
        max_records_per_chain=100,
    )


@pytest.fixture(params=["memory", "disk", "sqlite"])
def backend(request, temp_dir: Path):
    """Each storage backend in turn."""
    if request.param == "memory":
        return MemoryBackend()
    if request.param == "disk":
        return DiskBackend(temp_dir / "checkpoints")
    return SqliteBackend(temp_dir / "checkpoints.db")


@pytest.fixture
async def session_manager(
    checkpoint_config: CheckpointConfig,
    clock: FakeClock
) -> AsyncGenerator[SessionManager, None]:
    """Initialized session manager on an in-memory backend."""
    manager = SessionManager(checkpoint_config, MemoryBackend(), clock=clock)
    await manager.initialize()
    yield manager
    await manager.stop()


@pytest.fixture
async def engine(
    temp_dir: Path,
    checkpoint_config: CheckpointConfig,
    clock: FakeClock,
    files: FakeFiles
) -> AsyncGenerator[CheckpointEngine, None]:
    """Initialized engine on an in-memory backend wired to FakeFiles."""
    config = EngineConfig(
        checkpoint=checkpoint_config,
        storage=StorageConfig(backend="memory", path=temp_dir / "unused"),
    )
    engine = CheckpointEngine(config=config, writer=files.write, reader=files.read, clock=clock)
    await engine.initialize()
    yield engine
    await engine.shutdown()
