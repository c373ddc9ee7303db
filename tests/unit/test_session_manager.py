"""
Unit tests for SessionManager: lifecycle, locking, auto-checkpoints,
storage budget and expiry.
"""

import asyncio

import pytest

from agent_checkpoints.checkpoint.models import RecordKind, VcsRef
from agent_checkpoints.managers.session import SessionManager
from agent_checkpoints.storage import MemoryBackend, DiskBackend
from agent_checkpoints.utils.config import CheckpointConfig
from agent_checkpoints.utils.errors import (
    NotFoundError,
    CorruptRecordError,
    BudgetExceededError,
    ValidationError,
)

from conftest import versions


async def make_manager(backend, clock, **overrides) -> SessionManager:
    manager = SessionManager(CheckpointConfig(**overrides), backend, clock=clock)
    await manager.initialize()
    return manager


class TestSessionLifecycle:
    """Test session creation, resumption and deletion."""

    @pytest.mark.asyncio
    async def test_create_session(self, session_manager, clock):
        session = await session_manager.create_session("s1", vcs_branch="main")

        assert session.id == "s1"
        assert session.created_at == clock.now
        assert session.auto_checkpoint_interval == 3
        assert session_manager.is_active("s1")
        assert await session_manager.backend.load_summary("s1") is not None

    @pytest.mark.asyncio
    async def test_generated_session_id(self, session_manager):
        session = await session_manager.create_session()

        assert session.id.startswith("session-")

    @pytest.mark.asyncio
    async def test_duplicate_session_rejected(self, session_manager):
        await session_manager.create_session("s1")

        with pytest.raises(ValidationError):
            await session_manager.create_session("s1")

    @pytest.mark.asyncio
    async def test_unknown_session(self, session_manager):
        with pytest.raises(NotFoundError):
            await session_manager.get_session("nope")

    @pytest.mark.asyncio
    async def test_resume_after_close(self, session_manager):
        await session_manager.create_session("s1")
        await session_manager.create_checkpoint("s1", "a.py", "one")
        await session_manager.create_checkpoint("s1", "a.py", "two")
        await session_manager.undo("s1", "a.py")
        await session_manager.close_session("s1")

        assert not session_manager.is_active("s1")

        session = await session_manager.resume_session("s1")
        chain = session.chains["a.py"]
        assert session_manager.is_active("s1")
        assert len(chain) == 2
        assert chain.cursor == 0
        assert await session_manager.get_content("s1", "a.py") == "one"

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, session_manager):
        await session_manager.create_session("s1")
        await session_manager.create_session("s2")
        await session_manager.create_checkpoint("s1", "a.py", "from s1")

        with pytest.raises(NotFoundError):
            await session_manager.get_chain("s2", "a.py")

    @pytest.mark.asyncio
    async def test_list_sessions_newest_first(self, session_manager, clock):
        await session_manager.create_session("old")
        clock.advance(minutes=1)
        await session_manager.create_session("new")
        clock.advance(minutes=1)
        await session_manager.create_checkpoint("old", "a.py", "x")

        summaries = await session_manager.list_sessions()

        assert [s.id for s in summaries] == ["old", "new"]
        assert summaries[0].record_count == 1

    @pytest.mark.asyncio
    async def test_delete_session(self, session_manager):
        await session_manager.create_session("s1")
        await session_manager.create_checkpoint("s1", "a.py", "x")

        assert await session_manager.delete_session("s1") is True
        assert not session_manager.is_active("s1")
        with pytest.raises(NotFoundError):
            await session_manager.get_session("s1")
        assert await session_manager.delete_session("s1") is False

    @pytest.mark.asyncio
    async def test_clear_session(self, session_manager):
        await session_manager.create_session("s1")
        await session_manager.create_checkpoint("s1", "a.py", "x")
        await session_manager.create_checkpoint("s1", "b.py", "y")
        await session_manager.create_checkpoint("s1", "b.py", "z")

        removed = await session_manager.clear_session("s1")
        session = await session_manager.get_session("s1")

        assert removed == 3
        assert session.chains == {}
        assert (await session_manager.backend.load_index("s1")).chains == {}

    @pytest.mark.asyncio
    async def test_delete_chain(self, session_manager):
        await session_manager.create_session("s1")
        await session_manager.create_checkpoint("s1", "a.py", "x")
        await session_manager.create_checkpoint("s1", "b.py", "y")

        assert await session_manager.delete_chain("s1", "a.py") == 1
        with pytest.raises(NotFoundError):
            await session_manager.get_chain("s1", "a.py")
        assert await session_manager.get_content("s1", "b.py") == "y"

        with pytest.raises(NotFoundError):
            await session_manager.delete_chain("s1", "a.py")


class TestCreateCheckpoint:
    """Test createCheckpoint."""

    @pytest.mark.asyncio
    async def test_create_and_read(self, session_manager, clock):
        await session_manager.create_session("s1", vcs_branch="feature")
        record = await session_manager.create_checkpoint("s1", "a.py", "hello", name="first")

        assert record.sequence_index == 0
        assert record.kind is RecordKind.FULL
        assert record.created_at == clock.now
        assert record.vcs_ref == VcsRef(branch="feature")
        assert await session_manager.get_content("s1", "a.py", 0) == "hello"

    @pytest.mark.asyncio
    async def test_explicit_vcs_ref_wins(self, session_manager):
        await session_manager.create_session("s1", vcs_branch="main")
        ref = VcsRef(branch="topic", commit="deadbeef")
        record = await session_manager.create_checkpoint("s1", "a.py", "x", vcs_ref=ref)

        assert record.vcs_ref == ref

    @pytest.mark.asyncio
    async def test_unchanged_content_skipped(self, session_manager):
        await session_manager.create_session("s1")
        first = await session_manager.create_checkpoint("s1", "a.py", "same")
        second = await session_manager.create_checkpoint("s1", "a.py", "same")

        assert second.record_id == first.record_id
        assert len(await session_manager.get_chain("s1", "a.py")) == 1

    @pytest.mark.asyncio
    async def test_force_full_bypasses_skip(self, session_manager):
        await session_manager.create_session("s1")
        await session_manager.create_checkpoint("s1", "a.py", "same")
        record = await session_manager.create_checkpoint("s1", "a.py", "same", force_full=True)

        assert record.sequence_index == 1
        assert record.kind is RecordKind.FULL

    @pytest.mark.asyncio
    async def test_skip_disabled(self, clock):
        manager = await make_manager(MemoryBackend(), clock, skip_unchanged=False)
        await manager.create_session("s1")
        await manager.create_checkpoint("s1", "a.py", "same")
        await manager.create_checkpoint("s1", "a.py", "same")

        assert len(await manager.get_chain("s1", "a.py")) == 2

    @pytest.mark.asyncio
    async def test_non_text_rejected(self, session_manager):
        await session_manager.create_session("s1")

        with pytest.raises(ValidationError):
            await session_manager.create_checkpoint("s1", "a.py", b"bytes")

    @pytest.mark.asyncio
    async def test_per_chain_cap(self, clock):
        manager = await make_manager(MemoryBackend(), clock, max_records_per_chain=5)
        await manager.create_session("s1")
        contents = versions(8)
        for content in contents:
            await manager.create_checkpoint("s1", "a.py", content)

        chain = await manager.get_chain("s1", "a.py")
        assert len(chain) == 5
        assert chain.reconstruct(0) == contents[0]
        assert [chain.reconstruct(i) for i in range(1, 5)] == contents[4:]

    @pytest.mark.asyncio
    async def test_concurrent_checkpoints(self, session_manager):
        await session_manager.create_session("s1")
        contents = [f"version {i}" for i in range(10)]

        await asyncio.gather(*[
            session_manager.create_checkpoint("s1", "same.py", content)
            for content in contents
        ], *[
            session_manager.create_checkpoint("s1", f"file{i}.py", "x")
            for i in range(5)
        ])

        chain = await session_manager.get_chain("s1", "same.py")
        assert len(chain) == 10
        assert sorted(chain.reconstruct(i) for i in range(10)) == sorted(contents)

        index = await session_manager.backend.load_index("s1")
        assert len(index.chains) == 6
        assert index.chains["same.py"] == [r.record_id for r in chain.records]


class TestMutationAtomicity:
    """Test all-or-nothing mutation."""

    @pytest.mark.asyncio
    async def test_failed_mutation_rolls_back(self, session_manager):
        await session_manager.create_session("s1")
        for content in versions(3):
            await session_manager.create_checkpoint("s1", "a.py", content)
        before = [r.record_id for r in (await session_manager.get_chain("s1", "a.py")).records]

        with pytest.raises(RuntimeError):
            async with session_manager.mutate_chain("s1", "a.py") as chain:
                chain.append("new content")
                chain.tag(0, ["x"])
                raise RuntimeError("boom")

        chain = await session_manager.get_chain("s1", "a.py")
        assert [r.record_id for r in chain.records] == before
        assert chain.get(0).tags == set()
        assert (await session_manager.backend.load_index("s1")).chains["a.py"] == before

    @pytest.mark.asyncio
    async def test_readers_never_see_staged_changes(self, session_manager):
        await session_manager.create_session("s1")
        await session_manager.create_checkpoint("s1", "a.py", "one")
        await session_manager.create_checkpoint("s1", "a.py", "two")
        staged = asyncio.Event()
        release = asyncio.Event()

        async def abandoned_mutation():
            async with session_manager.mutate_chain("s1", "a.py") as chain:
                chain.append("three")
                staged.set()
                await release.wait()
                raise RuntimeError("abandoned")

        task = asyncio.create_task(abandoned_mutation())
        await staged.wait()

        assert await session_manager.get_content("s1", "a.py") == "two"
        assert len(await session_manager.get_chain("s1", "a.py")) == 2

        release.set()
        with pytest.raises(RuntimeError):
            await task
        assert await session_manager.get_content("s1", "a.py") == "two"

    @pytest.mark.asyncio
    async def test_failed_persist_rolls_back(self, session_manager, monkeypatch):
        await session_manager.create_session("s1")
        await session_manager.create_checkpoint("s1", "a.py", "one")

        async def broken_save(session_id, record):
            raise OSError("disk full")

        monkeypatch.setattr(session_manager.backend, "save_record", broken_save)

        with pytest.raises(Exception):
            await session_manager.create_checkpoint("s1", "a.py", "two")

        chain = await session_manager.get_chain("s1", "a.py")
        assert len(chain) == 1
        assert chain.reconstruct(0) == "one"

    @pytest.mark.asyncio
    async def test_failed_first_checkpoint_leaves_no_chain(self, session_manager, monkeypatch):
        await session_manager.create_session("s1")

        async def broken_save(session_id, record):
            raise OSError("disk full")

        monkeypatch.setattr(session_manager.backend, "save_record", broken_save)

        with pytest.raises(Exception):
            await session_manager.create_checkpoint("s1", "a.py", "one")

        with pytest.raises(NotFoundError):
            await session_manager.get_chain("s1", "a.py")

    @pytest.mark.asyncio
    async def test_mutate_missing_chain(self, session_manager):
        await session_manager.create_session("s1")

        with pytest.raises(NotFoundError):
            async with session_manager.mutate_chain("s1", "nope.py"):
                pass


class TestTrackEdit:
    """Test auto-checkpointing."""

    @pytest.mark.asyncio
    async def test_auto_checkpoint_at_interval(self, session_manager, files):
        await session_manager.create_session("s1")
        files.contents["a.py"] = "edited"

        assert await session_manager.track_edit("s1", "a.py", files.read) is None
        assert await session_manager.track_edit("s1", "a.py", files.read) is None
        record = await session_manager.track_edit("s1", "a.py", files.read)

        assert record is not None
        assert record.name == "Auto-checkpoint at 3 edits"
        assert record.edit_count == 3
        assert await session_manager.get_content("s1", "a.py") == "edited"

    @pytest.mark.asyncio
    async def test_counter_resets(self, session_manager):
        await session_manager.create_session("s1")
        calls = []

        def provider(key):
            calls.append(key)
            return f"content {len(calls)}"

        for _ in range(6):
            await session_manager.track_edit("s1", "a.py", provider)

        assert calls == ["a.py", "a.py"]
        assert len(await session_manager.get_chain("s1", "a.py")) == 2

    @pytest.mark.asyncio
    async def test_async_provider(self, session_manager):
        await session_manager.create_session("s1", auto_checkpoint_interval=1)

        async def provider(key):
            return f"async {key}"

        record = await session_manager.track_edit("s1", "a.py", provider)

        assert record.name == "Auto-checkpoint at 1 edits"
        assert await session_manager.get_content("s1", "a.py") == "async a.py"

    @pytest.mark.asyncio
    async def test_manual_checkpoint_resets_counter(self, session_manager, files):
        await session_manager.create_session("s1")
        files.contents["a.py"] = "v1"

        await session_manager.track_edit("s1", "a.py", files.read)
        await session_manager.track_edit("s1", "a.py", files.read)
        record = await session_manager.create_checkpoint("s1", "a.py", "manual")

        assert record.edit_count == 2
        assert await session_manager.track_edit("s1", "a.py", files.read) is None


class TestStorageBudget:
    """Test storage-budget eviction."""

    @pytest.mark.asyncio
    async def test_inactive_session_evicted_active_kept(self, clock):
        manager = await make_manager(MemoryBackend(), clock, max_storage_bytes=1000)

        await manager.create_session("s1")
        await manager.create_checkpoint("s1", "a.py", "x" * 800)
        await manager.close_session("s1")

        clock.advance(hours=1)
        await manager.create_session("s2")
        await manager.create_checkpoint("s2", "a.py", "y" * 800)

        assert await manager.backend.load_summary("s1") is None
        with pytest.raises(NotFoundError):
            await manager.get_session("s1")
        assert await manager.get_content("s2", "a.py") == "y" * 800

        report = await manager.enforce_storage_budget()
        assert report.evicted == []
        assert report.bytes_after == 800

    @pytest.mark.asyncio
    async def test_active_session_exempt_even_over_budget(self, clock):
        manager = await make_manager(MemoryBackend(), clock, max_storage_bytes=1000)
        await manager.create_session("s1")
        await manager.create_checkpoint("s1", "a.py", "x" * 800)
        clock.advance(minutes=5)
        await manager.create_session("s2")
        await manager.create_checkpoint("s2", "a.py", "y" * 800)

        report = await manager.enforce_storage_budget()

        assert report.evicted == []
        assert report.over_budget
        assert await manager.get_content("s1", "a.py") == "x" * 800
        assert await manager.get_content("s2", "a.py") == "y" * 800

    @pytest.mark.asyncio
    async def test_strict_raises_when_still_over(self, clock):
        manager = await make_manager(MemoryBackend(), clock, max_storage_bytes=100)
        await manager.create_session("s1")
        await manager.create_checkpoint("s1", "a.py", "x" * 200)

        with pytest.raises(BudgetExceededError):
            await manager.enforce_storage_budget(strict=True)

    @pytest.mark.asyncio
    async def test_oldest_evicted_first_until_under_budget(self, clock):
        manager = await make_manager(MemoryBackend(), clock, max_storage_bytes=10_000)
        for i in range(5):
            await manager.create_session(f"s{i}")
            await manager.create_checkpoint(f"s{i}", "a.py", str(i) * 300)
            await manager.close_session(f"s{i}")
            clock.advance(minutes=1)

        manager.config = CheckpointConfig(max_storage_bytes=1000)
        report = await manager.enforce_storage_budget()

        assert report.evicted == ["s0", "s1"]
        assert report.bytes_after == 900
        remaining = sorted(s.id for s in await manager.list_sessions())
        assert remaining == ["s2", "s3", "s4"]
        total = sum(s.storage_bytes for s in await manager.list_sessions())
        assert total <= 1000

    @pytest.mark.asyncio
    async def test_evicted_session_removed_from_disk(self, temp_dir, clock):
        manager = await make_manager(DiskBackend(temp_dir), clock, max_storage_bytes=1000)
        await manager.create_session("s1")
        await manager.create_checkpoint("s1", "a.py", "x" * 800)
        await manager.close_session("s1")
        await manager.create_session("s2")
        await manager.create_checkpoint("s2", "a.py", "y" * 800)

        assert not (temp_dir / "s1").exists()
        assert (temp_dir / "s2").exists()


class TestExpiry:
    """Test expiry sweeps."""

    @pytest.mark.asyncio
    async def test_sweep_removes_stale_inactive_sessions(self, session_manager, clock):
        await session_manager.create_session("old")
        await session_manager.create_checkpoint("old", "a.py", "x")
        await session_manager.close_session("old")

        clock.advance(days=31)
        await session_manager.create_session("fresh")
        await session_manager.close_session("fresh")

        removed = await session_manager.sweep_expired()

        assert removed == ["old"]
        assert [s.id for s in await session_manager.list_sessions()] == ["fresh"]

    @pytest.mark.asyncio
    async def test_sweep_skips_active_sessions(self, session_manager, clock):
        await session_manager.create_session("active")
        clock.advance(days=40)

        assert await session_manager.sweep_expired() == []
        assert session_manager.is_active("active")

    @pytest.mark.asyncio
    async def test_custom_max_age(self, session_manager, clock):
        await session_manager.create_session("s1")
        await session_manager.close_session("s1")
        clock.advance(days=2)

        assert await session_manager.sweep_expired(max_age_days=7) == []
        assert await session_manager.sweep_expired(max_age_days=1) == ["s1"]

    @pytest.mark.asyncio
    async def test_sweep_runs_at_startup(self, temp_dir, clock):
        first = await make_manager(DiskBackend(temp_dir), clock)
        await first.create_session("s1")
        await first.create_checkpoint("s1", "a.py", "x")
        await first.stop()

        clock.advance(days=31)
        second = await make_manager(DiskBackend(temp_dir), clock)

        assert await second.list_sessions() == []
        await second.stop()

    @pytest.mark.asyncio
    async def test_periodic_sweep_survives_unexpected_errors(self, session_manager, monkeypatch):
        calls = []
        recovered = asyncio.Event()

        async def flaky_sweep(max_age_days=None):
            calls.append(max_age_days)
            if len(calls) == 1:
                raise RuntimeError("backend went away")
            recovered.set()
            return []

        monkeypatch.setattr(session_manager, "sweep_expired", flaky_sweep)
        task = asyncio.create_task(session_manager._sweep_loop())
        try:
            await asyncio.wait_for(recovered.wait(), timeout=1)
        finally:
            task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(calls) >= 2


class TestPersistence:
    """Test reload from storage."""

    @pytest.mark.asyncio
    async def test_reload_from_disk(self, temp_dir, clock):
        contents = versions(15)
        first = await make_manager(DiskBackend(temp_dir), clock)
        await first.create_session("s1")
        for content in contents:
            await first.create_checkpoint("s1", "a.py", content)
        await first.stop()

        second = await make_manager(DiskBackend(temp_dir), clock)
        session = await second.resume_session("s1")
        chain = session.chains["a.py"]

        assert len(chain) == 15
        assert chain.cursor == 14
        for i, content in enumerate(contents):
            assert chain.reconstruct(i) == content
        await second.stop()

    @pytest.mark.asyncio
    async def test_broken_chain_isolated(self, temp_dir, clock):
        first = await make_manager(DiskBackend(temp_dir), clock)
        await first.create_session("s1")
        broken = await first.create_checkpoint("s1", "broken.py", "x")
        await first.create_checkpoint("s1", "ok.py", "fine")
        await first.stop()

        (temp_dir / "s1" / "records" / f"{broken.record_id}.json").unlink()

        second = await make_manager(DiskBackend(temp_dir), clock)
        session = await second.resume_session("s1")

        assert "broken.py" in session.broken_chains
        assert await second.get_content("s1", "ok.py") == "fine"
        with pytest.raises(CorruptRecordError):
            await second.get_content("s1", "broken.py")
        await second.stop()

    @pytest.mark.asyncio
    async def test_removed_records_deleted_from_storage(self, session_manager):
        await session_manager.create_session("s1")
        for content in versions(3):
            await session_manager.create_checkpoint("s1", "a.py", content)
        await session_manager.undo("s1", "a.py")
        dropped = (await session_manager.get_chain("s1", "a.py")).get(2).record_id

        await session_manager.create_checkpoint("s1", "a.py", "replacement")

        with pytest.raises(NotFoundError):
            await session_manager.backend.load_record("s1", dropped)


class TestHealth:
    """Test health reporting."""

    @pytest.mark.asyncio
    async def test_health_check(self, session_manager):
        await session_manager.create_session("s1")

        status = await session_manager.health_check()

        assert status.healthy
        assert status.details["backend"] == "memory"
        assert status.details["active_sessions"] == ["s1"]
