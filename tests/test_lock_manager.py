"""Write lock manager tests for kuzu-guard.

Tests critical locking pathways:
- Mutual exclusion between agents
- Lock file format
- Stale lock takeover (lease, heartbeat, dead owner)
- Heartbeat renewal and ownership loss
"""

import asyncio
import json
import os
import time

import pytest

from kuzu_guard.errors import LockTimeout
from kuzu_guard.lock_manager import LOCK_FILE_NAME, LockManager


def _write_foreign_lock(db_dir, **overrides):
    now = int(time.time() * 1000)
    data = {
        "processId": os.getpid(),
        "agentId": "ghost",
        "timestamp": now,
        "heartbeat": now,
        "timeout": 60000,
    }
    data.update(overrides)
    (db_dir / LOCK_FILE_NAME).write_text(json.dumps(data))
    return data


class TestAcquireRelease:
    """Test the basic lock lifecycle."""

    @pytest.mark.asyncio
    async def test_lock_file_contents(self, db_dir):
        manager = LockManager(db_dir, agent_id="agent-a")
        lock = await manager.acquire_write_lock()

        data = json.loads((db_dir / LOCK_FILE_NAME).read_text())
        assert set(data) == {"processId", "agentId", "timestamp", "heartbeat", "timeout"}
        assert data["processId"] == os.getpid()
        assert data["agentId"] == "agent-a"
        assert data["timeout"] == 10000
        assert lock.heartbeat_running

        await manager.release_lock(lock)

        assert not (db_dir / LOCK_FILE_NAME).exists()
        assert not lock.heartbeat_running

    @pytest.mark.asyncio
    async def test_write_lock_context(self, db_dir):
        manager = LockManager(db_dir, agent_id="agent-a")

        async with manager.write_lock() as lock:
            assert manager.read_lock() == lock

        assert manager.read_lock() is None

    @pytest.mark.asyncio
    async def test_context_releases_on_error(self, db_dir):
        manager = LockManager(db_dir, agent_id="agent-a")

        with pytest.raises(ValueError):
            async with manager.write_lock():
                raise ValueError("boom")

        assert not (db_dir / LOCK_FILE_NAME).exists()

    def test_database_file_uses_parent_directory(self, tmp_path):
        db_file = tmp_path / "graph.kuzu"
        db_file.write_bytes(b"")
        manager = LockManager(db_file, agent_id="agent-a")
        assert manager.lock_file_path == tmp_path / LOCK_FILE_NAME

    @pytest.mark.asyncio
    async def test_missing_database_path_uses_parent(self, tmp_path):
        """The engine must still be able to create a not-yet-existing database."""
        manager = LockManager(tmp_path / "new.kuzu", agent_id="agent-a")

        async with manager.write_lock():
            assert (tmp_path / LOCK_FILE_NAME).exists()

        assert not (tmp_path / "new.kuzu").exists()

    def test_unreadable_lock_file(self, db_dir):
        (db_dir / LOCK_FILE_NAME).write_text("{not json")
        manager = LockManager(db_dir, agent_id="agent-a")
        assert manager.read_lock() is None


class TestMutualExclusion:
    """Two agents never hold the lock at once."""

    @pytest.mark.asyncio
    async def test_second_agent_times_out(self, db_dir):
        a = LockManager(db_dir, agent_id="agent-a")
        b = LockManager(db_dir, agent_id="agent-b")
        lock = await a.acquire_write_lock()

        with pytest.raises(LockTimeout) as exc_info:
            await b.acquire_write_lock(timeout_ms=300)

        assert exc_info.value.current_holder == "agent-a"
        assert 0 < exc_info.value.time_remaining_ms <= 10000

        await a.release_lock(lock)
        lock_b = await b.acquire_write_lock(timeout_ms=300)
        assert b.read_lock().agent_id == "agent-b"
        await b.release_lock(lock_b)

    @pytest.mark.asyncio
    async def test_concurrent_critical_sections(self, db_dir):
        inside = 0
        max_inside = 0

        async def worker(agent_id):
            nonlocal inside, max_inside
            manager = LockManager(db_dir, agent_id=agent_id)
            for _ in range(3):
                async with manager.write_lock(timeout_ms=5000):
                    inside += 1
                    max_inside = max(max_inside, inside)
                    await asyncio.sleep(0.02)
                    inside -= 1

        await asyncio.gather(worker("agent-a"), worker("agent-b"), worker("agent-c"))

        assert max_inside == 1
        assert not (db_dir / LOCK_FILE_NAME).exists()

    @pytest.mark.asyncio
    async def test_live_foreign_lock_respected(self, db_dir):
        _write_foreign_lock(db_dir)
        manager = LockManager(db_dir, agent_id="agent-a")

        with pytest.raises(LockTimeout) as exc_info:
            await manager.acquire_write_lock(timeout_ms=250)

        assert exc_info.value.current_holder == "ghost"
        assert manager.read_lock().agent_id == "ghost"


class TestStaleLocks:
    """Stale locks are taken over by the next contender."""

    @pytest.mark.asyncio
    async def test_lapsed_heartbeat(self, db_dir):
        """Heartbeat older than twice the interval, even with an unexpired lease."""
        now = int(time.time() * 1000)
        _write_foreign_lock(db_dir, heartbeat=now - 11000, timeout=600000)
        manager = LockManager(db_dir, agent_id="agent-a")

        lock = await manager.acquire_write_lock(timeout_ms=1000)

        assert manager.read_lock().agent_id == "agent-a"
        await manager.release_lock(lock)

    @pytest.mark.asyncio
    async def test_expired_lease(self, db_dir):
        now = int(time.time() * 1000)
        _write_foreign_lock(db_dir, timestamp=now - 20000, timeout=10000)
        manager = LockManager(db_dir, agent_id="agent-a")

        lock = await manager.acquire_write_lock(timeout_ms=1000)

        assert lock.agent_id == "agent-a"
        await manager.release_lock(lock)

    @pytest.mark.asyncio
    async def test_dead_owner(self, db_dir):
        _write_foreign_lock(db_dir, processId=999_999_999)
        manager = LockManager(db_dir, agent_id="agent-a")

        assert manager.is_lock_stale(manager.read_lock()) is True
        lock = await manager.acquire_write_lock(timeout_ms=1000)
        await manager.release_lock(lock)

    @pytest.mark.asyncio
    async def test_abandoned_empty_file_taken_over(self, db_dir):
        """An empty file untouched for two heartbeats is removed."""
        lock_path = db_dir / LOCK_FILE_NAME
        lock_path.write_text("")
        old = time.time() - 60
        os.utime(lock_path, (old, old))
        manager = LockManager(db_dir, agent_id="agent-a")

        lock = await manager.acquire_write_lock(timeout_ms=1000)

        assert manager.read_lock().agent_id == "agent-a"
        await manager.release_lock(lock)

    @pytest.mark.asyncio
    async def test_fresh_garbled_file_waits_without_blocking(self, db_dir):
        """A just-written garbled file is waited on and the event loop keeps running."""
        (db_dir / LOCK_FILE_NAME).write_text("{\"processId\": 12")
        manager = LockManager(db_dir, agent_id="agent-a")
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        task = asyncio.create_task(ticker())
        try:
            with pytest.raises(LockTimeout) as exc_info:
                await manager.acquire_write_lock(timeout_ms=300)
        finally:
            task.cancel()

        assert ticks >= 5
        assert exc_info.value.current_holder == "unknown"
        assert (db_dir / LOCK_FILE_NAME).read_text() == "{\"processId\": 12"

    def test_fresh_lock_not_stale(self, db_dir):
        _write_foreign_lock(db_dir)
        manager = LockManager(db_dir, agent_id="agent-a")
        assert manager.is_lock_stale(manager.read_lock()) is False


class TestHeartbeat:
    """Heartbeat renewal and ownership checks."""

    @pytest.mark.asyncio
    async def test_heartbeat_refreshes_file(self, db_dir):
        manager = LockManager(db_dir, agent_id="agent-a")
        manager.heartbeat_interval_ms = 30
        lock = await manager.acquire_write_lock()
        first = manager.read_lock().heartbeat

        await asyncio.sleep(0.2)

        current = manager.read_lock()
        assert current.heartbeat > first
        assert current.timestamp == lock.timestamp
        await manager.release_lock(lock)

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_lock_fresh(self, db_dir):
        """A lock held past twice the interval is not stale while renewed."""
        holder = LockManager(db_dir, agent_id="agent-a")
        holder.heartbeat_interval_ms = 30
        lock = await holder.acquire_write_lock()
        contender = LockManager(db_dir, agent_id="agent-b")
        contender.heartbeat_interval_ms = 100

        await asyncio.sleep(0.3)

        assert contender.is_lock_stale(contender.read_lock()) is False
        await holder.release_lock(lock)

    @pytest.mark.asyncio
    async def test_heartbeat_stops_on_lost_ownership(self, db_dir):
        manager = LockManager(db_dir, agent_id="agent-a")
        manager.heartbeat_interval_ms = 30
        lock = await manager.acquire_write_lock()

        foreign = _write_foreign_lock(db_dir, agentId="agent-b")
        await asyncio.sleep(0.2)

        assert not lock.heartbeat_running
        assert json.loads((db_dir / LOCK_FILE_NAME).read_text()) == foreign

        await manager.release_lock(lock)
        assert manager.read_lock().agent_id == "agent-b"
