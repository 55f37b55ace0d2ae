"""Cross-process write lock for agents sharing one database directory.

Only one process may be inside the mutating critical section at a time. The
lock is a JSON file, `.mcp_write_lock`, in the database directory:

    {"processId": 4242, "agentId": "agent-a", "timestamp": 1700000000000,
     "heartbeat": 1700000005000, "timeout": 10000}

All timestamps are epoch milliseconds. A lock is stale, and may be deleted by
any contender, when its lease has expired, its heartbeat is older than twice
the heartbeat interval, or its owning process no longer exists.

Every mutation of the file is atomic: exclusive create for acquisition, a
temp file plus os.replace() for heartbeat rewrites, unlink for removal.

Usage:
    manager = LockManager("/data/graph", agent_id="agent-a")
    async with manager.write_lock():
        ...  # exclusive write access
"""

import asyncio
import json
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator

from kuzu_guard import config
from kuzu_guard.errors import LockTimeout
from kuzu_guard.log_config import get_logger

log = get_logger("lock")

LOCK_FILE_NAME = config.LOCK_FILE_NAME
POLL_INTERVAL_MS = 100
RETRY_AFTER_ERROR_MS = 50


def _now_ms() -> int:
    return int(time.time() * 1000)


def _process_exists(pid: int) -> bool:
    """Check if a process with given PID exists."""
    try:
        os.kill(pid, 0)  # Signal 0 = just check existence
        return True
    except PermissionError:
        return True  # Exists, owned by someone else
    except (OSError, OverflowError, ValueError):
        return False


class UnreadableLockFile(Exception):
    """Lock file exists but does not parse, e.g. after a crash mid-write."""


@dataclass
class WriteLock:
    """Contents of the lock file plus the owner's heartbeat task."""

    process_id: int
    agent_id: str
    timestamp: int
    heartbeat: int
    timeout: int
    _heartbeat_task: asyncio.Task | None = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processId": self.process_id,
            "agentId": self.agent_id,
            "timestamp": self.timestamp,
            "heartbeat": self.heartbeat,
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WriteLock":
        return cls(
            process_id=int(data["processId"]),
            agent_id=str(data["agentId"]),
            timestamp=int(data["timestamp"]),
            heartbeat=int(data["heartbeat"]),
            timeout=int(data["timeout"]),
        )

    def same_owner(self, other: "WriteLock | None") -> bool:
        return (
            other is not None
            and other.process_id == self.process_id
            and other.agent_id == self.agent_id
        )

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    async def stop_heartbeat(self) -> None:
        """Cancel the heartbeat task and wait for it to finish."""
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class LockManager:
    """File-based mutex with heartbeat renewal and stale-lock takeover.

    First poll wins: waiting contenders are not queued, which is acceptable
    given the short hold times of single statements.
    """

    def __init__(
        self,
        database_path: str | Path,
        agent_id: str,
        lock_timeout_ms: int = config.DEFAULT_LOCK_TIMEOUT_MS,
    ):
        """Initialize the lock manager.

        Args:
            database_path: Database directory, or database file whose parent holds the lock
            agent_id: Identity written into the lock file
            lock_timeout_ms: Default acquisition timeout, also the lease length
        """
        self.lock_file_path = config.lock_directory(database_path) / LOCK_FILE_NAME
        self.agent_id = agent_id
        self.lock_timeout_ms = lock_timeout_ms
        self.process_id = os.getpid()
        self.heartbeat_interval_ms = config.HEARTBEAT_INTERVAL_MS
        log.debug(f"LockManager for {self.agent_id} at {self.lock_file_path}")

    # ══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ══════════════════════════════════════════════════════════════════════════

    async def acquire_write_lock(self, timeout_ms: int | None = None) -> WriteLock:
        """Wait until this agent holds the write lock.

        Args:
            timeout_ms: Overall wait, defaults to the manager's lock timeout

        Returns:
            The WriteLock now held, with its heartbeat running

        Raises:
            LockTimeout: The lock stayed held by a live owner for the whole wait
        """
        timeout_ms = self.lock_timeout_ms if timeout_ms is None else timeout_ms
        deadline = time.monotonic() + timeout_ms / 1000

        while True:
            remaining_ms = int((deadline - time.monotonic()) * 1000)
            if remaining_ms <= 0:
                break
            poll_s = min(POLL_INTERVAL_MS, remaining_ms) / 1000

            try:
                try:
                    existing = self._load_lock()
                except UnreadableLockFile as e:
                    if not self._unreadable_is_stale():
                        # Possibly a contender between create and write
                        await asyncio.sleep(poll_s)
                        continue
                    log.warning(f"Removing unreadable stale lock file: {e}")
                    self._unlink_quietly()
                    existing = None

                if existing is not None:
                    if self.is_lock_stale(existing):
                        log.info(
                            f"Removing stale lock held by {existing.agent_id} "
                            f"(pid {existing.process_id})"
                        )
                        self._unlink_quietly()
                    else:
                        await asyncio.sleep(poll_s)
                        continue

                now = _now_ms()
                lock = WriteLock(
                    process_id=self.process_id,
                    agent_id=self.agent_id,
                    timestamp=now,
                    heartbeat=now,
                    timeout=self.lock_timeout_ms,
                )
                if self._create_exclusive(lock) and lock.same_owner(self.read_lock()):
                    lock._heartbeat_task = asyncio.create_task(self._heartbeat(lock))
                    log.debug(f"Write lock acquired by {self.agent_id}")
                    return lock

                # Lost a create race to another contender
                await asyncio.sleep(min(RETRY_AFTER_ERROR_MS, remaining_ms) / 1000)

            except OSError as e:
                log.warning(f"Lock file error while acquiring: {e}")
                await asyncio.sleep(RETRY_AFTER_ERROR_MS / 1000)

        current = self.read_lock()
        holder = current.agent_id if current else "unknown"
        time_left = 0
        if current:
            time_left = max(0, current.timeout - (_now_ms() - current.timestamp))
        log.warning(f"Timed out after {timeout_ms}ms waiting for lock held by {holder}")
        raise LockTimeout(holder, time_left)

    async def release_lock(self, lock: WriteLock) -> None:
        """Stop the heartbeat and delete the file if this lock still owns it."""
        await lock.stop_heartbeat()

        try:
            current = self.read_lock()
            if lock.same_owner(current):
                self.lock_file_path.unlink()
                log.debug(f"Write lock released by {self.agent_id}")
            else:
                holder = current.agent_id if current else "nobody"
                log.warning(f"Not releasing lock: now held by {holder}")
        except FileNotFoundError:
            log.debug("Lock file already gone at release")
        except OSError as e:
            log.warning(f"Error releasing lock: {e}")

    @asynccontextmanager
    async def write_lock(self, timeout_ms: int | None = None) -> AsyncIterator[WriteLock]:
        """Hold the write lock for the duration of the block."""
        lock = await self.acquire_write_lock(timeout_ms)
        try:
            yield lock
        finally:
            await self.release_lock(lock)

    def read_lock(self) -> WriteLock | None:
        """Read the lock file; missing or unreadable files count as no lock."""
        try:
            return self._load_lock()
        except (OSError, UnreadableLockFile) as e:
            log.debug(f"Unreadable lock file {self.lock_file_path}: {e}")
            return None

    def is_lock_stale(self, lock: WriteLock) -> bool:
        """True if the lease expired, the heartbeat lapsed, or the owner died."""
        now = _now_ms()
        if now - lock.timestamp > lock.timeout:
            return True
        if now - lock.heartbeat > self.heartbeat_interval_ms * 2:
            return True
        return not _process_exists(lock.process_id)

    # ══════════════════════════════════════════════════════════════════════════
    # FILE PRIMITIVES
    # ══════════════════════════════════════════════════════════════════════════

    def _load_lock(self) -> WriteLock | None:
        """Parse the lock file.

        Returns:
            The WriteLock, or None if no lock file exists

        Raises:
            UnreadableLockFile: The file exists but holds no valid lock record
        """
        try:
            text = self.lock_file_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return WriteLock.from_dict(json.loads(text))
        except (ValueError, KeyError, TypeError) as e:
            raise UnreadableLockFile(f"{self.lock_file_path}: {e!r}") from e

    def _unreadable_is_stale(self) -> bool:
        """An unreadable file is abandoned once untouched for two heartbeats."""
        try:
            age_ms = _now_ms() - self.lock_file_path.stat().st_mtime * 1000
        except FileNotFoundError:
            return True
        return age_ms > self.heartbeat_interval_ms * 2

    def _create_exclusive(self, lock: WriteLock) -> bool:
        """Atomically create the lock file; False if it already exists."""
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(lock.to_dict(), indent=2).encode("utf-8")
        try:
            fd = os.open(self.lock_file_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, payload)
            os.fsync(fd)
        finally:
            os.close(fd)
        return True

    def _rewrite(self, lock: WriteLock) -> None:
        """Replace the whole file in one rename so readers never see a partial write."""
        tmp_path = self.lock_file_path.with_name(
            f"{LOCK_FILE_NAME}.{self.process_id}.{id(lock)}.tmp"
        )
        tmp_path.write_text(json.dumps(lock.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp_path, self.lock_file_path)

    def _unlink_quietly(self) -> None:
        try:
            self.lock_file_path.unlink()
        except FileNotFoundError:
            pass  # Another contender removed it first

    async def _heartbeat(self, lock: WriteLock) -> None:
        """Refresh the heartbeat while this lock is still the recorded owner."""
        interval = self.heartbeat_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                current = self.read_lock()
                if not lock.same_owner(current):
                    log.warning(f"Lost write lock ownership ({self.agent_id}), stopping heartbeat")
                    return
                current.heartbeat = _now_ms()
                self._rewrite(current)
                lock.heartbeat = current.heartbeat
                log.trace(f"Heartbeat written for {self.agent_id}")
            except OSError as e:
                log.debug(f"Heartbeat write failed, stopping: {e}")
                return
