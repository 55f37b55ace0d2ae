"""Shared pytest fixtures for kuzu-guard tests.

The core never needs a real database: FakeEngine hands out scriptable
handles whose results can return rows, raise, or hang forever.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from kuzu_guard.health import CANARY_STATEMENT


class FakeResult:
    """EngineResult returning fixed rows, raising, or never completing."""

    def __init__(
        self,
        rows: list[dict[str, Any]] | None = None,
        error: BaseException | None = None,
        hang: bool = False,
    ):
        self.rows = rows or []
        self.error = error
        self.hang = hang
        self.closed = False
        self.fetches = 0

    async def fetch_all(self) -> list[dict[str, Any]]:
        self.fetches += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return [dict(row) for row in self.rows]

    def close(self) -> None:
        self.closed = True


Responder = Callable[[str], Any]


class FakeHandle:
    """EngineHandle whose responses come from the owning FakeEngine."""

    def __init__(self, engine: "FakeEngine", generation: int):
        self.engine = engine
        self.generation = generation
        self.executed: list[str] = []
        self.discarded = False

    async def execute(self, statement: str):
        if self.discarded:
            raise RuntimeError("Connection is closed: handle was discarded")
        self.executed.append(statement)
        self.engine.executed.append(statement)

        if statement == CANARY_STATEMENT:
            if not self.engine.canary_ok(self):
                raise RuntimeError("Database handle is not valid")
            return FakeResult([{"test": 1}])

        outcome = self.engine.responder(statement)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def discard(self) -> None:
        self.discarded = True


class FakeEngine:
    """EngineFactory producing FakeHandles.

    Attributes:
        responder: Maps a statement to a FakeResult, a list of them, or an exception
        healthy: Canary answer for existing handles; new handles use healthy_after_reconnect
        fail_open: Raise on the next open attempts
    """

    def __init__(self, responder: Responder | None = None):
        self.responder: Responder = responder or (lambda statement: FakeResult([]))
        self.handles: list[FakeHandle] = []
        self.executed: list[str] = []
        self.healthy = True
        self.healthy_after_reconnect = True
        self.fail_open = False
        self.opened_with: list[tuple[str, bool]] = []

    async def __call__(self, database_path: str, read_only: bool) -> FakeHandle:
        self.opened_with.append((database_path, read_only))
        if self.fail_open:
            raise RuntimeError("IO exception: could not open database")
        handle = FakeHandle(self, generation=len(self.handles) + 1)
        self.handles.append(handle)
        return handle

    def canary_ok(self, handle: FakeHandle) -> bool:
        if handle.generation == 1:
            return self.healthy
        return self.healthy_after_reconnect

    @property
    def statements(self) -> list[str]:
        """Executed statements excluding canary checks."""
        return [s for s in self.executed if s != CANARY_STATEMENT]


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def db_dir(tmp_path):
    """An existing database directory for lock files."""
    path = tmp_path / "graph"
    path.mkdir()
    return path


@pytest.fixture
def make_result() -> type[FakeResult]:
    """The FakeResult class, for scripting engine responses."""
    return FakeResult
