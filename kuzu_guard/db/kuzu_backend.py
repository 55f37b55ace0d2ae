"""KuzuDB engine adapter for kuzu-guard.

KuzuDB is an embedded, single-writer graph database. Its Python driver is
synchronous, so every engine call runs on a worker thread: the event loop
stays free for the lock heartbeat while a statement or fetch is pending, and a
hung fetch can be abandoned by the caller's timeout.

Each handle owns its own thread pool. A fetch abandoned after a timeout keeps
its worker busy until the driver returns, so with a shared pool enough of them
would starve every later call. Discarding the handle shuts its pool down
without waiting; the replacement handle starts with empty workers.

Notes on the driver:
- Connection.execute() returns a list of QueryResult for multi-statement text
- Handles are discarded and recreated rather than closed: closing a connection
  while an abandoned fetch thread still reads from it is not safe
"""

import asyncio
import functools
import gc
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Awaitable, Callable

from kuzu_guard.db.engine_protocol import Rows
from kuzu_guard.log_config import get_logger

log = get_logger("kuzu")

DEFAULT_MAX_WORKERS = 4

Runner = Callable[..., Awaitable[Any]]


def _drain(query_result: Any) -> Rows:
    """Read every row of a kuzu QueryResult into column-keyed dicts."""
    columns = query_result.get_column_names()
    rows = []
    while query_result.has_next():
        values = query_result.get_next()
        if isinstance(values, dict):
            rows.append(dict(values))
        else:
            rows.append(dict(zip(columns, values)))
    return rows


def _open(database_path: Path, read_only: bool) -> tuple[Any, Any]:
    import kuzu

    # KuzuDB creates the database itself - only the parent must exist
    database_path.parent.mkdir(parents=True, exist_ok=True)
    log.info(f"Opening KuzuDB at {database_path} (read_only={read_only})")
    database = kuzu.Database(str(database_path), read_only=read_only)
    return database, kuzu.Connection(database)


class KuzuResult:
    """EngineResult over a kuzu.QueryResult."""

    def __init__(self, query_result: Any, run: Runner):
        self._result = query_result
        self._run = run

    async def fetch_all(self) -> Rows:
        return await self._run(_drain, self._result)

    def close(self) -> None:
        try:
            self._result.close()
        except Exception as e:
            log.debug(f"Ignoring error while closing result: {e}")


class KuzuHandle:
    """EngineHandle over a kuzu.Database + kuzu.Connection pair.

    Created by open_kuzu_handle(); owned by a single HandleSlot.
    """

    def __init__(
        self,
        database: Any,
        connection: Any,
        database_path: str | Path,
        read_only: bool = False,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        """Wrap an open database and connection.

        Args:
            database: kuzu.Database
            connection: kuzu.Connection on that database
            database_path: Path the database was opened from
            read_only: Whether the database was opened read-only
            max_workers: Size of this handle's worker pool
        """
        self.database_path = Path(database_path)
        self.read_only = read_only
        self._db = database
        self._conn = connection
        self._executor: ThreadPoolExecutor | None = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="kuzu"
        )

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking driver call on this handle's pool."""
        executor = self._executor
        if executor is None:
            raise RuntimeError("Connection is closed: handle was discarded")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, functools.partial(fn, *args))

    async def execute(self, statement: str) -> KuzuResult | list[KuzuResult]:
        conn = self._conn
        if conn is None:
            raise RuntimeError("Connection is closed: handle was discarded")

        log.trace(f"KuzuDB execute: {statement[:100]}...")
        raw = await self._run(conn.execute, statement)
        if isinstance(raw, list):
            return [KuzuResult(r, self._run) for r in raw]
        return KuzuResult(raw, self._run)

    def discard(self) -> None:
        """Drop the driver objects and abandon any still-running workers."""
        log.debug(f"Discarding KuzuDB handle for {self.database_path}")
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        self._conn = None
        self._db = None
        gc.collect()


async def open_kuzu_handle(database_path: str, read_only: bool) -> KuzuHandle:
    """Default EngineFactory: open a KuzuDB handle off the event loop."""
    path = Path(database_path)
    database, connection = await asyncio.to_thread(_open, path, read_only)
    return KuzuHandle(database, connection, path, read_only)
