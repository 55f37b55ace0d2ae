"""Single-owner engine handle slot with discard-and-recreate reconnection."""

import asyncio
from pathlib import Path

from kuzu_guard.db.engine_protocol import EngineFactory, EngineHandle
from kuzu_guard.db.kuzu_backend import open_kuzu_handle
from kuzu_guard.errors import ReconnectFailure
from kuzu_guard.health import is_valid
from kuzu_guard.log_config import get_logger, log_timing

log = get_logger("retry.reconnect")


class HandleSlot:
    """Holds the one live EngineHandle for a database path.

    The handle is replaced wholesale, never mutated: reconnect() drops the
    current handle before the factory creates its successor, so two handles
    for the same path never coexist in this slot. Reconnects are serialized
    by an asyncio.Lock.
    """

    def __init__(
        self,
        database_path: str | Path,
        read_only: bool = False,
        engine_factory: EngineFactory = open_kuzu_handle,
    ):
        self.database_path = str(database_path)
        self.read_only = read_only
        self._factory = engine_factory
        self._handle: EngineHandle | None = None
        self._lock = asyncio.Lock()
        self.generation = 0

    @property
    def current(self) -> EngineHandle | None:
        """The current handle, without opening one."""
        return self._handle

    async def handle(self) -> EngineHandle:
        """Return the current handle, opening the first one on demand."""
        if self._handle is None:
            async with self._lock:
                if self._handle is None:
                    self._handle = await self._factory(self.database_path, self.read_only)
                    self.generation += 1
                    log.info(f"Engine handle opened (generation {self.generation})")
        return self._handle

    def _discard(self) -> None:
        old, self._handle = self._handle, None
        discard = getattr(old, "discard", None)
        if callable(discard):
            discard()

    async def reconnect(self) -> EngineHandle:
        """Discard the current handle and open a validated replacement.

        Returns:
            The new handle, already installed in the slot

        Raises:
            ReconnectFailure: If the factory fails or the new handle fails validation
        """
        async with self._lock:
            log.warning(f"Reconnecting to {self.database_path}...")
            self._discard()

            with log_timing("reconnect", log, level="info"):
                try:
                    new_handle = await self._factory(self.database_path, self.read_only)
                except Exception as e:
                    log.error(f"Failed to reopen database: {e}")
                    raise ReconnectFailure(f"Failed to reopen Database handle: {e}") from e

                if not await is_valid(new_handle):
                    log.error("Reconnected handle failed validation")
                    discard = getattr(new_handle, "discard", None)
                    if callable(discard):
                        discard()
                    raise ReconnectFailure()

            self._handle = new_handle
            self.generation += 1
            log.info(f"Database reconnection successful (generation {self.generation})")
            return new_handle

    def close(self) -> None:
        """Drop the handle on shutdown."""
        if self._handle is not None:
            log.info("Closing engine handle slot")
            self._discard()
