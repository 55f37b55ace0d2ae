"""Bounded retry with health checks, reconnection and exponential backoff.

State machine per call:

    Attempt(n) -> Success
               -> RetryableFailure -> [health check, reconnect if invalid,
                                       backoff] -> Attempt(n+1)
               -> TerminalFailure

Whether a failure is retryable is decided by a pluggable predicate. The
default matches engine error text, which is all the driver offers today.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from kuzu_guard.batch import BATCH_HANG_SENTINEL, BatchExecutor, BatchResult
from kuzu_guard.config import BACKOFF_BASE_MS, BACKOFF_CAP_MS, DEFAULT_MAX_RETRIES
from kuzu_guard.db.engine_protocol import Rows
from kuzu_guard.errors import ConnectionRecoveryFailed, GuardError, ReconnectFailure, StatementError
from kuzu_guard.health import is_valid
from kuzu_guard.log_config import get_logger
from kuzu_guard.reconnect import HandleSlot

log = get_logger("retry")

# Parser and binder errors are included because the engine has been seen to
# leave the connection corrupted after them.
CONNECTION_ERROR_MARKERS = (
    "Connection",
    "Database",
    "closed",
    BATCH_HANG_SENTINEL,
    "Parser exception",
    "Binder exception",
)

RetryPredicate = Callable[[BaseException], bool]
SleepFn = Callable[[float], Awaitable[None]]


def is_connection_error(error: BaseException) -> bool:
    """True if the error text says the handle, not the statement, is at fault."""
    if isinstance(error, ReconnectFailure):
        return True
    if isinstance(error, GuardError):
        return False
    message = str(error)
    return any(marker in message for marker in CONNECTION_ERROR_MARKERS)


def backoff_ms(retry_number: int) -> int:
    """Delay before retry n (1-based): 1000, 2000, 4000, then capped at 5000."""
    return min(BACKOFF_BASE_MS * 2 ** (retry_number - 1), BACKOFF_CAP_MS)


@dataclass
class RetryAttempt:
    """Bookkeeping for one attempt; lives only for a single call."""

    attempt_number: int
    last_error: BaseException | None = None
    backoff_ms: int = 0


class RetryCoordinator:
    """Runs the batch executor against a handle slot with bounded retries."""

    def __init__(
        self,
        slot: HandleSlot,
        executor: BatchExecutor,
        is_retryable: RetryPredicate = is_connection_error,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.slot = slot
        self.executor = executor
        self.is_retryable = is_retryable
        self._sleep = sleep

    async def execute_with_retry(
        self,
        statement: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> Rows | BatchResult:
        """Execute a statement, retrying connection-class failures.

        Args:
            statement: Statement text
            max_retries: Retries after the first attempt

        Returns:
            Rows or BatchResult from the batch executor

        Raises:
            ConnectionRecoveryFailed: Connection-class failures on every attempt
            StatementError: A terminal engine error
            GuardError: Errors raised by the executor itself, unchanged
        """
        max_attempts = max_retries + 1
        attempt = RetryAttempt(attempt_number=1)

        while True:
            n = attempt.attempt_number
            try:
                if n > 1 or attempt.last_error is not None:
                    await self._ensure_healthy(n, max_attempts)

                handle = await self.slot.handle()
                result = await self.executor.execute(handle, statement)
                if n > 1:
                    log.info(f"Query succeeded on attempt {n}")
                return result

            except Exception as e:
                attempt.last_error = e
                log.warning(f"Attempt {n}/{max_attempts} failed: {e}")

                if not self.is_retryable(e):
                    if isinstance(e, GuardError):
                        raise
                    raise StatementError(e, statement) from e

                if n >= max_attempts:
                    log.error(f"Connection recovery failed after {n} attempts")
                    raise ConnectionRecoveryFailed(
                        attempts=n, last_error=e, max_retries=max_retries
                    ) from e

            delay = backoff_ms(n)
            log.info(f"Will retry connection error in {delay}ms (attempt {n + 1}/{max_attempts})")
            await self._sleep(delay / 1000)
            attempt = RetryAttempt(attempt_number=n + 1, last_error=attempt.last_error, backoff_ms=delay)

    async def _ensure_healthy(self, attempt_number: int, max_attempts: int) -> None:
        log.debug(f"Attempt {attempt_number}/{max_attempts}: checking connection health...")
        if not await is_valid(self.slot.current):
            log.warning("Connection invalid, attempting to reconnect...")
            await self.slot.reconnect()
