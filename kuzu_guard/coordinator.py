"""Top-level Coordinator: the single entry point the RPC layer calls.

Pipeline for each statement:

    classify -> [reject unsupported pattern] -> [reject write in read-only mode]
             -> [validate MERGE targets] -> [acquire write lock if mutating and
             multi-agent] -> RetryCoordinator(BatchExecutor) -> release lock

All state lives on the Coordinator instance; there are no module globals, so
independent instances (e.g. in tests) never share handles or locks.
"""

from pathlib import Path

from kuzu_guard.batch import BatchExecutor, BatchResult
from kuzu_guard.classifier import classify
from kuzu_guard.config import Config, ExecutionOptions
from kuzu_guard.db.engine_protocol import EngineFactory, Rows
from kuzu_guard.db.kuzu_backend import open_kuzu_handle
from kuzu_guard.errors import (
    GuardError,
    MergeValidationError,
    ReadOnlyViolation,
    StatementError,
    StructuredError,
    UnsupportedPattern,
    format_engine_error,
)
from kuzu_guard.lock_manager import LockManager, WriteLock
from kuzu_guard.log_config import get_logger, log_timing
from kuzu_guard.merge_validation import MergeValidator, SchemaLookupError
from kuzu_guard.reconnect import HandleSlot
from kuzu_guard.response import ToolResponse, render
from kuzu_guard.retry import RetryCoordinator, RetryPredicate, is_connection_error

log = get_logger("coordinator")

EMPTY_WRITE_ROW = {"result": "Query executed successfully", "rowsAffected": 0}


class Coordinator:
    """Session object composing classifier, lock, retry and batch execution.

    Statements run one at a time against one engine handle; the cross-process
    write lock is the only coordination with other processes.
    """

    def __init__(
        self,
        config: Config | None = None,
        engine_factory: EngineFactory = open_kuzu_handle,
        executor: BatchExecutor | None = None,
        is_retryable: RetryPredicate = is_connection_error,
        retry_coordinator: RetryCoordinator | None = None,
    ):
        """Create a session. No engine handle is opened until first use.

        Args:
            config: Configuration (read from the environment if omitted)
            engine_factory: Opens engine handles, KuzuDB by default
            executor: Batch executor, default uses the fixed fetch timeout
            is_retryable: Connection-class predicate for the retry loop
            retry_coordinator: Prebuilt retry coordinator (overrides the above)
        """
        self.config = config or Config()
        self.slot = HandleSlot(self.config.database_path, self.config.read_only, engine_factory)
        self.executor = executor or BatchExecutor()
        self.retry = retry_coordinator or RetryCoordinator(self.slot, self.executor, is_retryable)
        self.merge_validator = MergeValidator()
        self._lock_managers: dict[tuple[str, int], LockManager] = {}
        self._held_locks: list[tuple[LockManager, WriteLock]] = []
        self._closed = False
        log.info(f"Coordinator ready for {self.config.database_path}")

    async def __aenter__(self) -> "Coordinator":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ══════════════════════════════════════════════════════════════════════════
    # ENTRY POINTS
    # ══════════════════════════════════════════════════════════════════════════

    async def handle(
        self,
        statement: str,
        options: ExecutionOptions | None = None,
    ) -> Rows | BatchResult | StructuredError:
        """Execute a statement and never raise.

        Returns:
            Rows, a BatchResult, or a StructuredError describing the failure
        """
        try:
            return await self.execute(statement, options)
        except GuardError as e:
            log.warning(f"Statement failed: {e.code}: {e.message.splitlines()[0]}")
            return e.to_structured()
        except Exception as e:
            log.exception(f"Unexpected error executing statement: {e}")
            return format_engine_error(e, statement if isinstance(statement, str) else None)

    async def handle_rendered(
        self,
        statement: str,
        options: ExecutionOptions | None = None,
    ) -> ToolResponse:
        """handle() followed by JSON rendering for the tool response."""
        return render(await self.handle(statement, options))

    async def execute(
        self,
        statement: str,
        options: ExecutionOptions | None = None,
    ) -> Rows | BatchResult:
        """Execute a statement, raising typed errors.

        Raises:
            UnsupportedPattern, ReadOnlyViolation, MergeValidationError,
            LockTimeout, ConnectionRecoveryFailed, StatementError,
            AllStatementsFailed
        """
        if self._closed:
            raise StatementError("Coordinator is closed", statement)
        if not isinstance(statement, str) or not statement.strip():
            raise StatementError(f"Invalid cypher query: {statement!r}")

        options = options or self.config.default_options()
        flags = classify(statement)
        log.debug(
            f"Classified statement: mutating={flags.is_mutating}, "
            f"schema_change={flags.is_schema_change}, unsupported={flags.has_unsupported_pattern}"
        )

        if flags.has_unsupported_pattern:
            raise UnsupportedPattern()

        if flags.is_mutating and (options.read_only_mode or self.config.read_only):
            raise ReadOnlyViolation()

        if self.config.validate_merge and "MERGE" in statement.upper():
            await self._validate_merge(statement)

        lock_manager: LockManager | None = None
        lock: WriteLock | None = None
        if flags.is_mutating and options.multi_agent_mode:
            lock_manager = self._lock_manager(options)
            lock = await lock_manager.acquire_write_lock(options.lock_timeout_ms)
            self._held_locks.append((lock_manager, lock))

        try:
            with log_timing("execute_with_retry", log):
                result = await self.retry.execute_with_retry(statement, options.max_retries)
        finally:
            if lock is not None and lock_manager is not None:
                await self._release(lock_manager, lock)

        if flags.is_schema_change:
            self.merge_validator.clear_cache()

        if isinstance(result, list) and not result and flags.is_mutating:
            return [dict(EMPTY_WRITE_ROW)]
        return result

    async def close(self) -> None:
        """Release any held lock and drop the engine handle."""
        if self._closed:
            return
        self._closed = True
        for manager, lock in list(self._held_locks):
            await self._release(manager, lock)
        self.slot.close()
        log.info("Coordinator closed")

    # ══════════════════════════════════════════════════════════════════════════
    # HELPERS
    # ══════════════════════════════════════════════════════════════════════════

    def _lock_manager(self, options: ExecutionOptions) -> LockManager:
        key = (options.agent_id, options.lock_timeout_ms)
        manager = self._lock_managers.get(key)
        if manager is None:
            manager = LockManager(Path(self.config.database_path), options.agent_id, options.lock_timeout_ms)
            self._lock_managers[key] = manager
        return manager

    async def _release(self, manager: LockManager, lock: WriteLock) -> None:
        try:
            await manager.release_lock(lock)
        except Exception as e:
            log.error(f"Error releasing lock: {e}")
        finally:
            if (manager, lock) in self._held_locks:
                self._held_locks.remove((manager, lock))

    async def _validate_merge(self, statement: str) -> None:
        try:
            handle = await self.slot.handle()
            validation = await self.merge_validator.validate(handle, statement)
        except SchemaLookupError as e:
            log.warning(f"Skipping MERGE validation, schema unavailable: {e}")
            return
        except Exception as e:
            # Handle problems are left for the retry loop to diagnose
            log.warning(f"Skipping MERGE validation after engine error: {e}")
            return

        if not validation.is_valid:
            log.warning(f"MERGE validation failed: {'; '.join(validation.errors)}")
            raise MergeValidationError(validation.errors, validation.warnings, validation.suggested_fix)
        for warning in validation.warnings:
            log.debug(f"MERGE warning: {warning}")
