"""Batch statement execution with a defence against the multi-result fetch hang.

KuzuDB can hang forever when fetching a non-first result of a batch whose
statements alter the schema. The executor submits the text once, races every
sub-result fetch against a fixed timeout, and falls back to running the split
statements one by one when the submission itself fails.

Treating a timed-out sub-result as "succeeded with zero rows" is a workaround,
not a verified recovery: nothing confirms the engine finished that statement.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterator

from kuzu_guard.classifier import analyze_ddl_batch, split_statements
from kuzu_guard.config import FETCH_TIMEOUT_MS
from kuzu_guard.db.engine_protocol import EngineHandle, EngineResult, Rows
from kuzu_guard.errors import AllStatementsFailed
from kuzu_guard.log_config import get_logger, log_timing

log = get_logger("batch")

# Appears in timeout log lines and in engine messages about the same defect
BATCH_HANG_SENTINEL = "getAll timeout"


@dataclass
class StatementOutcome:
    """Result of one statement within a batch.

    Attributes:
        statement_index: 1-based position in the batch
        query: Statement text, when known
        rows: Rows returned on success (empty for statements without output)
        error: Error text on failure
        timed_out: Fetch was abandoned after the per-result timeout
    """

    statement_index: int
    query: str | None = None
    rows: Rows = field(default_factory=list)
    error: str | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_rows(self) -> list[dict[str, Any]]:
        """Flatten into the row shape agents receive."""
        label = self.query or f"Statement {self.statement_index}"
        if self.error is not None:
            return [{"statement": self.statement_index, "query": label, "error": self.error}]
        if not self.rows:
            return [{
                "statement": self.statement_index,
                "query": label,
                "result": "Success",
                "rowsAffected": 0,
            }]
        return [{"statement": self.statement_index, **row} for row in self.rows]


@dataclass
class BatchResult:
    """Ordered per-statement outcomes of a multi-statement execution."""

    outcomes: list[StatementOutcome] = field(default_factory=list)
    fallback: bool = False

    def __iter__(self) -> Iterator[StatementOutcome]:
        return iter(self.outcomes)

    def __len__(self) -> int:
        return len(self.outcomes)

    def __getitem__(self, index: int) -> StatementOutcome:
        return self.outcomes[index]

    @property
    def errors(self) -> list[StatementOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    def to_rows(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for outcome in self.outcomes:
            rows.extend(outcome.to_rows())
        return rows


class BatchExecutor:
    """Executes possibly multi-statement text against one engine handle."""

    def __init__(self, fetch_timeout_ms: int = FETCH_TIMEOUT_MS):
        self.fetch_timeout_ms = fetch_timeout_ms

    async def execute(self, handle: EngineHandle, text: str) -> Rows | BatchResult:
        """Run the text, returning bare rows for a single result.

        Args:
            handle: Engine handle to run against
            text: Statement text, possibly several statements separated by ``;``

        Returns:
            Rows for a single result, a BatchResult for several

        Raises:
            AllStatementsFailed: Every statement of the fallback split failed
            Exception: The original engine error when the text is a single statement
        """
        analysis = analyze_ddl_batch(text)
        if analysis.is_dangerous:
            log.warning(
                f"Batch contains {analysis.ddl_count} DDL statements "
                f"(risk={analysis.risk_level}): {analysis.recommendation}"
            )

        try:
            with log_timing("batch submit", log):
                submitted = await handle.execute(text)
        except Exception as e:
            log.warning(f"Batch execution failed, trying individual statements: {e}")
            return await self._execute_split(handle, text, e)

        if isinstance(submitted, list):
            return await self._collect(submitted, split_statements(text))

        try:
            return await submitted.fetch_all()
        finally:
            submitted.close()

    async def _collect(self, results: list[EngineResult], statements: list[str]) -> BatchResult:
        """Fetch every sub-result, abandoning any that exceeds the timeout."""
        batch = BatchResult()
        timeout = self.fetch_timeout_ms / 1000

        for i, result in enumerate(results):
            index = i + 1
            query = statements[i] if i < len(statements) else None
            outcome = StatementOutcome(statement_index=index, query=query)

            try:
                outcome.rows = await asyncio.wait_for(result.fetch_all(), timeout=timeout)
            except asyncio.TimeoutError:
                # The abandoned fetch may still complete in its worker thread; its
                # rows go nowhere and the result is left open for it.
                log.warning(
                    f"{BATCH_HANG_SENTINEL} after {self.fetch_timeout_ms}ms on statement {index}; "
                    "assuming it completed with no rows"
                )
                outcome.timed_out = True
                batch.outcomes.append(outcome)
                continue
            except Exception as e:
                log.error(f"Error processing result of statement {index}: {e}")
                outcome.error = str(e)
            result.close()
            batch.outcomes.append(outcome)

        log.debug(f"Collected {len(batch)} sub-results, {len(batch.errors)} errors")
        return batch

    async def _execute_split(
        self,
        handle: EngineHandle,
        text: str,
        original_error: Exception,
    ) -> BatchResult:
        """Run statements one at a time, recording each success or failure."""
        statements = split_statements(text)
        if len(statements) <= 1:
            raise original_error

        batch = BatchResult(fallback=True)
        for i, statement in enumerate(statements):
            outcome = StatementOutcome(statement_index=i + 1, query=statement)
            try:
                outcome.rows = await self._run_single(handle, statement)
            except Exception as e:
                log.warning(f"Statement {i + 1}/{len(statements)} failed: {e}")
                outcome.error = str(e)
            batch.outcomes.append(outcome)

        failures = batch.errors
        if len(failures) == len(statements):
            raise AllStatementsFailed(
                [(o.statement_index, o.query or "", o.error or "") for o in failures]
            )

        log.info(f"Fallback executed {batch.succeeded}/{len(statements)} statements")
        return batch

    async def _run_single(self, handle: EngineHandle, statement: str) -> Rows:
        submitted = await handle.execute(statement)
        results = submitted if isinstance(submitted, list) else [submitted]
        rows: Rows = []
        for result in results:
            try:
                rows.extend(await result.fetch_all())
            finally:
                result.close()
        return rows
