"""Batch executor tests for kuzu-guard.

Tests critical batch pathways:
- Single result returns bare rows
- Multi-result batches with per-result timeout (hang defence)
- Fallback to per-statement execution with partial failures
- Aggregated failure when every statement fails
"""

import pytest

from kuzu_guard.batch import BatchExecutor, BatchResult
from kuzu_guard.errors import AllStatementsFailed


@pytest.fixture
def executor():
    return BatchExecutor(fetch_timeout_ms=50)


class TestSingleResult:
    """Single statements come back as plain rows."""

    @pytest.mark.asyncio
    async def test_returns_rows(self, executor, fake_engine, make_result):
        result = make_result([{"n.name": "Alice"}])
        fake_engine.responder = lambda statement: result
        handle = await fake_engine("db", False)

        rows = await executor.execute(handle, "MATCH (n) RETURN n.name")

        assert rows == [{"n.name": "Alice"}]
        assert result.closed is True

    @pytest.mark.asyncio
    async def test_fetch_error_propagates_and_closes(self, executor, fake_engine, make_result):
        result = make_result(error=RuntimeError("Runtime exception: boom"))
        fake_engine.responder = lambda statement: result
        handle = await fake_engine("db", False)

        with pytest.raises(RuntimeError, match="boom"):
            await executor.execute(handle, "MATCH (n) RETURN n")
        assert result.closed is True


class TestMultiResult:
    """Multi-statement submissions yield a BatchResult."""

    @pytest.mark.asyncio
    async def test_rows_and_empty_markers(self, executor, fake_engine, make_result):
        results = [make_result([]), make_result([{"x": 1}, {"x": 2}])]
        fake_engine.responder = lambda statement: results
        handle = await fake_engine("db", False)

        batch = await executor.execute(handle, "CREATE (:A {id: 1}); MATCH (a:A) RETURN a.id AS x")

        assert isinstance(batch, BatchResult)
        assert len(batch) == 2
        assert batch[0].statement_index == 1
        assert batch[0].rows == []
        assert batch[0].query == "CREATE (:A {id: 1});"
        assert batch[1].rows == [{"x": 1}, {"x": 2}]
        assert batch.to_rows()[0]["rowsAffected"] == 0
        assert all(r.closed for r in results)

    @pytest.mark.asyncio
    async def test_hanging_sub_result_treated_as_empty(self, executor, fake_engine, make_result):
        """A sub-result that never finishes fetching is abandoned after the timeout."""
        hung = make_result(hang=True)
        results = [make_result([]), hung, make_result([{"ok": True}])]
        fake_engine.responder = lambda statement: results
        handle = await fake_engine("db", False)

        batch = await executor.execute(
            handle,
            "ALTER TABLE A ADD x INT64; ALTER TABLE A ADD y INT64; RETURN true AS ok",
        )

        assert [o.ok for o in batch] == [True, True, True]
        assert batch[1].timed_out is True
        assert batch[1].rows == []
        assert batch[2].rows == [{"ok": True}]
        # The abandoned result is left alone for its orphaned fetch
        assert hung.closed is False

    @pytest.mark.asyncio
    async def test_sub_result_error_recorded(self, executor, fake_engine, make_result):
        results = [make_result([{"a": 1}]), make_result(error=RuntimeError("bad fetch"))]
        fake_engine.responder = lambda statement: results
        handle = await fake_engine("db", False)

        batch = await executor.execute(handle, "RETURN 1 AS a; RETURN 2 AS b")

        assert batch[0].ok
        assert batch[1].error == "bad fetch"


class TestFallback:
    """Submission failures fall back to per-statement execution."""

    @staticmethod
    def _responder(make_result, failing: set[str]):
        def respond(statement):
            if ";" in statement.rstrip(";"):
                return RuntimeError("Parser exception: multi-statement rejected (line: 1, offset: 9)")
            if statement in failing:
                return RuntimeError(f"Binder exception: cannot run {statement}")
            return make_result([])
        return respond

    @pytest.mark.asyncio
    async def test_partial_failure(self, executor, fake_engine, make_result):
        """Statement 2 fails, 1 and 3 succeed: one error at index 2."""
        fake_engine.responder = self._responder(make_result, failing={"B;"})
        handle = await fake_engine("db", False)

        batch = await executor.execute(handle, "A; B; C")

        assert batch.fallback is True
        assert len(batch) == 3
        assert [o.statement_index for o in batch.errors] == [2]
        assert "cannot run B;" in batch[1].error
        assert batch.succeeded == 2
        assert fake_engine.statements == ["A; B; C", "A;", "B;", "C;"]

    @pytest.mark.asyncio
    async def test_relationship_patterns_survive_split(self, executor, fake_engine, make_result):
        """Each statement runs whole, arrows included."""
        fake_engine.responder = self._responder(make_result, failing=set())
        handle = await fake_engine("db", False)
        text = (
            "CREATE (a:P {id: 1});\n"
            "MATCH (a:P {id: 1})-->(b:P) DELETE b;\n"
            "CREATE (c:P {id: 3});"
        )

        batch = await executor.execute(handle, text)

        assert fake_engine.statements[1:] == [
            "CREATE (a:P {id: 1});",
            "MATCH (a:P {id: 1})-->(b:P) DELETE b;",
            "CREATE (c:P {id: 3});",
        ]
        assert [o.query for o in batch] == fake_engine.statements[1:]

    @pytest.mark.asyncio
    async def test_all_fail(self, executor, fake_engine, make_result):
        fake_engine.responder = self._responder(make_result, failing={"A;", "B;", "C;"})
        handle = await fake_engine("db", False)

        with pytest.raises(AllStatementsFailed) as exc_info:
            await executor.execute(handle, "A; B; C")

        error = exc_info.value
        assert [index for index, _, _ in error.failures] == [1, 2, 3]
        assert "Statement 1: Binder exception: cannot run A;" in str(error)
        assert "Statement 3:" in str(error)

    @pytest.mark.asyncio
    async def test_single_statement_reraises_original(self, executor, fake_engine):
        original = RuntimeError("Binder exception: Table Nope does not exist.")
        fake_engine.responder = lambda statement: original
        handle = await fake_engine("db", False)

        with pytest.raises(RuntimeError) as exc_info:
            await executor.execute(handle, "MATCH (n:Nope) RETURN n")
        assert exc_info.value is original
        assert fake_engine.statements == ["MATCH (n:Nope) RETURN n"]

    @pytest.mark.asyncio
    async def test_fallback_collects_rows(self, executor, fake_engine, make_result):
        def respond(statement):
            if statement == "RETURN 1 AS a; RETURN 2 AS b":
                return RuntimeError("Connection hiccup")
            value = 1 if "1" in statement else 2
            return make_result([{"v": value}])

        fake_engine.responder = respond
        handle = await fake_engine("db", False)

        batch = await executor.execute(handle, "RETURN 1 AS a; RETURN 2 AS b")

        assert batch.to_rows() == [{"statement": 1, "v": 1}, {"statement": 2, "v": 2}]
