"""Error taxonomy for kuzu-guard.

Every failure that leaves the Coordinator is one of the GuardError subclasses
below, or a StructuredError built from one. Callers never need to inspect
exception types: `to_structured()` yields a tagged, JSON-ready payload.
"""

import re
from dataclasses import dataclass, field
from typing import Any

STATEMENT_PREVIEW_CHARS = 200

_COMPOSITE_KEY_RE = re.compile(r"PRIMARY\s+KEY\s*\(\s*`?\w+`?\s*,\s*`?\w+", re.IGNORECASE)
_PARSER_RE = re.compile(r"Parser exception: (.+) \(line: (\d+), offset: (\d+)\)", re.DOTALL)
_DUPLICATE_PK_RE = re.compile(r"Found duplicated primary key value ([^,]+)")

COMPOSITE_KEY_EXAMPLE = "CREATE NODE TABLE Test(id SERIAL, col1 INT64, col2 INT64, PRIMARY KEY(id))"
KUZU_DDL_DOCS = "https://kuzudb.com/docs/cypher/data-definition/create-table"


def _preview(statement: str | None) -> str | None:
    if not statement:
        return None
    if len(statement) > STATEMENT_PREVIEW_CHARS:
        return statement[:STATEMENT_PREVIEW_CHARS] + "..."
    return statement


@dataclass
class StructuredError:
    """Tagged error payload returned to the RPC layer.

    Attributes:
        error: Error-kind tag, e.g. LOCK_TIMEOUT
        message: Human-readable explanation
        type: Coarse category, e.g. lock_timeout, syntax_error
        line: Source line when derivable from the engine message
        offset: Source offset when derivable from the engine message
        details: Extra kind-specific fields
    """

    error: str
    message: str
    type: str
    line: int | None = None
    offset: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Flatten into the JSON shape sent back to agents."""
        data: dict[str, Any] = {
            "error": self.error,
            "message": self.message,
            "type": self.type,
        }
        if self.line is not None:
            data["line"] = self.line
        if self.offset is not None:
            data["offset"] = self.offset
        data.update(self.details)
        return data


class GuardError(Exception):
    """Base class for failures raised by kuzu-guard itself."""

    code = "GUARD_ERROR"
    error_type = "unknown"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        """Kind-specific fields for the structured payload."""
        return {}

    def to_structured(self) -> StructuredError:
        return StructuredError(
            error=self.code,
            message=self.message,
            type=self.error_type,
            details=self.details(),
        )


class UnsupportedPattern(GuardError):
    """Statement uses a construct the engine is known to reject."""

    code = "UNSUPPORTED_FEATURE"
    error_type = "unsupported_feature"

    def __init__(self, message: str | None = None, suggestion: str | None = None):
        super().__init__(
            message
            or "Kuzu does not support composite primary keys. Please use a single-column primary key."
        )
        self.suggestion = suggestion or (
            "Consider using a SERIAL primary key or concatenating columns into a single key."
        )

    def details(self) -> dict[str, Any]:
        return {
            "suggestion": self.suggestion,
            "example": COMPOSITE_KEY_EXAMPLE,
            "documentation": KUZU_DDL_DOCS,
        }


class ReadOnlyViolation(GuardError):
    """Mutating statement submitted while the server is read-only."""

    code = "READ_ONLY_VIOLATION"
    error_type = "read_only"

    def __init__(self, message: str = "Cannot execute write queries in read-only mode"):
        super().__init__(message)


class LockTimeout(GuardError):
    """Write lock could not be acquired in time."""

    code = "LOCK_TIMEOUT"
    error_type = "lock_timeout"

    def __init__(self, current_holder: str, time_remaining_ms: int):
        super().__init__(
            f"Database locked by {current_holder}, estimated time remaining: {time_remaining_ms}ms"
        )
        self.current_holder = current_holder
        self.time_remaining_ms = time_remaining_ms

    def details(self) -> dict[str, Any]:
        return {
            "currentHolder": self.current_holder,
            "estimatedTimeRemainingMs": self.time_remaining_ms,
            "suggestion": (
                "Please try again in a few moments. "
                "Another agent is currently writing to the database."
            ),
        }


class ReconnectFailure(GuardError):
    """A freshly created engine handle failed validation."""

    code = "RECONNECT_FAILED"
    error_type = "connection_failure"

    def __init__(self, message: str = "Failed to validate reconnected Database handle"):
        super().__init__(message)


class ConnectionRecoveryFailed(GuardError):
    """Connection-class failures persisted through every retry."""

    code = "CONNECTION_RECOVERY_FAILED"
    error_type = "connection_failure"

    def __init__(
        self,
        attempts: int,
        last_error: BaseException | str,
        max_retries: int | None = None,
    ):
        self.attempts = attempts
        self.max_retries = attempts - 1 if max_retries is None else max_retries
        self.last_error = str(last_error)
        super().__init__(
            f"Database connection could not be restored after {attempts} attempts. "
            "The server process may need to be restarted."
        )

    def details(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "maxRetries": self.max_retries,
            "lastError": self.last_error,
            "suggestion": "Restart the server process or check the database files and permissions.",
            "recovery": "Connection recovery failed after multiple attempts",
        }


class MergeValidationError(GuardError):
    """MERGE references properties or tables missing from the schema."""

    code = "MERGE_VALIDATION_ERROR"
    error_type = "schema_validation_error"

    def __init__(self, errors: list[str], warnings: list[str], suggestion: str | None = None):
        super().__init__("MERGE query validation failed due to undefined properties")
        self.errors = errors
        self.warnings = warnings
        self.suggestion = suggestion

    def details(self) -> dict[str, Any]:
        return {
            "errors": self.errors,
            "warnings": self.warnings,
            "suggestion": self.suggestion,
            "documentation": KUZU_DDL_DOCS,
        }


class AllStatementsFailed(GuardError):
    """Every statement of a split batch failed."""

    code = "ALL_STATEMENTS_FAILED"
    error_type = "batch_failure"

    def __init__(self, failures: list[tuple[int, str, str]]):
        """
        Args:
            failures: (1-based statement index, statement text, error text) triples
        """
        self.failures = failures
        lines = "\n".join(f"Statement {index}: {error}" for index, _, error in failures)
        super().__init__(f"All statements failed:\n{lines}")

    def details(self) -> dict[str, Any]:
        return {
            "statements": [
                {"statement": index, "query": query, "error": error}
                for index, query, error in self.failures
            ]
        }


class StatementError(GuardError):
    """Terminal engine-level failure: syntax, constraint, missing object."""

    code = "QUERY_ERROR"
    error_type = "unknown"

    def __init__(self, error: BaseException | str, statement: str | None = None):
        super().__init__(str(error))
        self.statement = statement
        self._structured = format_engine_error(error, statement)
        self.code = self._structured.error
        self.error_type = self._structured.type

    def to_structured(self) -> StructuredError:
        return self._structured


def has_composite_primary_key(statement: str) -> bool:
    """True for PRIMARY KEY clauses naming two or more columns."""
    return bool(_COMPOSITE_KEY_RE.search(statement))


def format_engine_error(error: BaseException | str, statement: str | None = None) -> StructuredError:
    """Turn raw engine error text into a tagged StructuredError.

    Args:
        error: Exception (or message) raised by the engine
        statement: Statement that caused it, used for previews and hints

    Returns:
        StructuredError with line/offset populated for parser errors
    """
    if isinstance(error, GuardError):
        return error.to_structured()

    message = str(error)
    original = {"originalError": message}

    if "duplicated primary key" in message:
        match = _DUPLICATE_PK_RE.search(message)
        return StructuredError(
            error="PRIMARY_KEY_VIOLATION",
            message=message,
            type="constraint_violation",
            details={"value": match.group(1) if match else None, **original},
        )

    if "Parser exception" in message:
        match = _PARSER_RE.search(message)
        if match:
            line, offset = int(match.group(2)), int(match.group(3))
            if statement and has_composite_primary_key(statement):
                return StructuredError(
                    error="UNSUPPORTED_FEATURE",
                    message=(
                        "Kuzu does not support composite primary keys. "
                        "Please use a single-column primary key."
                    ),
                    type="unsupported_feature",
                    line=line,
                    offset=offset,
                    details={
                        "suggestion": "Consider concatenating columns or using a SERIAL primary key.",
                        "documentation": KUZU_DDL_DOCS,
                        **original,
                    },
                )
            return StructuredError(
                error="PARSER_ERROR",
                message=match.group(1),
                type="syntax_error",
                line=line,
                offset=offset,
                details=original,
            )

    if "Binder exception" in message:
        return StructuredError(
            error="BINDER_ERROR",
            message=message.replace("Binder exception: ", ""),
            type="binder_error",
            details=original,
        )

    if "Runtime exception" in message:
        return StructuredError(
            error="RUNTIME_ERROR",
            message=message.replace("Runtime exception: ", ""),
            type="runtime_error",
            details=original,
        )

    details: dict[str, Any] = dict(original)
    preview = _preview(statement)
    if preview:
        details["query"] = preview
    return StructuredError(error="QUERY_ERROR", message=message, type="unknown", details=details)
