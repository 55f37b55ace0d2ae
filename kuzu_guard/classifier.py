"""Lexical statement classification.

No parsing happens here: everything is keyword and regex based. The mutation
check errs on the side of false positives, since a missed write would bypass
the cross-process write lock and the read-only guard.
"""

import re
from dataclasses import dataclass, field
from typing import Literal

from kuzu_guard.errors import has_composite_primary_key

MUTATION_KEYWORDS = ("CREATE", "MERGE", "DELETE", "SET", "REMOVE", "DROP", "ALTER", "COPY")

# Any whole-word occurrence counts. "Top-level clause" detection without a
# parser collapses to this, which is a superset of it.
_MUTATION_RE = re.compile(r"\b(?:" + "|".join(MUTATION_KEYWORDS) + r")\b", re.IGNORECASE)

_SCHEMA_CHANGE_RE = re.compile(
    r"(?:^|;)\s*(?:"
    r"CREATE\s+(?:NODE\s+|REL\s+|RELATIONSHIP\s+)?(?:TABLE|GROUP)"
    r"|ALTER\s+TABLE"
    r"|DROP\s+(?:NODE\s+|REL\s+)?TABLE"
    r")\b",
    re.IGNORECASE,
)

_DDL_STATEMENT_RE = re.compile(r"^\s*(ALTER\s+TABLE|CREATE\s+(NODE|REL)\s+TABLE|DROP\s+TABLE)", re.IGNORECASE)

RiskLevel = Literal["low", "medium", "high", "critical"]


@dataclass(frozen=True)
class StatementClass:
    """Coarse lexical flags for a statement string."""

    is_mutating: bool
    is_schema_change: bool
    has_unsupported_pattern: bool


@dataclass
class DDLBatchAnalysis:
    """How likely a batch is to trip the multi-DDL fetch hang."""

    is_dangerous: bool
    ddl_statements: list[str] = field(default_factory=list)
    ddl_count: int = 0
    risk_level: RiskLevel = "low"
    recommendation: str = ""


def _strip_comment_lines(text: str) -> str:
    lines = []
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped.startswith("--") or stripped.startswith("//"):
            continue
        lines.append(line)
    return "\n".join(lines)


def is_mutating(statement: str) -> bool:
    """True if any mutation keyword appears as a whole word, case-insensitive."""
    return bool(_MUTATION_RE.search(statement))


def is_schema_change(statement: str) -> bool:
    """True if any statement in the text creates, alters or drops a table."""
    return bool(_SCHEMA_CHANGE_RE.search(_strip_comment_lines(statement)))


def classify(statement: str) -> StatementClass:
    """Classify a (possibly multi-statement) string."""
    return StatementClass(
        is_mutating=is_mutating(statement),
        is_schema_change=is_schema_change(statement),
        has_unsupported_pattern=has_composite_primary_key(statement),
    )


def split_statements(text: str) -> list[str]:
    """Split raw text into individual statements.

    Comment-only lines (``--`` or ``//``) are dropped, then the text is split
    on ``;``. Text after ``--`` on a statement line is kept, since ``-->`` and
    ``<--`` are relationship patterns. Each statement is trimmed and
    re-terminated with ``;``. Semicolons inside string literals are not
    special-cased.

    Args:
        text: Raw statement text as submitted

    Returns:
        Non-empty, trimmed, semicolon-terminated statements in order
    """
    cleaned = []
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped.startswith("--") or stripped.startswith("//"):
            continue
        if stripped:
            cleaned.append(line)

    statements = []
    for part in "\n".join(cleaned).split(";"):
        part = part.strip()
        if part:
            statements.append(part + ";")
    return statements


def analyze_ddl_batch(text: str) -> DDLBatchAnalysis:
    """Count DDL statements in a batch and grade the hang risk."""
    ddl_statements = [s for s in split_statements(text) if _DDL_STATEMENT_RE.match(s)]
    ddl_count = len(ddl_statements)

    if ddl_count == 0:
        return DDLBatchAnalysis(False, ddl_statements, 0, "low", "No DDL statements detected. Query is safe.")
    if ddl_count == 1:
        return DDLBatchAnalysis(False, ddl_statements, 1, "low", "Single DDL statement is safe to execute.")
    if ddl_count == 2:
        return DDLBatchAnalysis(
            True, ddl_statements, 2, "medium",
            "Two DDL statements may cause issues. Consider executing separately.",
        )
    if ddl_count <= 5:
        return DDLBatchAnalysis(
            True, ddl_statements, ddl_count, "high",
            "Multiple DDL statements are likely to hang result fetching. Execute individually.",
        )
    return DDLBatchAnalysis(
        True, ddl_statements, ddl_count, "critical",
        "Large DDL batch will hang result fetching. Must execute individually.",
    )
