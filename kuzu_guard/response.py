"""Rendering of Coordinator outcomes into tool-call payloads."""

from dataclasses import dataclass
from typing import Any

import orjson

from kuzu_guard.batch import BatchResult
from kuzu_guard.errors import StructuredError

Outcome = list[dict[str, Any]] | BatchResult | StructuredError


@dataclass
class ToolResponse:
    """Text content plus error flag, as the RPC layer sends it back."""

    text: str
    is_error: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": [{"type": "text", "text": self.text}],
            "isError": self.is_error,
        }


def _default(value: Any) -> Any:
    """Fallback for engine values orjson does not know (Decimal, Path, ...)."""
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def to_json(data: Any) -> str:
    """Indented JSON with native datetime/UUID support.

    Integers beyond 64 bits (INT128 columns) are emitted as strings.
    """
    try:
        return orjson.dumps(data, default=_default, option=orjson.OPT_INDENT_2).decode("utf-8")
    except TypeError:
        # orjson rejects ints wider than 64 bits before calling default
        return orjson.dumps(
            _stringify_big_ints(data), default=_default, option=orjson.OPT_INDENT_2
        ).decode("utf-8")


def _stringify_big_ints(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and not -(2**63) <= value < 2**64:
        return str(value)
    if isinstance(value, dict):
        return {k: _stringify_big_ints(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stringify_big_ints(v) for v in value]
    return value


def render(outcome: Outcome) -> ToolResponse:
    """Serialize rows, a BatchResult, or a StructuredError."""
    if isinstance(outcome, StructuredError):
        return ToolResponse(text=to_json(outcome.to_dict()), is_error=True)
    if isinstance(outcome, BatchResult):
        return ToolResponse(text=to_json(outcome.to_rows()), is_error=False)
    return ToolResponse(text=to_json(outcome), is_error=False)
