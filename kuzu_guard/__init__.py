"""kuzu-guard - resilience and coordination layer for an embedded KuzuDB.

Sits between a tool-call backend and the engine:
- Statement classification (mutating / schema change / unsupported pattern)
- Connection health checks, discard-and-recreate reconnection, bounded retry
- Batch execution that survives the multi-result fetch hang
- Cross-process write lock with heartbeats for multi-agent setups
"""

__version__ = "0.1.0"

from kuzu_guard.batch import BatchExecutor, BatchResult, StatementOutcome
from kuzu_guard.classifier import StatementClass, classify, split_statements
from kuzu_guard.config import Config, ExecutionOptions
from kuzu_guard.coordinator import Coordinator
from kuzu_guard.errors import (
    AllStatementsFailed,
    ConnectionRecoveryFailed,
    GuardError,
    LockTimeout,
    MergeValidationError,
    ReadOnlyViolation,
    ReconnectFailure,
    StatementError,
    StructuredError,
    UnsupportedPattern,
)
from kuzu_guard.lock_manager import LockManager, WriteLock
from kuzu_guard.response import ToolResponse, render

__all__ = [
    "AllStatementsFailed",
    "BatchExecutor",
    "BatchResult",
    "Config",
    "ConnectionRecoveryFailed",
    "Coordinator",
    "ExecutionOptions",
    "GuardError",
    "LockManager",
    "LockTimeout",
    "MergeValidationError",
    "ReadOnlyViolation",
    "ReconnectFailure",
    "StatementClass",
    "StatementError",
    "StatementOutcome",
    "StructuredError",
    "ToolResponse",
    "UnsupportedPattern",
    "WriteLock",
    "classify",
    "render",
    "split_statements",
]
