"""Logging configuration for kuzu-guard.

Uses loguru with automatic rotation and structured logging.
Logs are stored in ~/.kuzu_guard/logs/ with:
- Rotation at 10 MB per file
- Retention of 7 days
- Compression of old logs

Console output goes to stderr only; stdout belongs to the RPC transport.

Environment variables for log level control:
- KUZU_GUARD_LOG_LEVEL: Global log level (default: INFO)
- KUZU_GUARD_LOG_LOCK: Write lock manager log level
- KUZU_GUARD_LOG_BATCH: Batch executor log level
- KUZU_GUARD_LOG_RETRY: Retry coordinator log level, also covers "retry.reconnect"
- KUZU_GUARD_LOG_DIR: Override the log directory
"""

import os
import sys
from contextlib import contextmanager
from pathlib import Path
from time import perf_counter

from loguru import logger

# Get global log level from environment
_global_log_level = os.getenv("KUZU_GUARD_LOG_LEVEL", "INFO").upper()

# Component-specific log level overrides
_component_log_levels: dict[str, str] = {
    "lock": os.getenv("KUZU_GUARD_LOG_LOCK", "").upper(),
    "batch": os.getenv("KUZU_GUARD_LOG_BATCH", "").upper(),
    "retry": os.getenv("KUZU_GUARD_LOG_RETRY", "").upper(),
}


def _log_filter(record) -> bool:
    """Filter log records based on global and component-specific log levels."""
    name = record["extra"].get("name", "")

    for component, level in _component_log_levels.items():
        if level and component in name:
            try:
                return record["level"].no >= logger.level(level).no
            except ValueError:
                pass  # Invalid level, fall through to global

    try:
        return record["level"].no >= logger.level(_global_log_level).no
    except ValueError:
        return True


# Remove default handler
logger.remove()

_log_dir = Path(os.getenv("KUZU_GUARD_LOG_DIR", str(Path.home() / ".kuzu_guard" / "logs")))
_log_dir.mkdir(parents=True, exist_ok=True)

# Console handler - uses filter for level control (allows component overrides)
logger.add(
    sys.stderr,
    level=0,
    filter=_log_filter,
    format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
    colorize=True,
)

# File handler - DEBUG level, with rotation
logger.add(
    _log_dir / "kuzu_guard_{time:YYYY-MM-DD}.log",
    level="DEBUG",
    format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {process} | {name}:{function}:{line} | {message}",
    rotation="10 MB",
    retention="7 days",
    compression="zip",
    enqueue=True,          # Several agent processes may share the directory
)

logger.configure(extra={"name": "kuzu_guard"})


def get_logger(name: str):
    """Get a logger with the given component name bound to context.

    Args:
        name: Module or component name

    Returns:
        Logger instance with name bound
    """
    return logger.bind(name=name)


@contextmanager
def log_timing(operation: str, log_instance=None, level: str = "debug"):
    """Context manager for timing operations with automatic logging.

    Args:
        operation: Description of the operation being timed
        log_instance: Logger instance (uses global logger if None)
        level: Log level for the timing message (default: debug)

    Yields:
        dict with 'elapsed_ms' key (populated after context exits)

    Example:
        with log_timing("engine execute", log) as timing:
            result = await handle.execute(statement)
    """
    log_fn = log_instance or logger
    timing = {"elapsed_ms": 0.0}
    start = perf_counter()
    try:
        yield timing
    finally:
        timing["elapsed_ms"] = (perf_counter() - start) * 1000
        getattr(log_fn, level)(f"{operation}: {timing['elapsed_ms']:.1f}ms")


__all__ = ["logger", "get_logger", "log_timing"]
