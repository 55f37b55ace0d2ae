"""Connection health checks."""

import asyncio

from kuzu_guard.config import FETCH_TIMEOUT_MS
from kuzu_guard.db.engine_protocol import EngineHandle
from kuzu_guard.log_config import get_logger

log = get_logger("health")

CANARY_STATEMENT = "RETURN 1 AS test;"
CANARY_COLUMN = "test"
CANARY_VALUE = 1


async def _run_canary(handle: EngineHandle) -> bool:
    result = await handle.execute(CANARY_STATEMENT)
    if isinstance(result, list):
        log.warning(f"Canary returned {len(result)} results instead of one")
        for extra in result:
            extra.close()
        return False
    try:
        rows = await result.fetch_all()
    finally:
        result.close()
    valid = len(rows) == 1 and rows[0].get(CANARY_COLUMN) == CANARY_VALUE
    if not valid:
        log.warning(f"Canary returned unexpected rows: {rows!r}")
    return valid


async def is_valid(handle: EngineHandle | None, timeout_ms: int = FETCH_TIMEOUT_MS) -> bool:
    """Check that a handle still answers the canary statement.

    Requires exactly one row whose ``test`` column equals 1. Never raises:
    any exception, a missing handle, a shape mismatch, or no answer within
    ``timeout_ms`` yields False.

    Args:
        handle: Engine handle to check (None counts as invalid)
        timeout_ms: How long the canary may take before the handle counts as hung

    Returns:
        True if the handle is usable
    """
    if handle is None:
        return False
    try:
        return await asyncio.wait_for(_run_canary(handle), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        log.warning(f"Connection validation timed out after {timeout_ms}ms")
        return False
    except Exception as e:
        log.warning(f"Connection validation failed: {e}")
        return False
