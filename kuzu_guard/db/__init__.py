"""Engine access for kuzu-guard.

Module Structure:
- engine_protocol.py: EngineHandle / EngineResult protocols the core depends on
- kuzu_backend.py: KuzuDB implementation of those protocols

Example:
    from kuzu_guard.db import open_kuzu_handle

    handle = await open_kuzu_handle("/data/graph", read_only=False)
    result = await handle.execute("RETURN 1 AS test;")
    rows = await result.fetch_all()
"""

from kuzu_guard.db.engine_protocol import EngineFactory, EngineHandle, EngineResult, Row, Rows
from kuzu_guard.db.kuzu_backend import KuzuHandle, KuzuResult, open_kuzu_handle

__all__ = [
    "EngineFactory",
    "EngineHandle",
    "EngineResult",
    "KuzuHandle",
    "KuzuResult",
    "Row",
    "Rows",
    "open_kuzu_handle",
]
