"""Engine protocol for kuzu-guard.

Defines the narrow surface the guard needs from the embedded engine: submit
a statement, fetch the rows of a result, release a result. Everything else
about the engine stays opaque, which keeps the core testable with fakes.
"""

from typing import Any, Awaitable, Callable, Protocol, Union, runtime_checkable

Row = dict[str, Any]
Rows = list[Row]


@runtime_checkable
class EngineResult(Protocol):
    """One result produced by an engine statement."""

    async def fetch_all(self) -> Rows:
        """Fetch every remaining row as a column-name keyed dict.

        May block indefinitely on engine defects; callers race it against
        a timeout where that matters.
        """
        ...

    def close(self) -> None:
        """Release engine-side resources held by the result."""
        ...


@runtime_checkable
class EngineHandle(Protocol):
    """A live engine connection, owned by exactly one HandleSlot."""

    async def execute(self, statement: str) -> Union[EngineResult, list[EngineResult]]:
        """Submit a statement string.

        Returns:
            A single result, or one result per statement for multi-statement text
        """
        ...


EngineFactory = Callable[[str, bool], Awaitable[EngineHandle]]
"""Opens a new handle: ``await factory(database_path, read_only)``."""
