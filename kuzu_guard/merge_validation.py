"""Pre-flight validation of MERGE statements against the node table schema.

KuzuDB fails badly on MERGE patterns that reference properties a node table
does not define, so MERGE targets are checked before the statement runs.
Table properties come from `CALL TABLE_INFO(...)` and are cached for five
minutes; the cache is dropped after any schema change.
"""

import re
import time
from dataclasses import dataclass, field

from kuzu_guard.db.engine_protocol import EngineHandle
from kuzu_guard.log_config import get_logger

log = get_logger("merge_validation")

SCHEMA_CACHE_TTL_SECONDS = 5 * 60

_MERGE_PATTERN_RE = re.compile(r"MERGE\s*\(\s*(\w+)\s*:\s*(\w+)\s*\{([^}]+)\}", re.IGNORECASE)
_MERGE_ALIAS_RE = re.compile(r"MERGE\s*\(\s*(\w+)\s*:\s*(\w+)", re.IGNORECASE)
_PROPERTY_KEY_RE = re.compile(r"(\w+)\s*:")
_SET_TARGET_RE = re.compile(r"(\w+)\.(\w+)\s*=")

MERGE_WARNING = (
    "MERGE has limited support in Kuzu. Consider using CREATE OR REPLACE for updates, "
    "or MATCH then CREATE for conditional creation."
)

SUGGESTED_FIX = (
    "To fix this issue:\n"
    "1. Ensure all properties are defined in the CREATE NODE TABLE statement\n"
    "2. Or use CREATE OR REPLACE instead of MERGE for updates\n"
    "3. Or use MATCH/CREATE pattern for conditional creation\n\n"
    "Example alternatives:\n"
    "- CREATE OR REPLACE (node:Label {id: value, prop: value})\n"
    "- MATCH (node:Label {id: value}) SET node.prop = value\n"
    "- CREATE (node:Label {id: value}) // if doesn't exist"
)


@dataclass
class MergeTarget:
    """A node label touched by MERGE and the properties it names."""

    label: str
    properties: list[str] = field(default_factory=list)


@dataclass
class MergeValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suggested_fix: str | None = None


def extract_merge_targets(statement: str) -> list[MergeTarget]:
    """Find MERGE node patterns and the properties they read or SET."""
    targets: list[MergeTarget] = []

    for match in _MERGE_PATTERN_RE.finditer(statement):
        label, props = match.group(2), match.group(3)
        targets.append(MergeTarget(label, _PROPERTY_KEY_RE.findall(props)))

    aliases = {m.group(1): m.group(2) for m in _MERGE_ALIAS_RE.finditer(statement)}
    for alias, prop in _SET_TARGET_RE.findall(statement):
        label = aliases.get(alias)
        if label is None:
            continue
        existing = next((t for t in targets if t.label == label), None)
        if existing is None:
            targets.append(MergeTarget(label, [prop]))
        elif prop not in existing.properties:
            existing.properties.append(prop)

    return targets


class SchemaLookupError(Exception):
    """Table properties could not be read for a reason other than absence."""


class MergeValidator:
    """Checks MERGE targets against cached node table properties."""

    def __init__(self, ttl_seconds: float = SCHEMA_CACHE_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._cache: dict[str, set[str]] = {}
        self._cached_at = 0.0

    def clear_cache(self) -> None:
        if self._cache:
            log.debug("Clearing schema cache after DDL operation")
        self._cache.clear()
        self._cached_at = 0.0

    async def table_properties(self, handle: EngineHandle, table: str) -> set[str] | None:
        """Property names of a node table, or None if the table does not exist.

        Raises:
            SchemaLookupError: The engine failed for another reason
        """
        key = table.lower()
        if time.monotonic() - self._cached_at < self.ttl_seconds and key in self._cache:
            return self._cache[key]

        try:
            result = await handle.execute(f"CALL TABLE_INFO('{table}') RETURN *;")
            if isinstance(result, list):
                raise SchemaLookupError(f"Unexpected multi-result for TABLE_INFO('{table}')")
            try:
                rows = await result.fetch_all()
            finally:
                result.close()
        except SchemaLookupError:
            raise
        except Exception as e:
            if "does not exist" in str(e):
                return None
            raise SchemaLookupError(str(e)) from e

        if not rows:
            return None

        properties = {row["name"] for row in rows if isinstance(row.get("name"), str)}
        self._cache[key] = properties
        self._cached_at = time.monotonic()
        return properties

    async def validate(self, handle: EngineHandle, statement: str) -> MergeValidationResult:
        """Validate every MERGE target in the statement.

        Raises:
            SchemaLookupError: Schema could not be read; callers should skip validation
        """
        targets = extract_merge_targets(statement)
        if not targets:
            return MergeValidationResult(is_valid=True)

        errors: list[str] = []
        for target in targets:
            properties = await self.table_properties(handle, target.label)
            if properties is None:
                errors.append(
                    f"Node table '{target.label}' does not exist. Create it first with CREATE NODE TABLE."
                )
                continue

            undefined = [p for p in target.properties if p not in properties]
            if undefined:
                errors.append(
                    f"Properties [{', '.join(undefined)}] are not defined in node table "
                    f"'{target.label}'. Available properties: [{', '.join(sorted(properties))}]"
                )

        return MergeValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=[MERGE_WARNING],
            suggested_fix=SUGGESTED_FIX if errors else None,
        )
