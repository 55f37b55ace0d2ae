"""Configuration for kuzu-guard.

Simple dataclass-based configuration with sensible defaults.
Override via environment variables with the KUZU_ prefix, the same names the
tool server has always used.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from kuzu_guard.log_config import get_logger

log = get_logger("config")

# Look for .env in the package directory and its parent
_pkg_dir = Path(__file__).parent
_env_loaded = load_dotenv(_pkg_dir / ".env") or load_dotenv(_pkg_dir.parent / ".env")
log.debug(f"Loaded .env file: {_env_loaded}")

# Fixed timings, deliberately not configurable
HEARTBEAT_INTERVAL_MS = 5000
FETCH_TIMEOUT_MS = 5000
BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 5000

DEFAULT_MAX_RETRIES = 2
DEFAULT_LOCK_TIMEOUT_MS = 10000

LOCK_FILE_NAME = ".mcp_write_lock"


def lock_directory(database_path: str | Path) -> Path:
    """Directory holding the write lock for a database path.

    Older KuzuDB releases store a database as a directory, newer ones as a
    single file. The lock goes inside an existing directory, otherwise next
    to the database so the engine can still create its file.
    """
    path = Path(database_path)
    return path if path.is_dir() else path.parent


def _get_env(key: str, default: str) -> str:
    """Get environment variable with KUZU_ prefix."""
    return os.getenv(f"KUZU_{key}", default)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get boolean environment variable."""
    val = os.getenv(f"KUZU_{key}")
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")


def _get_env_int(key: str, default: int) -> int:
    """Get integer environment variable, falling back on garbage."""
    val = os.getenv(f"KUZU_{key}")
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        log.warning(f"Ignoring non-integer KUZU_{key}={val!r}, using {default}")
        return default


@dataclass
class ExecutionOptions:
    """Per-call options passed in by the RPC layer.

    Attributes:
        read_only_mode: Reject mutating statements without touching the engine
        multi_agent_mode: Guard mutating statements with the cross-process write lock
        agent_id: Identity recorded in the lock file
        max_retries: Retries after the first attempt for connection-class failures
        lock_timeout_ms: How long to wait for the write lock, also the lock lease
    """

    read_only_mode: bool = False
    multi_agent_mode: bool = False
    agent_id: str = field(default_factory=lambda: f"unknown-{os.getpid()}")
    max_retries: int = DEFAULT_MAX_RETRIES
    lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS


@dataclass
class Config:
    """kuzu-guard configuration.

    Attributes:
        database_path: KuzuDB database directory (KUZU_DB_PATH)
        read_only: Open the engine read-only and reject writes (KUZU_READ_ONLY)
        multi_agent: Enable the cross-process write lock (KUZU_MULTI_AGENT)
        agent_id: Agent identity for the lock file (KUZU_AGENT_ID)
        max_retries: Connection-class retries per statement (KUZU_MAX_RETRIES)
        lock_timeout_ms: Write lock wait and lease in ms (KUZU_LOCK_TIMEOUT)
        validate_merge: Check MERGE properties against the schema (KUZU_VALIDATE_MERGE)
    """

    database_path: Path = field(
        default_factory=lambda: Path(_get_env("DB_PATH", str(Path.home() / ".kuzu_guard" / "db")))
    )
    read_only: bool = field(default_factory=lambda: _get_env_bool("READ_ONLY", False))
    multi_agent: bool = field(default_factory=lambda: _get_env_bool("MULTI_AGENT", False))
    agent_id: str = field(
        default_factory=lambda: _get_env("AGENT_ID", f"unknown-{os.getpid()}")
    )
    max_retries: int = field(
        default_factory=lambda: _get_env_int("MAX_RETRIES", DEFAULT_MAX_RETRIES)
    )
    lock_timeout_ms: int = field(
        default_factory=lambda: _get_env_int("LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT_MS)
    )
    validate_merge: bool = field(default_factory=lambda: _get_env_bool("VALIDATE_MERGE", True))

    def __post_init__(self):
        """Normalize paths and clamp nonsensical values."""
        if isinstance(self.database_path, str):
            self.database_path = Path(self.database_path)

        if self.max_retries < 0:
            log.warning(f"max_retries={self.max_retries} is negative, using 0")
            self.max_retries = 0
        if self.lock_timeout_ms <= 0:
            log.warning(f"lock_timeout_ms={self.lock_timeout_ms} must be positive, using default")
            self.lock_timeout_ms = DEFAULT_LOCK_TIMEOUT_MS

        log.debug(f"database_path={self.database_path}")
        log.debug(f"read_only={self.read_only}, multi_agent={self.multi_agent}, agent_id={self.agent_id}")
        log.debug(f"max_retries={self.max_retries}, lock_timeout_ms={self.lock_timeout_ms}")
        log.debug(f"validate_merge={self.validate_merge}")

    def default_options(self) -> ExecutionOptions:
        """Options used when the RPC layer passes none."""
        return ExecutionOptions(
            read_only_mode=self.read_only,
            multi_agent_mode=self.multi_agent,
            agent_id=self.agent_id,
            max_retries=self.max_retries,
            lock_timeout_ms=self.lock_timeout_ms,
        )

    @property
    def lock_file_path(self) -> Path:
        """Location of the cross-process write lock."""
        return lock_directory(self.database_path) / LOCK_FILE_NAME
