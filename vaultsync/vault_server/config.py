"""
Configuration management for VaultSync Server.

Storage, sync round and logging settings come from environment variables.
HTTP transport settings are loaded separately by api/settings.py.

Invariants:
    - Every setting has a default that runs a single-node server from ./data
    - validate() rejects limits that would make every round fail
      (batch size below 1, non-positive timeouts)
    - LOG_FORMAT is either json or text

How to change safely:
    - Name new variables after the section they configure (SQLITE_*, SYNC_*)
    - Keep SYNC_ROUND_TIMEOUT_SECONDS above SQLITE_BUSY_TIMEOUT_MS so a round
      can outwait one lock holder
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        db_name: Database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
        operation_timeout_seconds: Deadline for a single store call
    """

    data_dir: str = "./data"
    db_name: str = "vault.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB
    operation_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "./data"),
            db_name=os.getenv("SQLITE_DB_NAME", "vault.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
            operation_timeout_seconds=float(os.getenv("SQLITE_OPERATION_TIMEOUT_SECONDS", "10")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Sync round configuration.

    Attributes:
        max_batch_size: Maximum records accepted in one round
        round_timeout_seconds: Deadline for a whole round (apply + delta)
    """

    max_batch_size: int = 1000
    round_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(
            max_batch_size=int(os.getenv("SYNC_MAX_BATCH_SIZE", "1000")),
            round_timeout_seconds=float(os.getenv("SYNC_ROUND_TIMEOUT_SECONDS", "30")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    HTTP transport settings live in api/settings.py (pydantic-settings).

    Attributes:
        storage: Local storage configuration
        sync: Sync round configuration
        observability: Observability configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            sync=SyncConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.data_dir:
            raise ValueError("DATA_DIR must not be empty")
        if self.storage.busy_timeout_ms < 0:
            raise ValueError("SQLITE_BUSY_TIMEOUT_MS must be >= 0")
        if self.storage.operation_timeout_seconds <= 0:
            raise ValueError("SQLITE_OPERATION_TIMEOUT_SECONDS must be > 0")
        if self.sync.max_batch_size < 1:
            raise ValueError("SYNC_MAX_BATCH_SIZE must be >= 1")
        if self.sync.round_timeout_seconds <= 0:
            raise ValueError("SYNC_ROUND_TIMEOUT_SECONDS must be > 0")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "db_name": self.storage.db_name,
                "wal_mode": self.storage.wal_mode,
                "max_batch_size": self.sync.max_batch_size,
                "round_timeout_seconds": self.sync.round_timeout_seconds,
                "log_level": self.observability.log_level,
            },
        )
