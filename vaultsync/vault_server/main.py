"""
VaultSync Server - Main entry point.

This module starts the VaultSync server:
- Entry store (SQLite)
- Sync coordinator
- HTTP API (FastAPI served by uvicorn)

Usage:
    python -m vaultsync.vault_server.main

Configuration is entirely via environment variables.
See config.py and api/settings.py for all available settings.

Invariants:
    - The store schema exists before the first request is served
    - Graceful shutdown lets in-flight rounds finish or roll back

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn
from fastapi import FastAPI

from .api import HttpSettings, create_app
from .clock import SystemClock
from .config import ServerConfig
from .store import EntryStore
from .sync import SyncCoordinator

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_app(config: ServerConfig, settings: HttpSettings | None = None) -> FastAPI:
    """Wire store, coordinator and HTTP app from configuration.

    Args:
        config: Server configuration
        settings: HTTP settings (loaded from env if not provided)

    Returns:
        FastAPI application
    """
    clock = SystemClock()
    store = EntryStore(
        data_dir=config.storage.data_dir,
        db_name=config.storage.db_name,
        clock=clock,
        wal_mode=config.storage.wal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
        cache_size_pages=config.storage.cache_size_pages,
        operation_timeout_seconds=config.storage.operation_timeout_seconds,
    )
    coordinator = SyncCoordinator(
        store,
        max_batch_size=config.sync.max_batch_size,
        round_timeout_seconds=config.sync.round_timeout_seconds,
    )
    return create_app(store, coordinator=coordinator, settings=settings)


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    settings = HttpSettings()
    app = build_app(config, settings)

    logger.info(f"Starting VaultSync server on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    logger.info("VaultSync server stopped")


if __name__ == "__main__":
    main()
