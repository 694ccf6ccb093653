"""
VaultSync Test Suite.

This package contains:
- unit/: Unit tests (store, coordinator, services, config; SQLite in a temp dir)
- integration/: Integration tests (HTTP API in-process, concurrent rounds)
"""
