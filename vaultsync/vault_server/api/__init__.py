"""
API module for VaultSync.

This module provides the HTTP interface (FastAPI) in front of the sync core:
- Entry CRUD endpoints
- The /sync round endpoint
- Health check
"""

from .http_server import create_app
from .settings import HttpSettings

__all__ = [
    "HttpSettings",
    "create_app",
]
