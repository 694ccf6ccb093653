"""
HTTP settings for VaultSync.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class HttpSettings(BaseSettings):
    """HTTP transport configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, description="Bind port")

    # Request body ceiling (bytes)
    max_body_bytes: int = Field(default=10 * 1024 * 1024, description="Max request body size")

    # Header carrying the owner id set by the identity layer in front of us
    owner_header: str = Field(default="X-Owner-ID", description="Authenticated owner header")

    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    model_config = {"env_prefix": "VAULT_HTTP_"}
