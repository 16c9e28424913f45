"""Playground API Configuration using Pydantic Settings.

Provides centralized configuration for the playground API including:
- Upstream completion endpoint (OpenRouter) credentials and attribution
- Database connection and pool settings
- Shared HTTP client pool and timeouts
- Logging and CORS settings

Configuration is loaded from environment variables and .env files using
Pydantic Settings. The @lru_cache decorator ensures a single settings
instance is shared across the application, and the same instance is handed
to the completion relay at construction.

Last Grunted: 10/14/2026 03:10:00 PM UTC
"""
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Core service configuration for the playground API.

    Settings are grouped by category:
    - Upstream: API key, base URL, attribution headers
    - Database: URL, store backend, pool sizing
    - HTTP client: connection limits and timeouts
    - Service: CORS origins, page size, logging

    Example:
        >>> settings = get_settings()
        >>> settings.completions_url
        'https://openrouter.ai/api/v1/chat/completions'

    Last Grunted: 10/14/2026 03:10:00 PM UTC
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore"
    )

    # Upstream completion endpoint
    openrouter_api_key: str = Field(default="", description="API key sent as a bearer token upstream")
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1", description="Upstream API base URL")
    openrouter_referer: Optional[str] = Field(default="http://localhost:8080", description="HTTP-Referer attribution header")
    openrouter_title: Optional[str] = Field(default=None, description="X-Title attribution header")

    # Persistence
    database_url: str = Field(default="sqlite+aiosqlite:///./chat.db", description="SQLAlchemy async database URL")
    store_backend: Literal["sql", "memory"] = Field(default="sql", description="Conversation store implementation")
    sql_echo: bool = Field(default=False, description="Log SQL statements")
    db_pool_size: int = Field(default=5)
    db_max_overflow: int = Field(default=10)
    db_pool_timeout: int = Field(default=30)
    db_pool_recycle: int = Field(default=3600)

    # Shared HTTP client
    http_max_connections: int = Field(default=100)
    http_max_keepalive: int = Field(default=20)
    http_timeout_connect: float = Field(default=5.0)
    http_timeout_read: float = Field(default=120.0)
    http_timeout_write: float = Field(default=30.0)
    http_timeout_pool: float = Field(default=10.0)

    # Service
    cors_origins: List[str] = Field(default=["*"], description="Allowed CORS origins")
    chat_page_size: int = Field(default=15, description="Conversations per history page")
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")

    @property
    def completions_url(self) -> str:
        """Full URL of the upstream chat completions endpoint."""
        return f"{self.openrouter_base_url.rstrip('/')}/chat/completions"

    def upstream_headers(self) -> dict:
        """Build the headers sent with every upstream completion request.

        Returns:
            dict: Authorization plus optional attribution headers
        """
        headers = {
            "Authorization": f"Bearer {self.openrouter_api_key}",
            "Content-Type": "application/json",
        }
        if self.openrouter_referer:
            headers["HTTP-Referer"] = self.openrouter_referer
        if self.openrouter_title:
            headers["X-Title"] = self.openrouter_title
        return headers


@lru_cache()
def get_settings() -> Settings:
    """Get cached singleton settings instance.

    Note:
        To reload settings (e.g., after env changes), call get_settings.cache_clear()
        before calling get_settings() again.
    """
    return Settings()
