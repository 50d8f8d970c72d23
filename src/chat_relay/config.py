"""Chat Relay Service Configuration using Pydantic Settings.

Provides centralized configuration for the chat relay including:
- Supabase settings (project URL and API key used for auth + storage)
- OpenAI settings (API key, optional base URL, chat model)
- HTTP settings (CORS origins, request duration ceiling)
- Logging settings (level, renderer)

Configuration is loaded from environment variables and .env files using
Pydantic Settings. The @lru_cache decorator ensures a single settings
instance is shared across the application.

Last Grunted: 10/18/2026 09:10:00 AM UTC
"""
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Core service configuration for chat-relay.

    Settings are grouped by category:
    - Supabase: project URL, API key, chat history table name
    - OpenAI: API key, base URL override, default chat model
    - HTTP: CORS origins, max request duration
    - Logging: level and output format

    Example:
        >>> settings = get_settings()
        >>> print(settings.chat_model)
        "gpt-4o"
        >>> print(settings.get_cors_origins())
        ["http://localhost:3000"]

    Last Grunted: 10/18/2026 09:10:00 AM UTC
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore"
    )

    # Supabase (auth + chat history storage)
    supabase_url: str = Field(default="http://localhost:54321", description="Supabase project URL")
    supabase_key: str = Field(default="", description="Supabase anon or service-role key")
    chat_history_table: str = Field(default="chat_history", description="Table holding chat turns")

    # OpenAI completion service
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_base_url: Optional[str] = Field(default=None, description="OpenAI-compatible base URL override")
    chat_model: str = Field(default="gpt-4o", description="Model used for chat completions")

    # HTTP
    cors_origins: str = Field(default="http://localhost:3000", description="Comma-separated allowed origins")
    max_duration_seconds: float = Field(default=30.0, description="Overall ceiling for a streamed response")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: Literal["json", "console"] = Field(default="json", description="structlog renderer")

    def get_cors_origins(self) -> list[str]:
        """Split the comma-separated CORS origin list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached singleton settings instance.

    Returns:
        Settings: Cached configuration instance loaded from env and .env.

    Note:
        To reload settings (e.g., after env changes), call get_settings.cache_clear()
        before calling get_settings() again.
    """
    return Settings()
