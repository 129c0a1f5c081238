"""Global configuration using pydantic settings management.

Values are loaded from environment variables (or an .env file) and
exposed via the cached `get_settings()` accessor. The upstream credential
is mandatory: building `Settings` without it fails, which the API module
turns into a fatal startup error.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from env or defaults."""

    # Upstream provider (OpenRouter-compatible chat completions)
    upstream_api_key: str = Field(alias="UPSTREAM_API_KEY")
    upstream_url: str = Field(
        default="https://openrouter.ai/api/v1/chat/completions", alias="UPSTREAM_URL"
    )
    upstream_model: str = Field(default="deepseek/deepseek-chat", alias="UPSTREAM_MODEL")
    system_prompt: str = Field(default="You are a helpful AI assistant.", alias="SYSTEM_PROMPT")
    upstream_referer: str = Field(default="http://localhost:3000", alias="UPSTREAM_REFERER")
    upstream_title: str = Field(default="AI Study Assistant", alias="UPSTREAM_TITLE")
    upstream_connect_timeout: float = Field(default=30, alias="UPSTREAM_CONNECT_TIMEOUT")
    upstream_read_timeout: float = Field(default=120, alias="UPSTREAM_READ_TIMEOUT")

    # CORS - accept comma-separated string
    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")

    # --- History store ---
    history_backend: str = Field(default="cloudsql", alias="HISTORY_BACKEND")  # "cloudsql" | "memory"
    history_default_limit: int = Field(default=20, alias="HISTORY_DEFAULT_LIMIT")
    cloud_sql_instance: str = Field(default="", alias="CLOUD_SQL_INSTANCE")  # project:region:instance
    db_host: str = Field(default="localhost", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    db_user: str = Field(default="postgres", alias="DB_USER")
    db_password: str = Field(default="", alias="DB_PASSWORD")
    db_name: str = Field(default="notes", alias="DB_NAME")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    port: int = Field(default=3000, alias="PORT")

    @field_validator("upstream_api_key")
    @classmethod
    def require_api_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("UPSTREAM_API_KEY must not be empty")
        return v

    @field_validator("history_backend")
    @classmethod
    def known_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("cloudsql", "memory"):
            raise ValueError(f"Unknown HISTORY_BACKEND: {v}")
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """Convert comma-separated CORS origins to list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        populate_by_name = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
