"""Application configuration using pydantic-settings pattern."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Client Identity Service"
    app_version: str = "0.1.0"
    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Database (Turso)
    turso_database_url: str | None = Field(default=None)
    turso_auth_token: str | None = Field(default=None)

    # Candidate search
    match_threshold: int = Field(
        default=21,
        ge=0,
        description="Candidates must score strictly above this to be proposed",
    )
    match_limit: int = Field(default=10, ge=1)
    search_fetch_limit: int = Field(
        default=200,
        ge=1,
        description="Upper bound on rows pulled by the broad storage lookup",
    )

    # Merge execution
    merge_lock_ttl_seconds: int = Field(default=120, ge=1)
    reassign_batch_size: int = Field(default=500, ge=1)
    storage_retry_attempts: int = Field(default=3, ge=1)

    # Merge workflows (held in memory)
    workflow_ttl_seconds: int = Field(
        default=3600,
        ge=1,
        description="Workflows idle longer than this are dropped",
    )
    max_workflows: int = Field(default=1000, ge=1)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
