"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-2024-11-20", alias="OPENAI_MODEL")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        alias="OPENAI_BASE_URL",
    )
    embedding_model: str = Field(default="text-embedding-3-small", alias="EMBEDDING_MODEL")
    database_path: Path = Field(default=Path("concierge.db"), alias="DATABASE_PATH")
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT_SECONDS")
    scheduler_poll_interval_seconds: float = Field(default=2.0, alias="SCHEDULER_POLL_INTERVAL_SECONDS")
    memory_window_messages: int = Field(default=40, alias="MEMORY_WINDOW_MESSAGES")
    max_tool_steps: int = Field(default=10, alias="MAX_TOOL_STEPS")
    knowledge_top_k: int = Field(default=5, alias="KNOWLEDGE_TOP_K")
    workflow_max_attempts: int = Field(default=3, alias="WORKFLOW_MAX_ATTEMPTS")
    # Comma-separated delays between workflow step attempts.
    workflow_retry_backoff_seconds: str = Field(default="1,5,15", alias="WORKFLOW_RETRY_BACKOFF_SECONDS")
    # Base URL of a remote tool server; empty disables discovery.
    tool_server_url: str = Field(default="", alias="TOOL_SERVER_URL")
    conversation_id: str = Field(default="default", alias="CONVERSATION_ID")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def has_openai_key(settings: Settings) -> bool:
    """Return whether a model API key is configured."""

    return bool(settings.openai_api_key.strip())


def retry_backoff(settings: Settings) -> list[float]:
    """Return the workflow retry delays parsed from settings.

    Blank entries are ignored; an empty result means retry immediately.
    """
    return [float(part) for part in settings.workflow_retry_backoff_seconds.split(",") if part.strip()]
