"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Allow extra env vars without failing
    )

    # App
    app_name: str = "OrderDesk"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./orderdesk.db"
    db_ssl_mode: str = "disable"  # "require" for production
    database_pool_size: int = 5
    database_max_overflow: int = 10
    db_command_timeout_seconds: float = 15.0

    # Language model
    llm_provider: Literal["gemini", "on-prem"] = "gemini"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    onprem_llm_url: str = "http://localhost:11434"
    onprem_llm_model: str = "llama3"
    llm_timeout_seconds: float = 45.0
    llm_normalize_temperature: float = 0.1
    llm_plan_temperature: float = 0.2
    llm_plan_max_tokens: int = 200

    # Embeddings / vector search
    embedding_provider: Literal["gemini", "on-prem", "local"] = "gemini"
    gemini_embedding_model: str = "text-embedding-004"
    onprem_embedding_model: str = "nomic-embed-text"
    local_embedding_model: str = "all-MiniLM-L6-v2"
    embedding_dimension: int = 768
    embedding_timeout_seconds: float = 20.0
    vector_backend: Literal["pgvector", "local"] = "pgvector"
    duplicate_distance_threshold: float = 0.05

    # Ingestion
    ingest_poll_interval_seconds: int = 60
    ingest_max_row_attempts: int = 3
    sheet_fetch_timeout_seconds: float = 20.0
    default_country_code: str = "212"

    # Conversations
    conversation_concurrency: int = 8
    conversation_history_limit: int = 20
    default_locale: str = "en"
    auto_start_conversations: bool = True
    messaging_timeout_seconds: float = 15.0

    # Queues
    queue_maxsize: int = 10000
    max_redeliveries: int = 3
    redelivery_delay_seconds: float = 30.0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
