"""Configuration management for mailbrief.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

EMBEDDING_BACKENDS = ("ollama", "deterministic")
SUMMARIZER_BACKENDS = ("ollama", "markdown")
SEARCH_MODES = ("max", "weighted")


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the MAILBRIEF_ prefix (e.g., MAILBRIEF_OLLAMA_HOST).
    """

    model_config = SettingsConfigDict(
        env_prefix="MAILBRIEF_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_url: str = Field(
        default="sqlite:///mailbrief.sqlite3",
        description="SQLAlchemy URL of the knowledge base (messages, cursor, index, digests)",
    )

    # Gmail Configuration
    gmail_token_path: Path = Field(
        default=Path("token.json"),
        description="Path to an authorized-user token file produced by an external OAuth flow",
    )
    gmail_scope: str = Field(
        default="https://www.googleapis.com/auth/gmail.readonly",
        description="OAuth scope the token was granted for",
    )
    gmail_user_id: str = Field(default="me", description="Gmail user id")
    gmail_page_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Maximum number of messages requested per mailbox page",
    )

    # Sync loop
    sync_poll_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Sleep between incremental sync passes",
    )
    initial_sync_days: int = Field(
        default=30,
        ge=1,
        description="Window of recent mail listed on the very first sync",
    )
    resync_window_days: int = Field(
        default=7,
        ge=1,
        description="How far back a bounded resync re-fetches after a cursor reset",
    )
    sync_max_retries: int = Field(
        default=5,
        ge=0,
        description="Transient-error retries within a single sync pass",
    )
    mailbox_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout applied to every mailbox collaborator call",
    )

    # Backoff policy shared by the background loops
    backoff_initial_seconds: float = Field(default=1.0, gt=0)
    backoff_max_seconds: float = Field(default=300.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    # Ollama Configuration
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama API host URL",
    )
    ollama_model: str = Field(
        default="llama3.1:8b",
        description="Ollama model used for digest summarization",
    )
    ollama_timeout: int = Field(
        default=120,
        description="Timeout for Ollama API requests in seconds",
    )

    # Embeddings
    embedding_backend: str = Field(
        default="ollama",
        description="Active embedder: 'ollama' or 'deterministic' (non-semantic, dev only)",
    )
    embedding_model: str = Field(
        default="all-minilm",
        description="Embedding model name; part of the index model version",
    )
    embedding_dimension: int = Field(default=384, ge=1)
    embedding_timeout_seconds: float = Field(default=60.0, gt=0)
    embedding_max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries per message before it is stored lexical-only and flagged pending",
    )

    # Vector index (Qdrant)
    qdrant_host: str | None = Field(
        default=None,
        description="Qdrant server host; when unset an embedded store at qdrant_path is used",
    )
    qdrant_port: int = Field(default=6333)
    qdrant_path: str = Field(
        default="qdrant_data",
        description="Embedded Qdrant location (directory, or ':memory:')",
    )
    qdrant_collection_prefix: str = Field(default="mailbrief")

    # Index loop
    index_poll_interval_seconds: float = Field(default=60.0, gt=0)
    index_batch_size: int = Field(default=200, ge=1)
    index_workers: int = Field(
        default=4,
        ge=1,
        description="Concurrent embedding requests; size to the embedder's rate limit",
    )
    reembed_batch_size: int = Field(
        default=50,
        ge=0,
        description="Stale or pending entries re-embedded per index cycle",
    )

    # Search
    search_mode: str = Field(
        default="max",
        description="'max' ranks by the higher normalized score, 'weighted' by a weighted sum",
    )
    search_lexical_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    search_candidate_multiplier: int = Field(default=4, ge=1)

    # Digests
    digest_interval_seconds: float = Field(
        default=7 * 24 * 3600,
        gt=0,
        description="Digest cadence (weekly)",
    )
    digest_concurrency: int = Field(default=4, ge=1)
    digest_max_messages: int = Field(
        default=200,
        ge=1,
        description="Upper bound on messages handed to the summarizer in one digest",
    )
    summarizer_backend: str = Field(
        default="ollama",
        description="Active summarizer: 'ollama' or 'markdown' (extractive)",
    )
    summarization_timeout_seconds: float = Field(default=180.0, gt=0)

    # SMTP delivery
    smtp_host: str = Field(default="localhost")
    smtp_port: int = Field(default=587)
    smtp_user: str | None = Field(default=None)
    smtp_password: str | None = Field(default=None)
    smtp_from_email: str = Field(default="digest@localhost")
    smtp_from_name: str = Field(default="mailbrief")
    smtp_starttls: bool = Field(default=True)
    delivery_timeout_seconds: float = Field(default=30.0, gt=0)

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_json: bool = Field(default=False, description="Render log events as JSON lines")
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    @field_validator("embedding_backend")
    @classmethod
    def _check_embedding_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in EMBEDDING_BACKENDS:
            raise ValueError(f"embedding_backend must be one of {EMBEDDING_BACKENDS}")
        return v

    @field_validator("summarizer_backend")
    @classmethod
    def _check_summarizer_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in SUMMARIZER_BACKENDS:
            raise ValueError(f"summarizer_backend must be one of {SUMMARIZER_BACKENDS}")
        return v

    @field_validator("search_mode")
    @classmethod
    def _check_search_mode(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in SEARCH_MODES:
            raise ValueError(f"search_mode must be one of {SEARCH_MODES}")
        return v

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def embedding_model_version(self) -> str:
        """Identifier stamped on every vector produced by the active embedder."""

        if self.embedding_backend == "ollama":
            return f"ollama:{self.embedding_model}"
        return f"deterministic:{self.embedding_dimension}"


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
