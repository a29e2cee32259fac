from __future__ import annotations

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices, model_validator
from typing import Optional


BASE_DIR = Path(__file__).parent.resolve()


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    base_dir: Path = BASE_DIR
    db_path: Path = Field(
        default=BASE_DIR / "worknotes.db",
        validation_alias=AliasChoices('db_path', 'DB_PATH', 'SQLITE_DB')
    )

    environment: str = Field(
        default="development",
        validation_alias=AliasChoices('environment', 'ENVIRONMENT', 'ENV')
    )
    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices('log_level', 'LOG_LEVEL')
    )
    # Optional file for WARNING+ records, in addition to the console
    log_file: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices('log_file', 'LOG_FILE')
    )

    # PDF ingestion
    max_pdf_size_bytes: int = Field(
        default=10 * 1024 * 1024,  # 10MB
        validation_alias=AliasChoices('max_pdf_size_bytes', 'MAX_PDF_SIZE_BYTES')
    )
    similar_notes_top_k: int = Field(
        default=3,
        validation_alias=AliasChoices('similar_notes_top_k', 'SIMILAR_NOTES_TOP_K')
    )
    similar_notes_score_threshold: float = Field(
        default=0.4,
        validation_alias=AliasChoices('similar_notes_score_threshold', 'SIMILAR_NOTES_SCORE_THRESHOLD')
    )
    job_retention_days: int = Field(
        default=7,
        validation_alias=AliasChoices('job_retention_days', 'JOB_RETENTION_DAYS')
    )

    # Embedding retry queue
    retry_max_attempts: int = Field(
        default=3,
        validation_alias=AliasChoices('retry_max_attempts', 'RETRY_MAX_ATTEMPTS')
    )
    retry_batch_size: int = Field(
        default=10,
        validation_alias=AliasChoices('retry_batch_size', 'RETRY_BATCH_SIZE')
    )
    retry_backoff_base: int = Field(
        default=2,
        validation_alias=AliasChoices('retry_backoff_base', 'RETRY_BACKOFF_BASE')
    )
    # Claims older than this are considered abandoned by a crashed sweep
    retry_stale_claim_seconds: int = Field(
        default=600,
        validation_alias=AliasChoices('retry_stale_claim_seconds', 'RETRY_STALE_CLAIM_SECONDS')
    )
    dead_letter_stale_after_hours: int = Field(
        default=72,
        validation_alias=AliasChoices('dead_letter_stale_after_hours', 'DEAD_LETTER_STALE_AFTER_HOURS')
    )

    # Embeddings: 'ollama' or 'none' (deterministic pseudo-embedding for dev)
    embeddings_provider: str = Field(
        default="ollama",
        validation_alias=AliasChoices('embeddings_provider', 'EMBEDDINGS_PROVIDER')
    )
    embeddings_model: str = Field(
        default="nomic-embed-text",
        validation_alias=AliasChoices('embeddings_model', 'EMBEDDINGS_MODEL')
    )
    embeddings_dim: int = Field(
        default=768,
        validation_alias=AliasChoices('embeddings_dim', 'EMBEDDINGS_DIM')
    )
    ollama_embeddings_url: str = Field(
        default="http://localhost:11434/api/embeddings",
        validation_alias=AliasChoices('ollama_embeddings_url', 'OLLAMA_URL', 'OLLAMA_EMBEDDINGS_URL')
    )

    # Draft generation
    ollama_api_url: str = Field(
        default="http://localhost:11434/api/generate",
        validation_alias=AliasChoices('ollama_api_url', 'OLLAMA_API_URL')
    )
    ollama_model: str = Field(
        default="llama3.2",
        validation_alias=AliasChoices('ollama_model', 'OLLAMA_MODEL')
    )
    llm_temperature: float = Field(
        default=0.7,
        validation_alias=AliasChoices('llm_temperature', 'LLM_TEMPERATURE')
    )
    http_timeout_seconds: float = Field(
        default=60.0,
        validation_alias=AliasChoices('http_timeout_seconds', 'HTTP_TIMEOUT_SECONDS')
    )

    @model_validator(mode="after")
    def _check_retry_settings(self) -> "Settings":
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be at least 1")
        if self.retry_backoff_base < 1:
            raise ValueError("retry_backoff_base must be at least 1")
        if self.embeddings_provider not in {"ollama", "none"}:
            raise ValueError(f"Unsupported embeddings provider: {self.embeddings_provider}")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() in ('production', 'prod')

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ('development', 'dev', 'local')

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance"""
    return settings
