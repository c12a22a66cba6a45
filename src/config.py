import os
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Anthropic Configuration
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_base_url: str = "https://api.anthropic.com"

    # Gemini Configuration
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"

    # Whisper Configuration
    openai_api_key: Optional[str] = None
    whisper_model: str = "whisper-1"
    openai_base_url: str = "https://api.openai.com"

    # Provider request defaults
    provider_timeout_seconds: float = 120.0
    default_max_output_tokens: int = 4096
    default_temperature: float = 0.7

    # Queue Configuration
    job_poll_interval: float = 1.0
    job_default_priority: int = 1
    worker_error_backoff_seconds: float = 5.0

    # Storage Configuration
    data_dir: str = "./data"
    job_retention_days: int = 7

    # Logging Configuration
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def sqlite_path(self) -> str:
        """Return path to SQLite database."""
        return os.path.join(self.data_dir, "background_jobs.db")


# Global settings instance
settings = Settings()
