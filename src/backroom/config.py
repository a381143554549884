"""
Backroom Press Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables.
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for Backroom Press logs.

    Follows XDG Base Directory Specification:
    - Uses $XDG_STATE_HOME/backroom if XDG_STATE_HOME is set
    - Falls back to $HOME/.local/state/backroom if not set
    - Returns relative path ./logs if HOME not available (dev/testing)

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "backroom" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "backroom" / "logs")

    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    postgres_db: str = "backroom"
    postgres_user: str = "backroom"
    postgres_password: str = "backroom_dev_password"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url_override: str = ""  # DATABASE_URL_OVERRIDE, e.g. sqlite:///backroom.db

    db_pool_size: int = 5
    db_pool_max_overflow: int = 5
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct database URL from components, unless overridden."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # LLM
    llm_provider: str = "openai"  # openai or anthropic
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250514"
    feature_max_tokens: int = 1000
    similarity_max_tokens: int = 500
    synthesis_max_tokens: int = 4000

    # Clustering policy
    join_threshold: float = 0.6  # Mean cohesion needed to join an existing cluster
    new_cluster_threshold: float = 0.7  # Pair score needed to found a new cluster
    similarity_max_attempts: int = 3  # Pair oracle attempts before giving up
    enrichment_fallback_score: float = 0.5  # Used when enrichment scoring fails
    oracle_timeout_seconds: float = 45.0  # Per-request bound for every oracle call
    comparison_concurrency: int = 4  # Parallel oracle calls within one pass
    feature_cap: int = 7  # Max entries per feature list

    # Similarity cache
    invalidate_similarity_on_reextract: bool = False  # Drop cached scores when features change

    # Application
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True
    log_file_enabled: bool = True
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5

    # LLM Logging
    llm_logging_enabled: bool = False  # Enable detailed LLM interaction logging
    llm_log_requests: bool = True
    llm_log_responses: bool = True
    llm_log_tokens: bool = True

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())

    @property
    def llm_api_key(self) -> str:
        """API key for the configured LLM provider."""
        if self.llm_provider == "anthropic":
            return self.anthropic_api_key
        return self.openai_api_key

    @property
    def llm_model(self) -> str:
        """Model name for the configured LLM provider."""
        if self.llm_provider == "anthropic":
            return self.anthropic_model
        return self.openai_model


# Global settings instance
settings = Settings()
