"""Application configuration with validation."""

from enum import Enum
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class ConfigurationError(Exception):
    """Raised when application configuration is invalid for the environment."""
    pass


class Settings(BaseSettings):
    """
    Application settings with validation.

    Every value can be overridden through an environment variable of the
    same name (case-insensitive) or through a ``.env`` file.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment (development/production)"
    )

    # CORS Configuration
    cors_allowed_origins: str = Field(
        default="http://localhost:3000",
        description="Allowed CORS origins (comma-separated)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./docforge.db",
        description="Cache database connection URL"
    )

    # Generation backend
    # LiteLLM model string, e.g. "openai/gpt-4o-mini", "anthropic/claude-3-5-haiku-latest".
    # Empty string = generation disabled (admin endpoints still work).
    generation_model: str = Field(
        default="",
        description="LiteLLM model string used for every generation stage"
    )
    generation_api_key: str = Field(
        default="",
        description="API key for the generation provider"
    )
    generation_api_base: str = Field(
        default="",
        description="Base URL for the generation provider (optional)"
    )
    generation_temperature: float = Field(
        default=0.2,
        description="Sampling temperature"
    )
    generation_max_tokens: int = Field(
        default=4096,
        description="Maximum completion tokens per call"
    )
    generation_timeout: float = Field(
        default=120.0,
        description="Per-call timeout in seconds, enforced by the provider client"
    )
    generation_context_window: int = Field(
        default=0,
        description="Context window override in tokens (0 = resolve from the model)"
    )

    # Pipeline
    unit_concurrency: int = Field(
        default=3,
        description="Maximum concurrent per-unit generation calls"
    )
    retry_max_attempts: int = Field(
        default=5,
        description="Attempts per generation call before the unit is marked failed"
    )
    retry_base_delay: float = Field(
        default=2.0,
        description="Initial backoff delay in seconds"
    )
    retry_max_delay: float = Field(
        default=20.0,
        description="Upper bound on a single backoff delay in seconds"
    )
    failure_max_ratio: float = Field(
        default=0.5,
        description="Largest fraction of failed units that still allows a cache commit"
    )
    max_abstractions: int = Field(
        default=10,
        description="Maximum number of abstractions requested from structural discovery"
    )
    max_lines_per_file: int = Field(
        default=150,
        description="Lines of each file included in prompts (head and tail kept)"
    )
    progress_buffer_size: int = Field(
        default=256,
        description="Progress events buffered per run before the oldest are dropped"
    )

    # Cache store
    cache_lock_timeout: float = Field(
        default=30.0,
        description="Seconds to wait for a per-repository cache lock"
    )

    # Cache maintenance defaults
    cleanup_max_age_days: int = Field(default=30, description="Evict entries unused for this many days")
    cleanup_max_size_mb: float = Field(default=500.0, description="Total cache size bound in MB")
    cleanup_max_entries: int = Field(default=50, description="Maximum number of cached repositories")
    cleanup_min_entries_to_keep: int = Field(default=0, description="Never evict below this many entries")
    cleanup_interval_hours: float = Field(
        default=24.0,
        description="Hours between scheduled cleanup passes in the API process (0 = disabled)"
    )

    # Repository file source
    max_file_size: int = Field(
        default=100_000,
        description="Files larger than this many bytes are skipped"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    def get_cors_origins(self) -> List[str]:
        """
        Get CORS origins as a list.

        Parses comma-separated string and validates no wildcards.
        """
        origins = [origin.strip() for origin in self.cors_allowed_origins.split(',') if origin.strip()]

        if "*" in origins:
            raise ValueError(
                "Wildcard CORS (*) not allowed. "
                "Specify explicit origins in CORS_ALLOWED_ORIGINS"
            )

        return origins

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator('retry_max_attempts')
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        """Keep retries bounded: at least one attempt, at most twenty."""
        if not 1 <= v <= 20:
            raise ValueError("retry_max_attempts must be between 1 and 20")
        return v

    @field_validator('failure_max_ratio')
    @classmethod
    def validate_failure_ratio(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("failure_max_ratio must be between 0.0 and 1.0")
        return v

    @field_validator('cleanup_interval_hours')
    @classmethod
    def validate_cleanup_interval(cls, v: float) -> float:
        if v < 0:
            raise ValueError("cleanup_interval_hours must not be negative")
        return v

    @field_validator('unit_concurrency', 'progress_buffer_size')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    def validate_production_config(self) -> None:
        """Validate configuration for production environment.

        In production, fails startup if settings use development defaults.
        In development, returns silently and main.py logs warnings.

        Raises:
            ConfigurationError: If production config is unsafe.
        """
        errors: list[str] = []

        origins = self.get_cors_origins()
        localhost_origins = [o for o in origins if "localhost" in o or "127.0.0.1" in o]
        if localhost_origins:
            errors.append(
                f"CORS allows localhost origins: {localhost_origins}. "
                "Remove localhost origins for production."
            )

        if self.database_url.startswith("sqlite:///./"):
            errors.append(
                "DATABASE_URL points at a relative SQLite file. "
                "Use an absolute path on a persistent volume."
            )

        if errors and self.environment == Environment.PRODUCTION:
            raise ConfigurationError(
                "Production configuration is unsafe:\n  - " + "\n  - ".join(errors)
            )

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
