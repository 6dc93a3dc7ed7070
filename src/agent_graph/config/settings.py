"""Configuration and settings management using pydantic-settings."""
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_GRAPH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core service settings
    env: str = Field(default="development", description="Environment name")
    log_level: str = Field(default="INFO", description="Log level")

    # Node policy defaults, applied when the IR omits a value
    default_node_timeout_s: float = Field(
        default=30.0,
        description="Per-attempt node timeout in seconds",
    )
    default_retries: int = Field(
        default=1,
        description="Total attempts per node (1 = no retry)",
    )
    default_retry_backoff_s: float = Field(
        default=1.0,
        description="Fixed delay between node attempts in seconds",
    )

    # Run limits
    max_concurrency: int = Field(
        default=16,
        description="Upper bound on node tasks in flight within one run",
    )
    run_deadline_s: float | None = Field(
        default=None,
        description="Wall-clock budget for a whole run (None = unbounded)",
    )

    # Session state
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the session state backend",
    )
    session_key_prefix: str = Field(
        default="agent_graph:session:",
        description="Prefix applied to every session state key",
    )
    session_default_ttl_s: float | None = Field(
        default=None,
        description="TTL for session keys whose node declares none",
    )

    # Code transforms
    allow_code_source: bool = Field(
        default=True,
        description="Allow code transforms given as inline Python source",
    )

    @field_validator(
        "default_node_timeout_s",
        "default_retry_backoff_s",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Validate that durations are not negative."""
        if v < 0:
            raise ValueError("durations must not be negative")
        return v

    @field_validator("default_retries", "max_concurrency")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate that limits are positive."""
        if v <= 0:
            raise ValueError("limits must be positive")
        return v

    @field_validator("run_deadline_s", "session_default_ttl_s")
    @classmethod
    def validate_optional_positive(cls, v: float | None) -> float | None:
        """Validate that optional budgets are positive when set."""
        if v is not None and v <= 0:
            raise ValueError("must be positive when set")
        return v


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
