"""
Configuration management using Pydantic Settings.
Follows 12-factor app methodology with environment-based configuration.

Every field can be overridden with an ``LLM_RELAY_`` prefixed environment
variable or a ``.env`` file. Provider API keys are NOT settings: each
provider names its own key variable in the provider table.
"""
import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_DIR = Path(__file__).resolve().parent
DEFAULT_PROVIDERS_PATH = CONFIG_DIR / "providers.json"
DEFAULT_RULES_PATH = CONFIG_DIR / "classification_rules.json"


class Settings(BaseSettings):
    """Application settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="LLM_RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="LLM Relay", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")

    # API
    api_host: str = Field(default="127.0.0.1", description="API host")
    api_port: int = Field(default=8000, ge=1024, le=65535, description="API port")
    api_reload: bool = Field(default=False, description="Auto-reload on code changes")

    # CORS
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed CORS origins",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")

    # Static tables
    providers_config_path: Path = Field(default=DEFAULT_PROVIDERS_PATH, description="Provider table (JSON)")
    classification_rules_path: Path = Field(default=DEFAULT_RULES_PATH, description="Prompt classification rules (JSON)")

    # Adapter
    default_provider_timeout: float = Field(default=8.0, gt=0, description="Per-call timeout in seconds when a provider sets none")

    # Router
    router_max_retries: int = Field(default=2, ge=0, le=10, description="Retries per provider on retryable errors")
    router_backoff_initial: float = Field(default=1.0, ge=0, description="First backoff delay in seconds")
    router_backoff_max: float = Field(default=10.0, ge=0, description="Backoff ceiling in seconds")
    router_backoff_jitter: float = Field(default=1.0, ge=0, description="Maximum random jitter added to each delay")
    default_fallback_chain: List[str] = Field(
        default=["openai", "anthropic", "gemini"],
        description="Providers tried after scope and analysis suggestions",
    )
    routing_history_size: int = Field(default=1000, ge=1, description="Terminal results kept for idempotence and history")

    # Circuit Breaker
    circuit_breaker_enabled: bool = Field(default=True, description="Enable per-provider circuit breakers")
    circuit_breaker_failure_threshold: int = Field(default=5, ge=1, description="Failures before opening")
    circuit_breaker_timeout: int = Field(default=60, ge=1, description="Seconds before a half-open probe")

    # Rate Limiting
    provider_rate_limits_enabled: bool = Field(default=True, description="Enforce requestsPerMinute from the provider table")

    # Usage accounting
    usage_accounting_mode: str = Field(default="async", description="Usage persistence: async or sync")
    usage_store_path: Optional[str] = Field(default=None, description="JSON file for usage stats; memory only when unset")
    usage_retention_hours: int = Field(default=168, ge=1, description="Hours of usage buckets kept in memory and on disk")
    event_log_path: Optional[str] = Field(default=None, description="JSONL file for routing events; memory only when unset")
    event_buffer_size: int = Field(default=1000, ge=1, description="Routing events kept in memory")
    default_currency: str = Field(default="USD", description="Currency when a provider sets none")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of allowed values."""
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        allowed = ["json", "text"]
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v

    @field_validator("usage_accounting_mode")
    @classmethod
    def validate_usage_accounting_mode(cls, v: str) -> str:
        allowed = ["async", "sync"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"Usage accounting mode must be one of {allowed}")
        return v_lower

    @field_validator("router_backoff_max")
    @classmethod
    def validate_backoff_ceiling(cls, v: float, info) -> float:
        """Backoff ceiling may not be below the first delay."""
        initial = info.data.get("router_backoff_initial", 0.0)
        if v < initial:
            raise ValueError("router_backoff_max must be >= router_backoff_initial")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def sync_usage_accounting(self) -> bool:
        return self.usage_accounting_mode == "sync"

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()
