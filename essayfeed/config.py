"""
Configuration management for the feedback orchestrator.

Uses Pydantic Settings for type-safe configuration loading from environment variables.
Provider endpoints, dispatch limits and per-step defaults are validated at startup.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_PROVIDER_BASE_URLS: dict[str, str] = {
    "google": "https://generativelanguage.googleapis.com/v1beta/openai",
    "openai": "https://api.openai.com/v1",
    "open-key-ai": "https://api.hakai.shop/v1",
    "home-server": "http://api3.ieltsscience.fun/v1",
}


class ConfigurationError(Exception):
    """Raised when a feed, step or credential is misconfigured."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    API keys are optional here; a missing key only becomes an error
    when a step actually needs a credential for that provider.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Provider Credentials
    # ==========================================================================
    openai_api_key: str | None = Field(default=None, description="API key for OpenAI")
    google_api_key: str | None = Field(default=None, description="API key for Google Gemini")
    open_key_ai_api_key: str | None = Field(
        default=None, description="API key for the open-key-ai relay"
    )
    huggingface_api_key: str | None = Field(
        default=None,
        description="Token forwarded in the payload to the home-server provider",
    )

    provider_base_urls: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_BASE_URLS),
        description="OpenAI-compatible base URL per provider name",
    )

    # ==========================================================================
    # Dispatch Configuration
    # ==========================================================================
    pool_concurrency: int = Field(
        default=5,
        ge=1,
        le=64,
        description="Maximum number of pooled requests in flight",
    )

    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries per request after the first attempt",
    )

    retry_base_delay: float = Field(
        default=0.0,
        ge=0.0,
        description="Base delay in seconds for exponential backoff (0 disables waiting)",
    )

    retry_max_delay: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound for a single backoff delay",
    )

    connect_timeout: float = Field(default=5.0, gt=0.0, description="Connect timeout in seconds")

    request_timeout: float = Field(
        default=120.0, gt=0.0, description="Overall request timeout in seconds"
    )

    # ==========================================================================
    # Step Defaults
    # ==========================================================================
    default_provider: str = Field(default="google", description="Provider when a step names none")

    default_model: str = Field(
        default="gemini-2.0-flash-lite", description="Model when a step names none"
    )

    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    default_max_tokens: int = Field(default=2048, gt=0)

    default_language: Literal["en", "vi"] = Field(
        default="en", description="Prompt language when the caller gives none"
    )

    # ==========================================================================
    # Logging
    # ==========================================================================
    log_level: str = Field(default="INFO", description="Root log level for the CLI")

    @field_validator("provider_base_urls")
    @classmethod
    def validate_base_urls(cls, v: dict[str, str]) -> dict[str, str]:
        """Merge overrides over the built-in URLs and strip trailing slashes."""
        merged = {**DEFAULT_PROVIDER_BASE_URLS, **v}
        return {name: url.rstrip("/") for name, url in merged.items()}

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    def api_key_for(self, provider: str) -> str | None:
        """Return the configured API key for a provider name, if any."""
        attribute = f"{provider.replace('-', '_')}_api_key"
        return getattr(self, attribute, None)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to ensure settings are only loaded once.
    """
    return Settings()
