"""Configuration management using Pydantic Settings.

All tunables live here with their production defaults. Values can be
overridden from the environment with the ``REGWATCH_`` prefix; nested models
use ``__`` as delimiter, e.g. ``REGWATCH_RATE_LIMIT__MIN_DELAY=5``.
"""

from pathlib import Path

from platformdirs import PlatformDirs
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

dirs = PlatformDirs("regwatch", appauthor=False)


class RateLimitConfig(BaseModel):
    """Per-domain politeness settings."""

    min_delay: float = Field(default=2.0, ge=0.0, description="Minimum seconds between requests")
    max_delay: float = Field(default=4.0, ge=0.0, description="Maximum seconds between requests")
    max_concurrent: int = Field(default=1, ge=1, description="Concurrent requests per domain")
    poll_interval: float = Field(default=0.1, gt=0.0, description="acquire() poll step")
    circuit_breaker_threshold: int = Field(
        default=5, ge=1, description="Consecutive errors before a domain is excluded"
    )
    circuit_reset_hours: float = Field(
        default=24.0, gt=0.0, description="Inactivity after which errors auto-reset"
    )

    @field_validator("max_delay")
    @classmethod
    def check_window(cls, v: float, info) -> float:
        """Delay window must be ordered."""
        min_delay = info.data.get("min_delay", 0.0)
        if v < min_delay:
            raise ValueError("max_delay must be >= min_delay")
        return v


class FetchConfig(BaseModel):
    """HTTP fetch settings."""

    timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_retries: int = Field(default=3, ge=0)
    base_retry_delay: float = Field(default=1.0, gt=0.0)
    max_retry_delay: float = Field(default=30.0, gt=0.0)
    user_agent: str = Field(
        default="regwatch/0.3 (Regulatory Monitoring Bot)",
        description="User agent string for requests",
    )
    blocked_domains: list[str] = Field(
        default_factory=lambda: ["example.com", "example.org", "example.net", "localhost"],
        description="Domains rejected before any network call",
    )
    max_content_length: int = Field(default=20_000_000, description="Bytes")


class SentinelConfig(BaseModel):
    """Discovery and adaptive scheduling settings."""

    drift_threshold: float = Field(
        default=30.0, ge=0.0, le=100.0, description="Structural drift alert threshold (%)"
    )
    manifest_limit: int = Field(default=500, ge=1, description="Max items per due-manifest run")
    max_concurrent_groups: int = Field(default=8, ge=1)
    max_item_retries: int = Field(default=3, ge=0)

    # Base rescan interval per freshness risk (hours)
    interval_critical_hours: float = Field(default=4.0, gt=0)
    interval_high_hours: float = Field(default=24.0, gt=0)
    interval_medium_hours: float = Field(default=72.0, gt=0)
    interval_low_hours: float = Field(default=168.0, gt=0)
    min_interval_hours: float = Field(default=1.0, gt=0)
    max_interval_hours: float = Field(default=720.0, gt=0)

    # Discovery bounds
    sitemap_max_depth: int = Field(default=3, ge=1)
    pagination_max_pages: int = Field(default=5, ge=1)
    crawl_max_depth: int = Field(default=2, ge=0)
    crawl_max_urls: int = Field(default=100, ge=1)

    # Periodic trigger intervals (hours) per endpoint priority
    schedule_critical_hours: float = Field(default=1.0, gt=0)
    schedule_high_hours: float = Field(default=4.0, gt=0)
    schedule_normal_hours: float = Field(default=24.0, gt=0)
    schedule_low_hours: float = Field(default=168.0, gt=0)


class LLMConfig(BaseModel):
    """LLM collaborator settings."""

    provider: str = Field(default="openai", description="openai or ollama")
    model: str = Field(default="gpt-4o-mini")
    api_key: str | None = Field(default=None)
    base_url: str | None = Field(default=None, description="OpenAI-compatible endpoint")
    ollama_base_url: str = Field(default="http://localhost:11434")
    max_tokens: int = Field(default=4096, ge=1)
    embedding_model: str = Field(default="text-embedding-3-small")


class AgentConfig(BaseModel):
    """Agent runner defaults."""

    max_retries: int = Field(default=3, ge=0)
    base_retry_delay: float = Field(default=1.0, gt=0)
    max_retry_delay: float = Field(default=30.0, gt=0)
    rate_limit_base_delay: float = Field(default=30.0, gt=0)
    rate_limit_max_delay: float = Field(default=300.0, gt=0)
    max_content_chars: int = Field(default=50_000, ge=1000)
    json_mode: bool = Field(
        default=False,
        description="Request native JSON output; only for endpoints that support response_format",
    )


class ReviewConfig(BaseModel):
    """Extraction, review and arbitration thresholds."""

    auto_approve_threshold: float = Field(
        default=0.95, ge=0.0, le=1.0, description="Confidence needed to auto-approve T2/T3"
    )
    min_coverage: float = Field(default=0.5, ge=0.0, le=1.0)
    low_confidence_warning: float = Field(default=0.7, ge=0.0, le=1.0)
    arbiter_min_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    arbiter_min_rule_confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    duplicate_similarity: float = Field(default=0.95, ge=0.0, le=1.0)
    enforce_tier_floors: bool = Field(
        default=False, description="Raise deadlines to T0 and pdv/porez rates to T1 when composing"
    )


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="REGWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Paths
    data_dir: Path = Field(default=Path(dirs.user_data_dir))

    # Database
    database_url: str = Field(default="", description="Defaults to SQLite in data_dir")

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    debug: bool = Field(default=False)

    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    sentinel: SentinelConfig = Field(default_factory=SentinelConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    agents: AgentConfig = Field(default_factory=AgentConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)

    @property
    def effective_database_url(self) -> str:
        """Database URL, falling back to a SQLite file under data_dir."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'regwatch.db'}"

    def ensure_dirs(self) -> None:
        """Create data directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment."""
    global _settings
    _settings = Settings()
    return _settings
