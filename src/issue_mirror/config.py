"""Configuration management with pydantic-settings for issue-mirror.

Loads from (in order of precedence):
1. Environment variables (highest priority)
2. .env file in the working directory
3. Default values (lowest priority)

The config object is frozen after load and passed explicitly to the
collaborators that need it; get_config() is the only process-wide handle.
"""

import logging
from functools import lru_cache

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("issue_mirror.config")

__all__ = [
    "GITHUB_MAX_PER_PAGE",
    "SUPPORTED_PROVIDERS",
    "MirrorConfig",
    "get_config",
    "reset_config",
]

# GitHub REST API hard cap on per_page
GITHUB_MAX_PER_PAGE = 100

# Only GitHub is implemented; the routing layer already carries a provider segment
SUPPORTED_PROVIDERS = ("github",)


class MirrorConfig(BaseSettings):
    """Configuration for the issue mirror.

    Attributes:
        database_url: SQLAlchemy async URL (postgresql+asyncpg://... in production)
        database_echo: Echo SQL statements (debugging only)
        redis_url: Redis URL for the shared read cache; empty = in-process cache
        github_token: GitHub PAT (optional for public repositories)
        github_api_url: GitHub REST API base URL
        github_connect_timeout: Connect timeout for GitHub requests (seconds)
        github_read_timeout: Read timeout for GitHub requests (seconds)
        github_min_delay_ms: Minimum delay between GitHub requests
        sync_batch_size: Issues accumulated before a reconcile+write flush
        sync_page_size: Issues requested per remote page
        sync_since_buffer_seconds: Safety buffer subtracted from the sync cursor
        sync_workers: Background sync worker pool size
        sync_queue_maxsize: Pending sync jobs before enqueue starts refusing
        sync_max_retries: Re-runs of a failed background sync before it is dropped
        sync_retry_backoff_seconds: Delay before the first re-run, doubled per retry
        staleness_window_seconds: Age of the newest local write that triggers a sync
        stat_cache_ttl_seconds: TTL of the cached repository aggregate
        default_per_page: Read page size when the caller omits per_page
        max_per_page: Largest read page size accepted
        http_cache_max_age: Cache-Control max-age for issue list responses
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format (json for production, text for development)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        validate_default=True,
        frozen=True,
        extra="ignore",
    )

    # --- Storage ---
    database_url: str = Field(
        default="sqlite+aiosqlite:///./issue_mirror.db",
        description="SQLAlchemy async database URL",
    )
    database_echo: bool = Field(default=False, description="Log every SQL statement")
    redis_url: str = Field(
        default="",
        description="Redis URL (redis://host:6379/0). Empty uses an in-process cache.",
    )

    # --- GitHub source ---
    github_token: SecretStr = Field(
        default=SecretStr(""),
        description="GitHub PAT; unauthenticated requests are heavily rate limited",
    )
    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL (GitHub Enterprise: https://host/api/v3)",
    )
    github_connect_timeout: float = Field(default=30.0, gt=0, le=120)
    github_read_timeout: float = Field(
        default=300.0,
        gt=0,
        le=1800,
        description="Large repositories can take minutes per page under load",
    )
    github_min_delay_ms: int = Field(default=100, ge=0, le=5000)

    # --- Sync engine ---
    sync_batch_size: int = Field(default=5000, ge=1, le=50000)
    sync_page_size: int = Field(default=GITHUB_MAX_PER_PAGE, ge=1, le=GITHUB_MAX_PER_PAGE)
    sync_since_buffer_seconds: int = Field(default=60, ge=0, le=3600)
    sync_workers: int = Field(default=2, ge=1, le=32)
    sync_queue_maxsize: int = Field(default=1000, ge=1)
    sync_max_retries: int = Field(default=3, ge=0, le=10)
    sync_retry_backoff_seconds: float = Field(default=5.0, ge=0.0, le=300.0)

    # --- Read path ---
    staleness_window_seconds: int = Field(default=600, ge=1)
    stat_cache_ttl_seconds: int = Field(default=300, ge=1)
    default_per_page: int = Field(default=25, ge=1, le=GITHUB_MAX_PER_PAGE)
    max_per_page: int = Field(default=GITHUB_MAX_PER_PAGE, ge=1, le=GITHUB_MAX_PER_PAGE)
    http_cache_max_age: int = Field(default=86400, ge=0)

    # --- Logging ---
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = v.lower()
        if fmt not in ("json", "text"):
            raise ValueError(f"LOG_FORMAT must be json or text, got {v}")
        return fmt

    @field_validator("github_api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_page_sizes(self) -> "MirrorConfig":
        """Validate read page size bounds are consistent."""
        if self.default_per_page > self.max_per_page:
            raise ValueError(
                f"DEFAULT_PER_PAGE ({self.default_per_page}) "
                f"must be <= MAX_PER_PAGE ({self.max_per_page})"
            )
        return self

    @model_validator(mode="after")
    def warn_anonymous_github(self) -> "MirrorConfig":
        """Warn when no token is configured.

        Does NOT raise: public repositories sync without a token, only slower.
        """
        if not self.github_token.get_secret_value():
            logger.warning(
                "GITHUB_TOKEN not configured, requests are limited to 60/hour"
            )
        return self


@lru_cache(maxsize=1)
def get_config() -> MirrorConfig:
    """Get the process-wide configuration (cached after first load).

    Example:
        >>> config = get_config()
        >>> config.sync_batch_size
        5000
    """
    return MirrorConfig()


def reset_config() -> None:
    """Clear the cached configuration (tests and reloads)."""
    get_config.cache_clear()
