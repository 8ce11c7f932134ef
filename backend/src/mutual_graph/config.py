"""Configuration management."""
import os
from datetime import timedelta

from pydantic_settings import BaseSettings
from pydantic import Field

from .errors import AuthenticationError


PLACEHOLDER_PASSWORD = "your-app-password"


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = Field(
        default="sqlite:///./mutual_graph.db",
        description="SQLAlchemy database URL"
    )

    # Bluesky provider
    bsky_identifier: str = Field(default="", description="Bluesky login handle or DID")
    bsky_app_password: str = Field(default="", description="Bluesky app password")
    auth_api_url: str = Field(default="https://bsky.social/xrpc")
    bsky_api_url: str = Field(default="https://api.bsky.app/xrpc")
    http_timeout_seconds: float = Field(default=30.0)
    page_size: int = Field(default=50)
    page_delay_seconds: float = Field(default=2.0)

    # Per-endpoint throttle (below Bluesky's 100 requests / 5 min)
    rate_limit_max_requests: int = Field(default=80)
    rate_limit_window_seconds: float = Field(default=300.0)
    rate_limit_min_wait_seconds: float = Field(default=2.0)
    rate_limit_backoff_factor: float = Field(default=1.5)
    rate_limit_max_backoff_seconds: float = Field(default=60.0)
    rate_limit_jitter_seconds: float = Field(default=1.0)
    rate_limit_retries: int = Field(default=3)

    # Shared request queue
    queue_max_concurrent_requests: int = Field(default=2)
    queue_min_request_spacing_seconds: float = Field(default=2.0)

    # Cache buckets
    cache_short_ttl_hours: int = Field(default=24)
    cache_medium_ttl_days: int = Field(default=7)
    cache_long_ttl_days: int = Field(default=30)
    cache_sweep_interval_seconds: float = Field(default=3600.0)

    # Job queue
    daily_refresh_limit: int = Field(default=5)
    priority_handle: str = Field(default="gui.do")
    max_concurrent_jobs: int = Field(default=10)
    max_attempts: int = Field(default=3)
    poll_interval_seconds: float = Field(default=1.0)
    stuck_job_threshold_seconds: float = Field(default=300.0)
    stuck_sweep_interval_seconds: float = Field(default=60.0)
    job_retention_days: int = Field(default=30)

    # Analysis
    interconnect_sample_size: int = Field(
        default=0,
        description="Number of mutuals whose follows are fetched for extra edges"
    )

    class Config:
        env_prefix = "MUTUAL_GRAPH_"
        env_file = ".env"

    @property
    def cache_ttls(self) -> dict[str, timedelta]:
        """TTL bucket name -> validity window."""
        return {
            "short": timedelta(hours=self.cache_short_ttl_hours),
            "medium": timedelta(days=self.cache_medium_ttl_days),
            "long": timedelta(days=self.cache_long_ttl_days),
        }


def validate_provider_credentials(config: Settings) -> None:
    """Raise AuthenticationError when the Bluesky credentials are unusable."""
    if not config.bsky_identifier:
        raise AuthenticationError(
            401, "Bluesky identifier not configured. Check MUTUAL_GRAPH_BSKY_IDENTIFIER"
        )
    if not config.bsky_app_password:
        raise AuthenticationError(
            401, "Bluesky app password not configured. Check MUTUAL_GRAPH_BSKY_APP_PASSWORD"
        )
    if config.bsky_app_password == PLACEHOLDER_PASSWORD:
        raise AuthenticationError(
            401, "Bluesky app password is still the placeholder value"
        )


def get_settings() -> Settings:
    """Get settings - environment variables take priority over .env."""
    database_url = os.environ.get("DATABASE_URL", "")
    if database_url and "MUTUAL_GRAPH_DATABASE_URL" not in os.environ:
        return Settings(database_url=database_url)
    return Settings()


settings = get_settings()
