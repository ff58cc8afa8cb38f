from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from calendar_metrics.models.domain.metrics_domain import BlobConfig

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "production"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Session JWT verification (issued by the auth collaborator)
    AUTH_JWKS_URL: str = "https://auth.localhost/.well-known/jwks.json"
    AUTH_AUDIENCE: str = "authenticated"
    AUTH_ALGORITHMS: list[str] = ["ES256", "RS256"]

    # Redis holds the calendar access tokens written by the OAuth flow
    REDIS_URL: str = "redis://localhost:6379/0"
    CREDENTIAL_KEY_PREFIX: str = "calendar:access_token"

    # =================================================================
    # UPSTREAM CALENDAR API
    # =================================================================
    CALENDAR_API_BASE_URL: str = "https://www.googleapis.com/calendar/v3"
    CALENDAR_ID: str = "primary"
    CALENDAR_REQUEST_TIMEOUT: float = 30.0
    CALENDAR_PAGE_SIZE: int = 250
    CALENDAR_MAX_RETRIES: int = 5
    CALENDAR_BACKOFF_BASE_SECONDS: float = 1.0
    CALENDAR_BACKOFF_MAX_SECONDS: float = 32.0
    CALENDAR_INCLUDE_ALL_DAY: bool = False

    # =================================================================
    # METRICS CACHE / REQUEST HANDLING
    # =================================================================
    METRICS_CACHE_TTL_SECONDS: float = 300.0  # 5 minutes
    METRICS_PARTIAL_CACHE_TTL_SECONDS: float = 60.0
    METRICS_STALE_GRACE_SECONDS: float = 1800.0  # 30 minutes
    METRICS_CACHE_MAX_ENTRIES: int | None = None
    METRICS_KEY_GRANULARITY_SECONDS: int = 60
    METRICS_MAX_WINDOW_DAYS: int = 7
    METRICS_FUTURE_SKEW_SECONDS: float = 300.0
    METRICS_REQUEST_TIMEOUT_SECONDS: float = 20.0

    # =================================================================
    # BLOB SCORE - keep stable per deployment
    # =================================================================
    BLOB_WEIGHT_LOAD: float = 1 / 3
    BLOB_WEIGHT_BALANCE: float = 1 / 3
    BLOB_WEIGHT_GAP: float = 1 / 3
    BLOB_WORKDAY_MINUTES: float = 480.0
    BLOB_TARGET_GAP_MINUTES: float = 15.0

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_retry_config(self) -> dict:
        """Retry/backoff settings for the upstream calendar client."""
        return {
            "max_retries": self.CALENDAR_MAX_RETRIES,
            "base_delay": self.CALENDAR_BACKOFF_BASE_SECONDS,
            "max_delay": self.CALENDAR_BACKOFF_MAX_SECONDS,
        }

    def get_cache_config(self) -> dict:
        """
        Get window cache configuration.
        Development keeps entries briefly so changes upstream show up quickly.
        """
        config = {
            "ttl_seconds": self.METRICS_CACHE_TTL_SECONDS,
            "partial_ttl_seconds": self.METRICS_PARTIAL_CACHE_TTL_SECONDS,
            "stale_grace_seconds": self.METRICS_STALE_GRACE_SECONDS,
            "max_entries": self.METRICS_CACHE_MAX_ENTRIES,
        }

        if self.environment == "development":
            config["ttl_seconds"] = min(config["ttl_seconds"], 120.0)

        return config

    def get_blob_config(self) -> BlobConfig:
        return BlobConfig(
            weight_load=self.BLOB_WEIGHT_LOAD,
            weight_balance=self.BLOB_WEIGHT_BALANCE,
            weight_gap=self.BLOB_WEIGHT_GAP,
            workday_minutes=self.BLOB_WORKDAY_MINUTES,
            target_gap_minutes=self.BLOB_TARGET_GAP_MINUTES,
        )


settings = Settings()
