"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    APP_NAME: str = "casebridge"
    VERSION: str = "0.1.0"

    # Database
    DATABASE_URL: str

    # Shared secret for the HTTP API (empty disables the check)
    API_KEY: str = ""

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Fernet key for credentials at rest
    FERNET_KEY: str = ""

    # Sentry
    SENTRY_DSN: str = ""

    # Per-IP limit for the HTTP API (requests/minute, 0 disables)
    RATE_LIMIT_API: int = 120

    # Legacy casework API
    LEGACY_BASE_URL_TEMPLATE: str = "https://{subdomain}.farier.com/api/ajax"
    LEGACY_API_DISABLED: bool = False
    LEGACY_TIMEOUT_SECONDS: float = 30.0
    LEGACY_LOCALE: str = "en-GB"
    # Kept below the observed ~10 req/s ceiling; tune against 429 rates
    LEGACY_RATE_LIMIT_PER_SECOND: float = 8.0
    LEGACY_RATE_LIMIT_BURST: int = 1
    LEGACY_RATE_LIMIT_MAX_QUEUE: int = 50
    LEGACY_RATE_LIMIT_SCOPE: str = "office"  # office | global
    LEGACY_TOKEN_TTL_SECONDS: int = 25 * 60
    LEGACY_TOKEN_REFRESH_BUFFER_SECONDS: int = 5 * 60
    LEGACY_MAX_RATE_LIMIT_RETRIES: int = 3
    LEGACY_CONNECT_RETRIES: int = 2

    # Sync engine
    SYNC_POLL_INTERVAL_SECONDS: int = 300
    SYNC_BATCH_SIZE: int = 100
    SYNC_MAX_PAGES: int = 20
    SYNC_MAX_ATTEMPTS: int = 8
    SYNC_BACKOFF_BASE_SECONDS: float = 1.0
    SYNC_BACKOFF_CAP_SECONDS: float = 60.0
    SYNC_POLL_LEASE_SECONDS: int = 600
    SYNC_POLLER_ENABLED: bool = True

    # Worker / queue
    WORKER_CONCURRENCY: int = 4
    WORKER_POLL_INTERVAL_SECONDS: float = 2.0
    JOB_LEASE_SECONDS: int = 300
    JOB_MAX_ATTEMPTS: int = 3
    JOB_BACKOFF_BASE_SECONDS: float = 30.0
    JOB_BACKOFF_CAP_SECONDS: float = 900.0
    WORKER_STALL_SECONDS: int = 600
    QUEUE_RETENTION_DAYS: int = 7

    # Classifier (empty URL selects the rule-based classifier)
    CLASSIFIER_URL: str = ""
    CLASSIFIER_API_KEY: str = ""
    CLASSIFIER_MODEL: str = "triage-default"
    CLASSIFIER_TIMEOUT_SECONDS: float = 60.0
    CAMPAIGN_MATCH_FLOOR: float = 0.3

    # Browser automation bot
    AUTOMATION_BASE_URL: str = "http://localhost:8100"
    AUTOMATION_API_KEY: str = ""
    AUTOMATION_TIMEOUT_SECONDS: float = 120.0
    AUTOMATION_LEASE_TTL_SECONDS: int = 300

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


settings = Settings()
