from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Environment mode: dev or prod
    ENV: Literal["dev", "prod"] = "dev"
    PORT: int = 3000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str | None = "logs"  # None disables the file sink
    LOG_JSON: bool = False
    SLACK_WEBHOOK_URL: str | None = None
    SLACK_ALERT_COOLDOWN_SECONDS: int = 300

    # Cache backend
    USE_MEMORY_CACHE: bool = True
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_PASSWORD: str | None = None
    CACHE_TTL_SECONDS: int = 30
    CACHE_PREFIX: str = "meme-coin:"
    CACHE_SWEEP_INTERVAL_SECONDS: int = 60

    # Upstream rate limits (requests per minute)
    DEXSCREENER_RATE_LIMIT: int = 300
    JUPITER_RATE_LIMIT: int = 100
    GECKOTERMINAL_RATE_LIMIT: int = 30

    # Upstream endpoints
    DEXSCREENER_BASE_URL: str = "https://api.dexscreener.com"
    JUPITER_BASE_URL: str = "https://lite-api.jup.ag"
    GECKOTERMINAL_BASE_URL: str = "https://api.geckoterminal.com/api/v2"
    DEXSCREENER_TIMEOUT_SECONDS: float = 10.0
    JUPITER_TIMEOUT_SECONDS: float = 10.0
    GECKOTERMINAL_TIMEOUT_SECONDS: float = 15.0
    UPSTREAM_MAX_RETRIES: int = 3

    # Scheduler intervals
    SCHEDULER_ENABLED: bool = True
    PRICE_UPDATE_INTERVAL_SECONDS: int = 10
    FULL_REFRESH_INTERVAL_SECONDS: int = 60
    REFERENCE_RATE_INTERVAL_SECONDS: int = 30
    BATCH_BROADCAST_SIZE: int = 50

    # Pagination
    DEFAULT_PAGE_SIZE: int = 30
    MAX_PAGE_SIZE: int = 100

    # Docs Configuration
    DOCS_ENABLED: bool | None = None  # Override docs setting (None = auto based on ENV)

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",  # ignore unrelated keys in local .env
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENV == "prod"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENV == "dev"

    @property
    def debug_enabled(self) -> bool:
        """Debug mode is only enabled in development."""
        return self.is_development

    @property
    def effective_log_level(self) -> str:
        """Return appropriate log level based on environment."""
        if self.is_production:
            # In production, minimum INFO level (ignore DEBUG)
            return self.LOG_LEVEL if self.LOG_LEVEL.upper() != "DEBUG" else "INFO"
        return self.LOG_LEVEL

    @property
    def docs_enabled(self) -> bool:
        """Swagger/ReDoc docs enabled based on environment or override."""
        if self.DOCS_ENABLED is not None:
            return self.DOCS_ENABLED
        return self.is_development


settings = Settings()
