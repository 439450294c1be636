"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.03.00"

    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str

    # Set when the database sits behind a statement-mode pooler (e.g. PgBouncer
    # pool_mode=statement). Connections then run in AUTOCOMMIT and multi-statement
    # transactions are unavailable.
    DATABASE_STATEMENT_POOLING: bool = False

    # Transactions
    TRANSACTIONS_ENABLED: bool = True
    TRANSACTION_MAX_RETRIES: int = 3
    TRANSACTION_RETRY_DELAY_MS: int = 100
    TRANSACTION_ISOLATION_LEVEL: str = ""  # Empty = REPEATABLE READ on Postgres, engine default elsewhere

    # Endpoint health monitor (circuit breaker)
    HEALTH_ERROR_THRESHOLD: int = 10
    HEALTH_RECOVERY_SECONDS: int = 300

    # Bulk operations
    BULK_MAX_TICKETS: int = 500

    # Session Token (supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 4

    # CORS
    CORS_ORIGINS: str = "http://localhost:5173"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute). Empty REDIS_URL = in-process storage
    REDIS_URL: str = ""
    RATE_LIMIT_API: int = 60  # General API
    RATE_LIMIT_BULK: int = 20  # Bulk ticket mutations

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def transaction_isolation_level(self) -> str | None:
        """Normalized isolation level override, or None for the engine default."""
        level = self.TRANSACTION_ISOLATION_LEVEL.strip().upper()
        return level or None


settings = Settings()
