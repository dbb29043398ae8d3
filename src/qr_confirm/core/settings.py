"""Application settings and configuration.

This module defines all configuration options for the QR payment confirmation
service. Settings are loaded from environment variables with sensible defaults.
Signing material (``SECRET_KEY`` and ``QR_TOKEN_SECRET``) has no default and
must be injected by the deployment.
"""

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="QR Confirm", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Staff session tokens (bearer JWT issued by the identity collaborator)
    secret_key: str = Field(alias="SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60 * 12, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Database configuration
    database_url: str = Field(default="sqlite:///./qr_confirm.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # QR payment token signing, shared by the issuing and scanning boundaries
    qr_token_secret: str = Field(alias="QR_TOKEN_SECRET")
    qr_token_algorithm: str = Field(default="HS256", alias="QR_TOKEN_ALGORITHM")
    qr_token_issuer: str = Field(default="garbaking-pos", alias="QR_TOKEN_ISSUER")
    qr_token_audience: str = Field(default="payment-confirmation", alias="QR_TOKEN_AUDIENCE")
    qr_token_ttl_seconds: int = Field(default=300, gt=0, alias="QR_TOKEN_TTL_SECONDS")
    qr_token_max_generation_attempts: int = Field(
        default=5,
        ge=1,
        alias="QR_TOKEN_MAX_GENERATION_ATTEMPTS",
    )
    qr_token_currency: str = Field(default="XOF", alias="QR_TOKEN_CURRENCY")

    # Confirmation rules
    payment_amount_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        alias="PAYMENT_AMOUNT_TOLERANCE",
    )
    staff_roles: list[str] = Field(
        default=["ADMIN", "STAFF", "CASHIER"],
        alias="STAFF_ROLES",
    )
    issuer_roles: list[str] = Field(
        default=["ADMIN", "STAFF", "CASHIER", "CUSTOMER"],
        alias="ISSUER_ROLES",
    )
    audit_roles: list[str] = Field(default=["ADMIN"], alias="AUDIT_ROLES")
    # Empty list means any device may scan/confirm.
    trusted_device_ids: list[str] = Field(default=[], alias="TRUSTED_DEVICE_IDS")

    # Rate limiting (short-code brute force mitigation)
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_redis_url: str | None = Field(default=None, alias="RATE_LIMIT_REDIS_URL")
    rate_limit_max_keys: int = Field(default=10_000, gt=0, alias="RATE_LIMIT_MAX_KEYS")
    rate_limit_scan_requests: int = Field(default=10, alias="RATE_LIMIT_SCAN_REQUESTS")
    rate_limit_scan_period_seconds: int = Field(default=60, alias="RATE_LIMIT_SCAN_PERIOD_SECONDS")
    rate_limit_short_code_requests: int = Field(
        default=10,
        alias="RATE_LIMIT_SHORT_CODE_REQUESTS",
    )
    rate_limit_short_code_period_seconds: int = Field(
        default=60,
        alias="RATE_LIMIT_SHORT_CODE_PERIOD_SECONDS",
    )
    rate_limit_confirm_requests: int = Field(default=5, alias="RATE_LIMIT_CONFIRM_REQUESTS")
    rate_limit_confirm_period_seconds: int = Field(
        default=60,
        alias="RATE_LIMIT_CONFIRM_PERIOD_SECONDS",
    )

    # Payment-confirmed event delivery
    payment_events_enabled: bool = Field(default=True, alias="PAYMENT_EVENTS_ENABLED")
    payment_events_url: str | None = Field(default=None, alias="PAYMENT_EVENTS_URL")
    payment_events_http_timeout_seconds: float = Field(
        default=10.0,
        alias="PAYMENT_EVENTS_HTTP_TIMEOUT_SECONDS",
    )
    payment_events_max_retries: int = Field(default=5, alias="PAYMENT_EVENTS_MAX_RETRIES")
    payment_events_batch_size: int = Field(default=20, alias="PAYMENT_EVENTS_BATCH_SIZE")
    payment_events_poll_interval_seconds: float = Field(
        default=5.0,
        alias="PAYMENT_EVENTS_POLL_INTERVAL_SECONDS",
    )
    payment_events_worker_enabled: bool = Field(
        default=False,
        alias="PAYMENT_EVENTS_WORKER_ENABLED",
    )

    # Retention policy for storage hygiene
    token_retention_days: int = Field(default=30, alias="TOKEN_RETENTION_DAYS")
    audit_retention_days: int = Field(default=365, alias="AUDIT_RETENTION_DAYS")

    # CORS configuration for POS and kiosk frontends
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(default=["*"], alias="CORS_ALLOW_HEADERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling such as Alembic."""
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url


settings = Settings()  # type: ignore[call-arg]
