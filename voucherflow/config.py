"""
Settlement service configuration, loaded from the environment and `.env`.

Settings are validated when the module is imported. A process with a missing
database, a malformed processor key or an impossible fee rate refuses to start
instead of failing on the first purchase.
"""

import sys
from decimal import Decimal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_JWT_SECRET_LENGTH = 32


class ConfigurationError(Exception):
    """Invalid settings; the process must not start."""


class Settings(BaseSettings):
    """Environment-backed settings. Field names map to upper-case variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # PostgreSQL (required; no default so a misconfigured deploy cannot start)
    database_url: str = ""
    database_read_url: str | None = None
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    database_command_timeout: float = 10.0  # asyncpg per-statement bound, seconds
    run_migrations_on_startup: bool = False
    transaction_max_attempts: int = 3  # serialization failure / deadlock retries

    # HTTP surface
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Voucherflow Settlement API"
    api_version: str = "0.1.0"
    api_description: str = "Deal purchase settlement, voucher issuance and redemption"
    cors_allowed_origins: list[str] = ["*"]

    # Caller authentication: HS256 bearer tokens issued by the auth service
    auth_jwt_secret: str = ""
    auth_jwt_audience: str | None = None

    # Observability
    service_name: str = "voucherflow-api"
    log_level: str = "INFO"
    log_format: str = "json"  # json | console
    metrics_enabled: bool = True
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True

    # Stripe
    stripe_api_key: str = ""  # sk_... or restricted rk_...
    stripe_webhook_secret: str = ""  # whsec_...
    stripe_max_network_retries: int = 2
    processor_timeout_seconds: float = 15.0

    # Pricing and split
    platform_fee_rate: Decimal = Decimal("0.12")
    allowed_currencies: list[str] = ["cad", "usd"]
    default_currency: str = "cad"
    merchant_split_enabled: bool = True

    # Merchant payout accounts
    connect_default_country: str = "CA"
    connect_default_account_type: str = "express"
    onboarding_refresh_url: str = "pulse://business/stripe-refresh"
    onboarding_return_url: str = "pulse://business/stripe-complete"

    # Per-caller attempt budgets
    rate_limit_account_create_attempts: int = 3
    rate_limit_account_create_window_minutes: int = 60
    rate_limit_account_link_attempts: int = 5
    rate_limit_account_link_window_minutes: int = 60
    rate_limit_payment_create_attempts: int = 10
    rate_limit_payment_create_window_minutes: int = 60

    # Processed webhook event ids are kept this long for deduplication
    webhook_event_retention_hours: int = 168

    # Pending purchases holding a unit longer than this are reported on /v1/status
    stalled_reservation_minutes: int = 30

    @property
    def read_database_url(self) -> str:
        """Replica URL, or the primary when no replica is configured."""
        return self.database_read_url or self.database_url

    @property
    def allowed_currency_set(self) -> frozenset[str]:
        """Lower-cased allow-list of ISO currency codes."""
        return frozenset(c.strip().lower() for c in self.allowed_currencies if c.strip())

    def configuration_errors(self) -> list[str]:
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            # Row locks, ON CONFLICT and RETURNING are PostgreSQL-specific
            errors.append(f"DATABASE_URL must be PostgreSQL, got {self.database_url[:20]}...")

        if self.stripe_api_key and not self.stripe_api_key.startswith(("sk_", "rk_")):
            errors.append("STRIPE_API_KEY must be a secret (sk_) or restricted (rk_) key")
        if self.stripe_webhook_secret and not self.stripe_webhook_secret.startswith("whsec_"):
            errors.append("STRIPE_WEBHOOK_SECRET must be a webhook signing secret (whsec_)")
        if self.auth_jwt_secret and len(self.auth_jwt_secret) < MIN_JWT_SECRET_LENGTH:
            errors.append(f"AUTH_JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters")

        if not self.allowed_currency_set:
            errors.append("ALLOWED_CURRENCIES must list at least one currency")
        elif self.default_currency.lower() not in self.allowed_currency_set:
            errors.append(f"DEFAULT_CURRENCY {self.default_currency} is not an allowed currency")
        if not Decimal("0") <= self.platform_fee_rate < Decimal("1"):
            errors.append(f"PLATFORM_FEE_RATE must be in [0, 1), got {self.platform_fee_rate}")

        for action in ("account_create", "account_link", "payment_create"):
            if getattr(self, f"rate_limit_{action}_attempts") < 1:
                errors.append(f"RATE_LIMIT_{action.upper()}_ATTEMPTS must be positive")
        if self.transaction_max_attempts < 1:
            errors.append("TRANSACTION_MAX_ATTEMPTS must be positive")

        return errors

    @model_validator(mode="after")
    def fail_fast(self) -> "Settings":
        errors = self.configuration_errors()
        if errors:
            message = "Invalid configuration:\n" + "\n".join(f"  - {e}" for e in errors)
            print(message, file=sys.stderr)
            raise ConfigurationError(message)
        return self


# Validated at import; importing the app with bad settings fails immediately
settings = Settings()
