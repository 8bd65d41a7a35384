from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "AskStan Billing"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_auto_create_schema: bool = False

    # Stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_price_monthly: str | None = None
    stripe_price_yearly: str | None = None
    stripe_webhook_tolerance_seconds: int = 300

    # Redirect construction
    app_base_url: str = "http://localhost:5173"

    # Identity provider (Supabase auth)
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    identity_timeout_seconds: float = 5.0

    # Reconciliation
    provider_timeout_seconds: float = 10.0
    store_timeout_seconds: float = 10.0
    checkout_bypass_ttl_seconds: int = 60
    checkout_attempt_ttl_seconds: int = 604800

    # Security
    cors_origins: list[str] = []  # Empty by default for security
    # Host headers accepted outside debug; must include the public API host Stripe calls.
    allowed_hosts: list[str] = ["*"]

    # Sentry
    sentry_dsn: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "billing"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125
    metrics_schema_version: str = "billing.v1"

    @property
    def plan_prices(self) -> dict[str, str]:
        """Return configured price ids keyed by plan type."""
        prices = {"monthly": self.stripe_price_monthly, "yearly": self.stripe_price_yearly}
        return {plan: price for plan, price in prices.items() if price}

    @property
    def dashboard_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/dashboard"

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
