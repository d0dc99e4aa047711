"""Central environment-driven settings for the ledger service.

The process loads this once at startup. Commission rates, lock behaviour and
the bank settlement endpoint are controlled by environment variables (see
`.env.example`).
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "ledger"
    log_level: str = "INFO"
    database_dsn: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    operator_account_id: str = "operator-commission"
    currency: str = "ZAR"
    redeem_commission_rate: Decimal = Decimal("0.03")
    transfer_commission_rate: Decimal = Decimal("0.01")
    lock_backend: str = "local"
    lock_timeout_seconds: float = 5.0
    bank_rail_url: str | None = None
    bank_rail_timeout_seconds: float = 5.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
