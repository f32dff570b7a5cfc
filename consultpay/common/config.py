"""Central environment-driven settings for the payments service.

Loaded once per process at startup. Gateway and webhook credentials live in
their own settings objects so they can be handed explicitly to the components
that need them (see `.env.example`).
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Fields tagged with this are never echoed in startup logs.
SECRET = {"secret": True}


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "payments"
    log_level: str = "INFO"
    postgres_dsn: str = Field(json_schema_extra=SECRET)
    api_key: str = Field(json_schema_extra=SECRET)
    redis_url: str = Field(default="redis://redis:6379/0", json_schema_extra=SECRET)
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    idempotency_ttl_seconds: int = 86400
    frontend_url: str = "http://localhost:3000"
    sweep_enabled: bool = True
    sweep_interval_seconds: float = 30.0
    sweep_batch_size: int = 50
    sweep_min_age_seconds: int = 60
    # None means: trust redirects only while no webhook credentials are set.
    redirect_marks_paid: bool | None = None
    legacy_mark_paid_enabled: bool = False
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


class GatewaySettings(BaseSettings):
    """PhonePe merchant credentials and endpoints."""

    merchant_id: str = "PGTESTPAYUAT"
    salt_key: str = Field(json_schema_extra=SECRET)
    salt_index: int = 1
    base_url: str = "https://api-preprod.phonepe.com/apis/pg-sandbox"
    callback_base_url: str = "http://localhost:8000"
    timeout_seconds: float = 10.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="phonepe_")


class WebhookSettings(BaseSettings):
    """Shared secret the gateway uses to authenticate webhook deliveries."""

    username: str | None = None
    password: str | None = Field(default=None, json_schema_extra=SECRET)
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="phonepe_webhook_")

    @property
    def configured(self) -> bool:
        return bool(self.username and self.password)


settings = CommonSettings()
