from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "subscription-reconciler"
    version: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # "development" or "production"
    LOG_LEVEL: str = "INFO"
    APP_DATABASE_DSN: str = "sqlite:////tmp/reconciler.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Payment provider REST API
    provider_api_base_url: str = "https://api.mercadopago.com"
    provider_access_token: str = ""
    provider_payment_path: str = "/v1/payments/{id}"
    provider_subscription_path: str = "/preapproval/{id}"
    provider_subscription_search_path: str = "/preapproval/search"
    provider_timeout_seconds: float = 8.0
    provider_max_attempts: int = 3
    provider_backoff_base_seconds: float = 0.5
    provider_backoff_max_seconds: float = 4.0

    # Inbound webhooks
    provider_webhook_secret: str = ""
    webhook_allow_unsigned: bool = False  # ignored in production
    webhook_timestamp_tolerance_seconds: int = 600
    webhook_replay_max_attempts: int = 5

    # Matching
    matcher_recency_window_minutes: int = 30

    # Reconciliation scheduler
    reconciliation_lease_backend: str = "database"  # "database" or "local"
    reconciliation_lease_ttl_seconds: int = 900
    reconciliation_cooldown_seconds: int = 300
    reconciliation_grace_minutes: int = 5
    reconciliation_lookback_hours: int = 168
    reconciliation_batch_size: int = 200
    reconciliation_item_delay_seconds: float = 0.5
    reconciliation_cron_minutes: str = "0,10,20,30,40,50"

    # Downstream notifications
    notification_webhook_url: str = ""
    notification_secret: str = ""

    # Internal operator API
    internal_api_token: str = ""

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def cron_minutes(self) -> set[int]:
        return {int(m) for m in self.reconciliation_cron_minutes.split(",") if m.strip()}


settings = Settings()
