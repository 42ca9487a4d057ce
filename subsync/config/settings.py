from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./subsync.db"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    provider_timeout_seconds: float = 10.0
    provider_max_attempts: int = 2

    # Ops endpoints (X-Admin-Key header)
    admin_api_key: str = "subsync-dev-admin-key"

    # Hand webhook projection to Celery instead of projecting inline
    process_webhooks_async: bool = False

    # Subscription sync retry policy
    sync_retry_base_delay_ms: int = 1000
    sync_retry_max_delay_ms: int = 10000
    sync_retry_backoff_multiplier: float = 2.0
    sync_retry_max_retries: int = 3

    # Webhook event retry policy
    event_retry_base_delay_minutes: int = 1
    event_retry_max_delay_minutes: int = 60
    event_retry_backoff_multiplier: float = 2.0
    event_retry_max_retries: int = 3
    event_retry_delay_minutes: int = 5

    # Fraction of the computed delay added at random; 0 keeps backoff deterministic
    retry_jitter: float = 0.0
    retry_batch_size: int = 10

    # Reconciliation
    reconcile_repair_policy: str = "prefer_provider"  # "prefer_provider" or "prefer_local"
    reconcile_batch_size: int = 200
    reconcile_time_budget_seconds: int = 240

    # Redis / Celery
    redis_url: str = ""
    celery_broker_url: str = ""
    celery_result_backend: str = ""

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_deployed(self) -> bool:
        return self.environment.lower() in ("production", "staging")

    @property
    def effective_celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url or "memory://"

    @property
    def effective_celery_backend(self) -> str:
        return self.celery_result_backend or self.redis_url or "cache+memory://"

    def validate_production(self) -> None:
        """Raise if the configuration is unusable or production uses insecure defaults."""
        if self.reconcile_repair_policy not in ("prefer_provider", "prefer_local"):
            raise ValueError("RECONCILE_REPAIR_POLICY must be 'prefer_provider' or 'prefer_local'")
        if self.sync_retry_max_retries < 1 or self.event_retry_max_retries < 1:
            raise ValueError("Retry policies need at least one retry")
        if not self.is_production:
            return

        required = {
            "STRIPE_SECRET_KEY": self.stripe_secret_key,
            "STRIPE_WEBHOOK_SECRET": self.stripe_webhook_secret,
            "REDIS_URL": self.redis_url,
        }
        if self.admin_api_key == "subsync-dev-admin-key":
            raise ValueError("ADMIN_API_KEY must be changed from the default in production")
        for name, value in required.items():
            if not value:
                raise ValueError(f"{name} must be set in production")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
