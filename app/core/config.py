from functools import lru_cache
from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_name: str = "DesignAuto Billing API"
    environment: str = Field(default="development")
    debug: bool = Field(default=False)

    database_url: str = Field(...)
    redis_url: str = Field(...)

    # Admin JWT (issued by the main site; we only verify)
    jwt_secret_key: Optional[str] = Field(default=None)  # HS256, dev only
    jwt_private_key: Optional[str] = Field(default=None)  # tests / local tooling
    jwt_public_key: Optional[str] = Field(default=None)
    jwt_algorithm: str = Field(default="HS256")
    jwt_expire_minutes: int = Field(default=60)
    jwt_issuer: Optional[str] = Field(default=None)
    jwt_audience: Optional[str] = Field(default=None)
    jwt_clock_skew_seconds: int = Field(default=30)

    cors_origins: List[AnyHttpUrl] = Field(default_factory=list)

    # Provider secrets; rows in integrationsetting override these
    hotmart_hottok: Optional[str] = Field(default=None)
    hotmart_client_id: Optional[str] = Field(default=None)
    hotmart_client_secret: Optional[str] = Field(default=None)
    hotmart_auth_url: str = Field(default="https://api-sec-vlc.hotmart.com")
    hotmart_api_url: str = Field(default="https://developers.hotmart.com")
    doppus_client_id: Optional[str] = Field(default=None)
    doppus_client_secret: Optional[str] = Field(default=None)
    doppus_secret_key: Optional[str] = Field(default=None)
    doppus_api_url: str = Field(default="https://api.doppus.app/4.0")
    provider_timeout_seconds: float = Field(default=10.0)

    # Webhook pipeline
    webhook_max_attempts: int = Field(default=3)
    webhook_batch_size: int = Field(default=10)
    webhook_rate_limit_max: int = Field(default=120)
    webhook_rate_limit_window: int = Field(default=60)
    webhook_drain_interval_seconds: int = Field(default=60)
    webhook_claim_timeout_seconds: int = Field(default=300)

    # Subscriptions
    default_plan_type: str = Field(default="premium")
    default_plan_duration_days: int = Field(default=30)
    subscription_cache_ttl_seconds: int = Field(default=900)
    expiry_sweep_interval_seconds: int = Field(default=3600)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
