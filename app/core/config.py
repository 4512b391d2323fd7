from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field(..., env="DATABASE_URL")
    jwt_secret_key: str = Field("CHANGE_ME_SECRET", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(30, env="ACCESS_TOKEN_EXPIRE_MINUTES")
    payment_page_token_expire_minutes: int = Field(
        60, env="PAYMENT_PAGE_TOKEN_EXPIRE_MINUTES"
    )

    # features.payments
    payments_enabled: bool = Field(True, env="PAYMENTS_ENABLED")

    razorpay_key_id: str = Field("", env="RAZORPAY_KEY_ID")
    razorpay_key_secret: str = Field("", env="RAZORPAY_KEY_SECRET")
    razorpay_webhook_secret: str = Field("", env="RAZORPAY_WEBHOOK_SECRET")
    razorpay_api_url: str = Field(
        "https://api.razorpay.com/v1",
        env="RAZORPAY_API_URL",
    )
    gateway_timeout_seconds: float = Field(10.0, env="GATEWAY_TIMEOUT_SECONDS")

    server_url: str = Field("http://localhost:8000", env="SERVER_URL")
    fallback_currency: str = Field("USD", env="FALLBACK_CURRENCY")

    payment_order_ttl_hours: int = Field(24, env="PAYMENT_ORDER_TTL_HOURS")
    recovery_grace_minutes: int = Field(5, env="RECOVERY_GRACE_MINUTES")
    recovery_batch_size: int = Field(50, env="RECOVERY_BATCH_SIZE")
    subscription_cache_ttl_seconds: int = Field(
        60, env="SUBSCRIPTION_CACHE_TTL_SECONDS"
    )

    celery_broker_url: str = Field(
        "redis://localhost:6379/0",
        env="CELERY_BROKER_URL",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


__all__ = ["settings", "Settings"]
