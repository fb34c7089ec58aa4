from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field(...)
    db_pool_timeout_seconds: int = Field(30)
    db_statement_timeout_ms: int = Field(5000)

    promo_cache_url: str = Field("redis://localhost:6379/3")
    promo_cache_timeout_seconds: float = Field(0.5)
    promo_validation_ttl_seconds: int = Field(120)
    promo_listing_ttl_seconds: int = Field(60 * 4)
    promo_detail_ttl_seconds: int = Field(3600)
    promo_invalidation_batch_size: int = Field(100)
    promo_single_invalidation_batch_size: int = Field(50)
    promo_invalidation_pattern_delay_ms: int = Field(10)

    celery_broker_url: str = Field("redis://localhost:6379/0")
    admin_secret_key: str = Field("")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


__all__ = ["settings", "Settings"]
