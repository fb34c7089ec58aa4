from __future__ import annotations

from typing import Optional

from loguru import logger

from app.core.config import settings
from app.core.promocodes.cache import PromoCache
from app.core.promocodes.invalidation import CacheInvalidator, PromoMutation
from app.utils.redis_client import create_redis_client
from promo_worker.celery_app import celery_app


def build_invalidator() -> CacheInvalidator:
    redis = create_redis_client(
        settings.promo_cache_url,
        timeout_seconds=settings.promo_cache_timeout_seconds,
    )
    return CacheInvalidator(
        PromoCache(redis),
        batch_size=settings.promo_invalidation_batch_size,
        single_batch_size=settings.promo_single_invalidation_batch_size,
        pattern_delay_seconds=settings.promo_invalidation_pattern_delay_ms / 1000,
    )


@celery_app.task(name="promocodes.invalidate_cache")
def invalidate_cache(
    event: str,
    promo_code_id: Optional[str] = None,
    code: Optional[str] = None,
) -> int:
    mutation = PromoMutation(event)
    logger.bind(event=mutation.value, promo_code_id=promo_code_id).info(
        "Invalidating promo cache"
    )
    deleted = build_invalidator().invalidate_for(mutation, promo_code_id, code=code)
    logger.info(
        "Promo cache invalidated: {} keys ({}, promo={})",
        deleted,
        mutation.value,
        promo_code_id,
    )
    return deleted


__all__ = ["invalidate_cache", "build_invalidator"]
