from __future__ import annotations

import enum
import logging
import time
from typing import Callable, Iterable, Optional

from app.core.promocodes.cache import (
    CacheError,
    CacheKeys,
    CacheNamespace,
    PromoCache,
    PromoRef,
)


logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class PromoMutation(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REDEEM = "redeem"
    PLANS_CHANGED = "plans_changed"
    USERS_CHANGED = "users_changed"


class CacheInvalidator:
    """Purges promo cache namespaces after a mutation.

    Invalidation is best-effort. A failing pattern is logged and skipped so
    the remaining patterns still run, and the returned count is for
    observability only.
    """

    def __init__(
        self,
        cache: PromoCache,
        *,
        batch_size: int = 100,
        single_batch_size: int = 50,
        pattern_delay_seconds: float = 0.01,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cache = cache
        self._batch_size = batch_size
        self._single_batch_size = single_batch_size
        self._pattern_delay_seconds = pattern_delay_seconds
        self._sleep = sleep

    def invalidate_all(self, promo_code_id: Optional[PromoRef] = None) -> int:
        """Purge every promo namespace.

        The namespace patterns already cover every per-code key, so
        ``promo_code_id`` only labels the log lines.
        """
        total = self._delete_patterns(
            CacheKeys.all_patterns(),
            batch_size=self._batch_size,
            delay=True,
            promo_code_id=promo_code_id,
        )
        logger.info(
            "invalidated %s promo cache keys (promo=%s)", total, promo_code_id
        )
        return total

    def invalidate_one(
        self,
        promo_code_id: PromoRef,
        *,
        code: Optional[str] = None,
    ) -> int:
        total = self._delete_patterns(
            CacheKeys.patterns_for_code(promo_code_id, code=code),
            batch_size=self._single_batch_size,
            delay=False,
            promo_code_id=promo_code_id,
        )
        logger.info(
            "invalidated %s cache keys for promo code %s", total, promo_code_id
        )
        return total

    def invalidate_search(self) -> int:
        return self._delete_namespace(CacheNamespace.SEARCH)

    def invalidate_stats(self) -> int:
        return self._delete_namespace(CacheNamespace.STATS)

    def invalidate_plans(self, promo_code_id: PromoRef) -> int:
        return self._delete_patterns(
            [f"{CacheNamespace.PLANS.value}:{promo_code_id}:*"],
            batch_size=self._batch_size,
            delay=False,
            promo_code_id=promo_code_id,
        )

    def invalidate_for(
        self,
        event: PromoMutation,
        promo_code_id: Optional[PromoRef] = None,
        *,
        code: Optional[str] = None,
    ) -> int:
        if event is PromoMutation.CREATE:
            return self.invalidate_all()
        if event in (PromoMutation.PLANS_CHANGED, PromoMutation.USERS_CHANGED):
            if promo_code_id is None:
                raise ValueError(f"{event.value} invalidation needs a promo code id")
            return self.invalidate_one(promo_code_id, code=code)
        return self.invalidate_all(promo_code_id)

    def _delete_namespace(self, namespace: CacheNamespace) -> int:
        deleted = self._delete_patterns(
            [CacheKeys.namespace_pattern(namespace)],
            batch_size=self._batch_size,
            delay=False,
        )
        logger.info("invalidated %s %s cache keys", deleted, namespace.value)
        return deleted

    def _delete_patterns(
        self,
        patterns: Iterable[str],
        *,
        batch_size: int,
        delay: bool,
        promo_code_id: Optional[PromoRef] = None,
    ) -> int:
        total = 0
        for pattern in patterns:
            try:
                total += self._cache.delete_by_pattern(pattern, batch_size)
            except CacheError as exc:
                logger.error(
                    "error deleting cache pattern %s (promo=%s): %r",
                    pattern,
                    promo_code_id,
                    exc.cause,
                )
                continue
            if delay and self._pattern_delay_seconds > 0:
                self._sleep(self._pattern_delay_seconds)
        return total


__all__ = ["PromoMutation", "CacheInvalidator"]
