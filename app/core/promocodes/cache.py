from __future__ import annotations

import enum
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

from redis import Redis
from redis.exceptions import RedisError

from app.core.promocodes.store import normalize_code


logger = logging.getLogger(__name__)

T = TypeVar("T")
PromoRef = Union[uuid.UUID, str]


class CacheNamespace(str, enum.Enum):
    """Every key namespace the promo engine writes to.

    ``per_code`` namespaces hold keys that start with a promo-code id and
    can be purged for that single code.
    """

    ALL_PROMO_CODES = "subscription:promos:all_promo_codes"
    PROMO_CODE = "promo_code"
    VALIDATION = "promo_validation"
    SEARCH = "promo_search"
    STATS = "promo_stats"
    PLANS = "promo_plans"
    USERS = "promo_users"

    @property
    def per_code(self) -> bool:
        return self in _PER_CODE_NAMESPACES


_PER_CODE_NAMESPACES = frozenset(
    {
        CacheNamespace.PROMO_CODE,
        CacheNamespace.VALIDATION,
        CacheNamespace.PLANS,
        CacheNamespace.USERS,
        CacheNamespace.STATS,
    }
)


class CacheKeys:
    @staticmethod
    def promo_code(promo_code_id: PromoRef) -> str:
        return f"{CacheNamespace.PROMO_CODE.value}:{promo_code_id}"

    @staticmethod
    def validation(promo_code_id: PromoRef, user_id: PromoRef, plan_id: PromoRef) -> str:
        return f"{CacheNamespace.VALIDATION.value}:{promo_code_id}:{user_id}:{plan_id}"

    @staticmethod
    def validation_by_code(code: str, user_id: PromoRef, plan_id: PromoRef) -> str:
        return f"{CacheNamespace.VALIDATION.value}:code:{code}:{user_id}:{plan_id}"

    @staticmethod
    def listing(filters: Dict[str, Any], *, today: Optional[date] = None) -> str:
        day = (today or date.today()).isoformat()
        payload = json.dumps(filters, sort_keys=True, default=str)
        return f"{CacheNamespace.ALL_PROMO_CODES.value}:{day}:{payload}"

    @staticmethod
    def validation_by_code_pattern(code: Optional[str] = None) -> str:
        if code is None:
            return f"{CacheNamespace.VALIDATION.value}:code:*"
        return f"{CacheNamespace.VALIDATION.value}:code:{normalize_code(code)}:*"

    @staticmethod
    def namespace_pattern(namespace: CacheNamespace) -> str:
        return f"{namespace.value}:*"

    @classmethod
    def all_patterns(cls) -> List[str]:
        return [cls.namespace_pattern(ns) for ns in CacheNamespace]

    @classmethod
    def patterns_for_code(
        cls,
        promo_code_id: PromoRef,
        *,
        code: Optional[str] = None,
    ) -> List[str]:
        patterns: List[str] = []
        for ns in CacheNamespace:
            if not ns.per_code:
                continue
            if ns is CacheNamespace.PROMO_CODE:
                patterns.append(cls.promo_code(promo_code_id))
            else:
                patterns.append(f"{ns.value}:{promo_code_id}:*")
        # by-code validation keys do not carry the id; without the code
        # every by-code answer has to go
        by_code = code if code and code.strip() else None
        patterns.append(cls.validation_by_code_pattern(by_code))
        return patterns


class CacheError(Exception):
    def __init__(self, operation: str, key: str, cause: BaseException) -> None:
        super().__init__(f"cache {operation} failed for {key}: {cause!r}")
        self.operation = operation
        self.key = key
        self.cause = cause


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[CacheError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def hit(self) -> bool:
        return self.error is None and self.value is not None


class PromoCache:
    """Thin wrapper over the promo Redis db.

    Reads and writes return a ``CacheResult`` and leave the fallback to the
    caller. Pattern deletion raises ``CacheError`` because the invalidator
    has its own per-pattern failure policy.
    """

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    def get(self, key: str) -> CacheResult[str]:
        try:
            return CacheResult(value=self._redis.get(key))
        except RedisError as exc:
            return CacheResult(error=CacheError("get", key, exc))

    def set(self, key: str, value: str, ttl_seconds: int) -> CacheResult[bool]:
        try:
            self._redis.setex(key, ttl_seconds, value)
            return CacheResult(value=True)
        except RedisError as exc:
            return CacheResult(error=CacheError("set", key, exc))

    def delete_by_pattern(self, pattern: str, batch_size: int = 100) -> int:
        deleted = 0
        batch: List[str] = []
        try:
            for key in self._redis.scan_iter(match=pattern, count=batch_size):
                batch.append(key)
                if len(batch) >= batch_size:
                    deleted += self._redis.delete(*batch)
                    batch = []
            if batch:
                deleted += self._redis.delete(*batch)
        except RedisError as exc:
            raise CacheError("delete_by_pattern", pattern, exc) from exc
        return deleted

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except RedisError:
            return False


__all__ = [
    "CacheNamespace",
    "CacheKeys",
    "CacheError",
    "CacheResult",
    "PromoCache",
]
