from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.promocodes.cache import CacheKeys, PromoCache
from app.core.promocodes.discounts import calculate_discount
from app.core.promocodes.errors import (
    InvariantViolation,
    PromoCodeError,
    PromoConflictError,
    PromoNotFoundError,
    PromoValidationError,
    TransientStoreError,
)
from app.core.promocodes.invalidation import CacheInvalidator, PromoMutation
from app.core.promocodes.models import PromoCode, SubscriptionPromoCode
from app.core.promocodes.schemas import (
    PromoCodeCreate,
    PromoCodeListFilters,
    PromoCodeListPage,
    PromoCodePublic,
    PromoCodeUpdate,
    ValidationResult,
)
from app.core.promocodes.store import PromoCodeStore, normalize_code
from app.core.promocodes.validation import (
    NULLABLE_UPDATE_FIELDS,
    ValidationPipeline,
    _utc_now,
    validate_promo_code_data,
)
from promo_worker.celery_app import celery_app


logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

StoreFactory = Callable[[Session], PromoCodeStore]

_STORE_UNAVAILABLE_MESSAGE = "Promo code could not be validated right now"


class RedemptionCoordinator:
    """Read path (cached validation) and write path (redemption).

    Built once at process start and shared by every request; all
    per-request state lives in the ``Session`` passed to each call.
    """

    def __init__(
        self,
        cache: PromoCache,
        invalidator: CacheInvalidator,
        *,
        validation_ttl_seconds: int = 120,
        store_factory: StoreFactory = PromoCodeStore,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.cache = cache
        self.invalidator = invalidator
        self.validation_ttl_seconds = validation_ttl_seconds
        self._store_factory = store_factory
        self._now = now

    # read path

    def validate_and_cache(
        self,
        db: Session,
        *,
        user_id: uuid.UUID,
        plan_id: uuid.UUID,
        promo_code_id: Optional[uuid.UUID] = None,
        code: Optional[str] = None,
    ) -> ValidationResult:
        if promo_code_id is None and not (code and code.strip()):
            return ValidationResult.fail("Promo code is required", "PROMO_INVALID_DATA")

        if promo_code_id is not None:
            cache_key = CacheKeys.validation(promo_code_id, user_id, plan_id)
        else:
            cache_key = CacheKeys.validation_by_code(normalize_code(code), user_id, plan_id)

        cached = self._read_cached(cache_key)
        if cached is not None:
            return cached

        result = self._validate_uncached(
            db,
            user_id=user_id,
            plan_id=plan_id,
            promo_code_id=promo_code_id,
            code=code,
        )
        # store outages are not an answer about the code itself
        if not result.retryable:
            self._write_cached(cache_key, result)
        return result

    def _read_cached(self, cache_key: str) -> Optional[ValidationResult]:
        cached = self.cache.get(cache_key)
        if not cached.ok:
            logger.warning("promo validation cache error: %r", cached.error)
            return None
        if not cached.hit:
            logger.debug("promo validation cache miss (key=%s)", cache_key)
            return None
        try:
            result = ValidationResult.model_validate_json(cached.value)
        except SchemaValidationError as exc:
            logger.warning("discarding unreadable cache entry %s: %r", cache_key, exc)
            return None
        logger.debug("promo validation cache hit (key=%s)", cache_key)
        return result

    def _write_cached(self, cache_key: str, result: ValidationResult) -> None:
        written = self.cache.set(
            cache_key,
            result.model_dump_json(),
            self.validation_ttl_seconds,
        )
        if not written.ok:
            logger.warning("promo validation cache set error: %r", written.error)

    def _validate_uncached(
        self,
        db: Session,
        *,
        user_id: uuid.UUID,
        plan_id: uuid.UUID,
        promo_code_id: Optional[uuid.UUID],
        code: Optional[str],
    ) -> ValidationResult:
        store = self._store_factory(db)
        pipeline = ValidationPipeline(store, now=self._now)

        try:
            if promo_code_id is not None:
                promo = store.find_by_id(promo_code_id)
            else:
                promo = store.find_by_code(code)
        except SQLAlchemyError:
            logger.error("promo lookup failed (id=%s, code=%s)", promo_code_id, code, exc_info=True)
            return ValidationResult.fail(
                _STORE_UNAVAILABLE_MESSAGE, "PROMO_STORE_UNAVAILABLE", retryable=True
            )
        if promo is None:
            return ValidationResult.fail("Promo code not found", "PROMO_NOT_FOUND")

        result = pipeline.validate(promo.id, user_id, plan_id, promo=promo)
        if not result.is_valid:
            return result

        try:
            price = store.get_plan_price(plan_id)
        except SQLAlchemyError:
            logger.error("plan price lookup failed (plan=%s)", plan_id, exc_info=True)
            return ValidationResult.fail(
                _STORE_UNAVAILABLE_MESSAGE, "PROMO_STORE_UNAVAILABLE", retryable=True
            )
        if price is None:
            return ValidationResult.fail("Invalid subscription plan", "PROMO_PLAN_NOT_FOUND")

        try:
            discount = calculate_discount(promo, price)
        except InvariantViolation as exc:
            logger.error("promo %s: %s", promo.id, exc.message)
            return ValidationResult.fail("Promo code could not be applied", exc.code)

        return result.model_copy(
            update={
                "discount_amount": discount,
                "message": "Promo code applied successfully",
            }
        )

    # write path

    def redeem(
        self,
        db: Session,
        *,
        subscription_id: uuid.UUID,
        user_id: uuid.UUID,
        promo_code_id: uuid.UUID,
        discount_amount: Optional[Decimal] = None,
    ) -> SubscriptionPromoCode:
        """Apply a promo code to a subscription in one transaction.

        Re-validates against the store (the cached read-path answer is never
        trusted here), consumes capacity with a conditional increment, then
        records the redemption. Cache invalidation runs after commit and
        cannot fail the redemption.
        """
        store = self._store_factory(db)
        try:
            record = self._redeem_in_transaction(
                store,
                subscription_id=subscription_id,
                user_id=user_id,
                promo_code_id=promo_code_id,
                discount_amount=discount_amount,
            )
            db.commit()
        except PromoCodeError:
            db.rollback()
            raise
        except OperationalError as exc:
            db.rollback()
            logger.error(
                "promo redemption aborted on store timeout "
                "(promo=%s, subscription=%s, user=%s)",
                promo_code_id,
                subscription_id,
                user_id,
                exc_info=True,
            )
            raise TransientStoreError() from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "promo redemption failed (promo=%s, subscription=%s, user=%s)",
                promo_code_id,
                subscription_id,
                user_id,
                exc_info=True,
            )
            raise TransientStoreError("Failed to apply promo code") from exc

        db.refresh(record)
        self._invalidate_after_redeem(promo_code_id)
        logger.info(
            "applied promo code %s to subscription %s (discount=%s)",
            promo_code_id,
            subscription_id,
            record.discount_amount,
        )
        return record

    def _redeem_in_transaction(
        self,
        store: PromoCodeStore,
        *,
        subscription_id: uuid.UUID,
        user_id: uuid.UUID,
        promo_code_id: uuid.UUID,
        discount_amount: Optional[Decimal],
    ) -> SubscriptionPromoCode:
        subscription = store.find_subscription(subscription_id)
        if subscription is None or subscription.user_id != user_id:
            raise PromoNotFoundError(
                "Subscription not found",
                code="PROMO_SUBSCRIPTION_NOT_FOUND",
            )

        promo = store.find_by_id(promo_code_id, for_update=True)
        if promo is None:
            raise PromoNotFoundError()

        pipeline = ValidationPipeline(store, now=self._now)
        result = pipeline.validate(
            promo_code_id,
            user_id,
            subscription.plan_id,
            promo=promo,
            subscription_id=subscription.id,
        )
        if not result.is_valid:
            raise _error_for(result)

        price = store.get_plan_price(subscription.plan_id)
        if price is None:
            raise PromoNotFoundError(
                "Subscription plan not found",
                code="PROMO_PLAN_NOT_FOUND",
            )
        computed = calculate_discount(promo, price)
        if discount_amount is not None and Decimal(discount_amount) != computed:
            raise PromoValidationError(
                "Discount amount does not match the promo code",
                code="PROMO_DISCOUNT_MISMATCH",
                details={"expected": str(computed), "got": str(discount_amount)},
            )

        if not store.atomic_increment_usage(promo_code_id):
            raise PromoValidationError(
                "Promo code has reached its maximum usage limit",
                code="PROMO_USAGE_LIMIT_REACHED",
            )

        try:
            return store.create_redemption_record(
                subscription_id=subscription.id,
                promo_code_id=promo_code_id,
                user_id=user_id,
                discount_amount=computed,
                applied_date=self._now().date(),
            )
        except IntegrityError as exc:
            # a concurrent redemption by the same user won the unique index
            raise PromoValidationError(
                "You have already used this promo code",
                code="PROMO_ALREADY_USED",
            ) from exc

    def _invalidate_after_redeem(self, promo_code_id: uuid.UUID) -> None:
        try:
            self.invalidator.invalidate_for(PromoMutation.REDEEM, promo_code_id)
        except Exception as exc:
            logger.warning(
                "promo cache invalidation after redeem failed (promo=%s): %r",
                promo_code_id,
                exc,
            )


def _error_for(result: ValidationResult) -> PromoCodeError:
    if result.retryable:
        return TransientStoreError()
    if result.code == "PROMO_NOT_FOUND":
        return PromoNotFoundError(result.message)
    return PromoValidationError(
        result.message,
        code=result.code or "PROMO_INVALID_DATA",
    )


# admin operations


def _flush_promo(db: Session, promo: PromoCode) -> None:
    code = promo.code
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        if "ck_promo_usage_within_limit" in str(exc.orig):
            raise PromoValidationError(
                "Usage limit cannot be lower than the current usage count"
            ) from exc
        raise PromoConflictError(f"Promo code {code} already exists") from exc


def create_promo_code(db: Session, *, data: PromoCodeCreate) -> PromoCode:
    store = PromoCodeStore(db)
    validate_promo_code_data(store, data)

    promo = PromoCode(
        code=normalize_code(data.code),
        description=data.description.strip(),
        discount_type=data.discount_type,
        discount_value=data.discount_value,
        max_discount_amount=data.max_discount_amount,
        start_date=data.start_date,
        end_date=data.end_date,
        usage_limit=data.usage_limit,
        usage_count=0,
        is_active=data.is_active,
        is_first_time_only=data.is_first_time_only,
        applicable_to=data.applicable_to,
    )
    store.replace_applicable_plans(promo, data.applicable_plan_ids)
    store.replace_applicable_users(promo, data.applicable_user_ids)
    db.add(promo)
    _flush_promo(db, promo)
    db.refresh(promo)
    return promo


def update_promo_code(
    db: Session,
    *,
    promo: PromoCode,
    data: PromoCodeUpdate,
) -> PromoCode:
    store = PromoCodeStore(db)
    validate_promo_code_data(store, data, existing=promo)

    fields = data.model_dump(
        exclude_unset=True,
        exclude={"applicable_plan_ids", "applicable_user_ids", "discount_type"},
    )
    for field, value in fields.items():
        if value is None and field not in NULLABLE_UPDATE_FIELDS:
            continue
        if field == "code":
            value = normalize_code(value)
        setattr(promo, field, value)

    if data.applicable_plan_ids is not None:
        store.replace_applicable_plans(promo, data.applicable_plan_ids)
    if data.applicable_user_ids is not None:
        store.replace_applicable_users(promo, data.applicable_user_ids)

    db.add(promo)
    _flush_promo(db, promo)
    return promo


def deactivate_promo_code(db: Session, *, promo: PromoCode) -> PromoCode:
    promo.is_active = False
    db.add(promo)
    db.flush()
    return promo


def get_promo_code_or_404(db: Session, promo_code_id: uuid.UUID) -> PromoCode:
    promo = PromoCodeStore(db).find_by_id(promo_code_id)
    if promo is None:
        raise PromoNotFoundError()
    return promo


def get_promo_code_cached(
    db: Session,
    cache: PromoCache,
    promo_code_id: uuid.UUID,
    *,
    ttl_seconds: int,
) -> PromoCodePublic:
    cache_key = CacheKeys.promo_code(promo_code_id)
    cached = cache.get(cache_key)
    if cached.hit:
        try:
            return PromoCodePublic.model_validate_json(cached.value)
        except SchemaValidationError as exc:
            logger.warning("discarding unreadable cache entry %s: %r", cache_key, exc)
    elif not cached.ok:
        logger.warning("promo detail cache error: %r", cached.error)

    promo_out = PromoCodePublic.from_model(get_promo_code_or_404(db, promo_code_id))
    written = cache.set(cache_key, promo_out.model_dump_json(), ttl_seconds)
    if not written.ok:
        logger.warning("promo detail cache set error: %r", written.error)
    return promo_out


def list_promo_codes_cached(
    db: Session,
    cache: PromoCache,
    filters: PromoCodeListFilters,
    *,
    ttl_seconds: int,
    now: Optional[datetime] = None,
) -> PromoCodeListPage:
    now = now or _utc_now()
    cache_key = CacheKeys.listing(filters.model_dump(mode="json"), today=now.date())
    cached = cache.get(cache_key)
    if cached.hit:
        try:
            return PromoCodeListPage.model_validate_json(cached.value)
        except SchemaValidationError as exc:
            logger.warning("discarding unreadable cache entry %s: %r", cache_key, exc)
    elif not cached.ok:
        logger.warning("promo listing cache error: %r", cached.error)

    items, total = PromoCodeStore(db).list_page(filters, now=now)
    page = PromoCodeListPage(
        items=[PromoCodePublic.from_model(promo) for promo in items],
        total_items=total,
        total_pages=math.ceil(total / filters.page_size) if filters.page_size else 1,
        current_page=filters.page,
    )
    written = cache.set(cache_key, page.model_dump_json(), ttl_seconds)
    if not written.ok:
        logger.warning("promo listing cache set error: %r", written.error)
    return page


def enqueue_cache_invalidation(
    event: PromoMutation,
    promo_code_id: Optional[uuid.UUID] = None,
    *,
    code: Optional[str] = None,
) -> None:
    """Hand invalidation for an admin mutation to the background worker.

    Called after commit. A broker failure is logged and never fails the
    mutation; cached entries then expire on their own TTL.
    """
    args = [event.value]
    if promo_code_id is not None:
        args.append(str(promo_code_id))
    options = {"args": args}
    if code:
        options["kwargs"] = {"code": code}
    try:
        celery_app.send_task("promocodes.invalidate_cache", **options)
    except Exception as exc:
        logger.warning(
            "failed to enqueue promo cache invalidation (%s, promo=%s): %r",
            event.value,
            promo_code_id,
            exc,
        )


__all__ = [
    "RedemptionCoordinator",
    "create_promo_code",
    "update_promo_code",
    "deactivate_promo_code",
    "get_promo_code_or_404",
    "get_promo_code_cached",
    "list_promo_codes_cached",
    "enqueue_cache_invalidation",
]
