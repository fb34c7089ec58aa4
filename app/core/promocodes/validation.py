from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core.promocodes.errors import (
    PromoConflictError,
    PromoNotFoundError,
    PromoValidationError,
)
from app.core.promocodes.models import ApplicableType, DiscountType, PromoCode
from app.core.promocodes.schemas import (
    PromoCodeCreate,
    PromoCodePublic,
    PromoCodeUpdate,
    ValidationResult,
)
from app.core.promocodes.store import PromoCodeStore


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ValidationPipeline:
    """Eligibility checks for one promo code and a (user, plan) pair.

    Checks run in a fixed order and stop at the first failure:
    existence, date range, usage limits, plan applicability, user
    eligibility. ``validate`` never raises; every failure comes back as an
    invalid ``ValidationResult`` carrying the failing check's code.
    """

    def __init__(
        self,
        store: PromoCodeStore,
        *,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self._now = now

    def validate(
        self,
        promo_code_id: uuid.UUID,
        user_id: uuid.UUID,
        plan_id: uuid.UUID,
        *,
        promo: Optional[PromoCode] = None,
        subscription_id: Optional[uuid.UUID] = None,
    ) -> ValidationResult:
        try:
            if promo is None:
                promo = self.store.find_by_id(promo_code_id)
            self.check_existence(promo)
            self.check_date_range(promo)
            self.check_usage_limits(promo, user_id)
            self.check_plan_applicability(promo, plan_id)
            self.check_user_eligibility(
                promo,
                user_id,
                subscription_id=subscription_id,
            )
            return ValidationResult.ok(PromoCodePublic.from_model(promo))
        except (PromoNotFoundError, PromoValidationError) as exc:
            return ValidationResult.fail(exc.message, exc.code)
        except SQLAlchemyError:
            logger.error(
                "promo validation store error (promo=%s, user=%s, plan=%s)",
                promo_code_id,
                user_id,
                plan_id,
                exc_info=True,
            )
            return ValidationResult.fail(
                "Promo code could not be validated right now",
                "PROMO_STORE_UNAVAILABLE",
                retryable=True,
            )

    def check_existence(self, promo: Optional[PromoCode]) -> None:
        if promo is None:
            raise PromoNotFoundError()
        if not promo.is_active:
            raise PromoValidationError(
                "Promo code is inactive",
                code="PROMO_INACTIVE",
            )

    def check_date_range(self, promo: PromoCode) -> None:
        now = self._now()
        if as_utc(promo.start_date) > now:
            raise PromoValidationError(
                "Promo code is not yet active",
                code="PROMO_NOT_YET_ACTIVE",
            )
        if promo.end_date is not None and as_utc(promo.end_date) <= now:
            raise PromoValidationError(
                "Promo code has expired",
                code="PROMO_EXPIRED",
            )

    def check_usage_limits(self, promo: PromoCode, user_id: uuid.UUID) -> None:
        # one active redemption per user
        used = self.store.count_usage_by_user_and_code(promo.id, user_id)
        if used > 0:
            raise PromoValidationError(
                "You have already used this promo code",
                code="PROMO_ALREADY_USED",
            )
        if promo.usage_limit is not None and promo.usage_count >= promo.usage_limit:
            raise PromoValidationError(
                "Promo code has reached its maximum usage limit",
                code="PROMO_USAGE_LIMIT_REACHED",
            )

    def check_plan_applicability(self, promo: PromoCode, plan_id: uuid.UUID) -> None:
        if promo.applicable_to != ApplicableType.SPECIFIC_PLANS:
            return
        if not any(row.plan_id == plan_id for row in promo.applicable_plans):
            raise PromoValidationError(
                "Promo code is not applicable to this plan",
                code="PROMO_PLAN_NOT_APPLICABLE",
            )

    def check_user_eligibility(
        self,
        promo: PromoCode,
        user_id: uuid.UUID,
        *,
        subscription_id: Optional[uuid.UUID] = None,
    ) -> None:
        if promo.applicable_to == ApplicableType.SPECIFIC_USERS:
            if not any(row.user_id == user_id for row in promo.applicable_users):
                raise PromoValidationError(
                    "Promo code is not applicable to this user",
                    code="PROMO_USER_NOT_APPLICABLE",
                )
        if promo.is_first_time_only:
            prior = self.store.count_prior_subscriptions(
                user_id,
                exclude_subscription_id=subscription_id,
            )
            if prior > 0:
                raise PromoValidationError(
                    "Promo code is only valid for first-time users",
                    code="PROMO_FIRST_TIME_ONLY",
                )


# fields an update may clear by sending null
NULLABLE_UPDATE_FIELDS = frozenset({"end_date", "usage_limit", "max_discount_amount"})


def validate_promo_code_data(
    store: PromoCodeStore,
    data: PromoCodeCreate | PromoCodeUpdate,
    *,
    existing: Optional[PromoCode] = None,
) -> None:
    """Admin-side checks run before a promo code is created or updated.

    ``existing`` is the stored row for an update; fields missing from
    ``data`` fall back to it. An explicit null clears the end date, the
    usage limit and the discount cap, and is ignored elsewhere.
    """
    is_update = existing is not None
    provided = data.model_fields_set

    def pick(field: str):
        value = getattr(data, field, None)
        if not is_update:
            return value
        if field not in provided:
            return getattr(existing, field)
        # explicit null clears only the optional limits
        if value is None and field not in NULLABLE_UPDATE_FIELDS:
            return getattr(existing, field)
        return value

    code = pick("code")
    if not code or not str(code).strip():
        raise PromoValidationError("Promo code is required")
    description = pick("description")
    if not description or not str(description).strip():
        raise PromoValidationError("Description is required")

    discount_type = pick("discount_type")
    if discount_type is None:
        raise PromoValidationError('Discount type must be "percentage" or "fixed"')
    if is_update and data.discount_type is not None and data.discount_type != existing.discount_type:
        raise PromoValidationError(
            "Cannot change the discount type of an existing promo code"
        )

    discount_value = pick("discount_value")
    if discount_value is None or Decimal(discount_value) <= 0:
        raise PromoValidationError("Discount value must be a positive number")
    if discount_type == DiscountType.PERCENTAGE and Decimal(discount_value) > 100:
        raise PromoValidationError("Percentage discount cannot exceed 100%")

    max_discount_amount = pick("max_discount_amount")
    if max_discount_amount is not None and Decimal(max_discount_amount) <= 0:
        raise PromoValidationError("Max discount amount must be a positive number")

    start_date = pick("start_date")
    if start_date is None:
        raise PromoValidationError("Start date is required")
    end_date = pick("end_date")
    if end_date is not None and as_utc(end_date) <= as_utc(start_date):
        raise PromoValidationError("End date must be after start date")

    usage_limit = pick("usage_limit")
    if usage_limit is not None and usage_limit <= 0:
        raise PromoValidationError("Usage limit must be a positive number")
    if is_update and usage_limit is not None and usage_limit < existing.usage_count:
        raise PromoValidationError(
            "Usage limit cannot be lower than the current usage count",
            details={"usage_count": existing.usage_count},
        )

    applicable_to = pick("applicable_to") or ApplicableType.ALL
    plan_ids = data.applicable_plan_ids
    if plan_ids is None and is_update:
        plan_ids = [row.plan_id for row in existing.applicable_plans]
    user_ids = data.applicable_user_ids
    if user_ids is None and is_update:
        user_ids = [row.user_id for row in existing.applicable_users]

    if applicable_to == ApplicableType.SPECIFIC_PLANS:
        if not plan_ids:
            raise PromoValidationError(
                "At least one plan must be specified for specific plans"
            )
        missing = set(plan_ids) - set(store.existing_plan_ids(plan_ids))
        if missing:
            raise PromoValidationError(
                "Unknown subscription plans",
                details={"plan_ids": sorted(str(plan_id) for plan_id in missing)},
            )
    if applicable_to == ApplicableType.SPECIFIC_USERS and not user_ids:
        raise PromoValidationError(
            "At least one user must be specified for specific users"
        )

    if store.code_exists(code, exclude_id=existing.id if is_update else None):
        raise PromoConflictError(f"Promo code {code.strip().upper()} already exists")


__all__ = [
    "NULLABLE_UPDATE_FIELDS",
    "ValidationPipeline",
    "validate_promo_code_data",
    "as_utc",
]
