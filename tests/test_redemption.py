import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app.core.promocodes.cache import CacheKeys
from app.core.promocodes.errors import (
    PromoNotFoundError,
    PromoValidationError,
    TransientStoreError,
)
from app.core.promocodes.invalidation import PromoMutation
from app.core.promocodes.models import DiscountType, PromoCode, SubscriptionPromoCode
from app.core.promocodes.services import RedemptionCoordinator
from app.core.promocodes.store import PromoCodeStore
from tests.conftest import NOW, fixed_now


def _active_redemptions(db, promo_id, user_id=None):
    query = db.query(SubscriptionPromoCode).filter(
        SubscriptionPromoCode.promo_code_id == promo_id,
        SubscriptionPromoCode.is_active.is_(True),
    )
    if user_id is not None:
        query = query.filter(SubscriptionPromoCode.user_id == user_id)
    return query.count()


def test_scenario_save20_single_use(
    db, coordinator, make_promo, make_plan, make_subscription, user_id
):
    plan = make_plan("100")
    promo = make_promo("SAVE20", discount_value=Decimal("20"), usage_limit=1)
    promo_id = promo.id

    preview = coordinator.validate_and_cache(
        db, user_id=user_id, plan_id=plan.id, code="save20"
    )
    assert preview.is_valid is True
    assert preview.discount_amount == Decimal("20.00")
    assert preview.message == "Promo code applied successfully"

    first = make_subscription(user_id, plan)
    record = coordinator.redeem(
        db, subscription_id=first.id, user_id=user_id, promo_code_id=promo_id
    )
    assert record.discount_amount == Decimal("20.00")
    assert record.applied_date == NOW.date()

    second = make_subscription(user_id, plan)
    with pytest.raises(PromoValidationError) as exc_info:
        coordinator.redeem(
            db, subscription_id=second.id, user_id=user_id, promo_code_id=promo_id
        )
    assert exc_info.value.message == "You have already used this promo code"
    assert exc_info.value.code == "PROMO_ALREADY_USED"

    # redeem purged the cached preview, so the read path sees the redemption
    again = coordinator.validate_and_cache(
        db, user_id=user_id, plan_id=plan.id, code="SAVE20"
    )
    assert again.is_valid is False
    assert again.message == "You have already used this promo code"

    db.expire_all()
    assert db.get(PromoCode, promo_id).usage_count == 1
    assert _active_redemptions(db, promo_id, user_id) == 1


def test_scenario_flat50_capped_by_price(
    db, coordinator, make_promo, make_plan, make_subscription, user_id
):
    plan = make_plan("30")
    promo = make_promo(
        "FLAT50",
        discount_type=DiscountType.FIXED,
        discount_value=Decimal("50"),
    )

    preview = coordinator.validate_and_cache(
        db, user_id=user_id, plan_id=plan.id, promo_code_id=promo.id
    )
    assert preview.discount_amount == Decimal("30.00")

    subscription = make_subscription(user_id, plan)
    record = coordinator.redeem(
        db, subscription_id=subscription.id, user_id=user_id, promo_code_id=promo.id
    )
    assert record.discount_amount == Decimal("30.00")


def test_scenario_expired_code(db, coordinator, make_promo, make_plan, user_id):
    plan = make_plan()
    make_promo(
        "OLD10",
        start_date=NOW - timedelta(days=30),
        end_date=NOW - timedelta(days=1),
        usage_limit=10,
        usage_count=0,
    )

    result = coordinator.validate_and_cache(
        db, user_id=user_id, plan_id=plan.id, code="OLD10"
    )

    assert result.is_valid is False
    assert result.message == "Promo code has expired"


def test_validation_is_served_from_cache(db, cache, invalidator, make_promo, make_plan, fake_redis, user_id):
    plan = make_plan("100")
    make_promo("SAVE20")
    spy_store = MagicMock(wraps=PromoCodeStore(db))
    store_factory = MagicMock(return_value=spy_store)
    coordinator = RedemptionCoordinator(
        cache, invalidator, store_factory=store_factory, now=fixed_now
    )

    first = coordinator.validate_and_cache(db, user_id=user_id, plan_id=plan.id, code="SAVE20")
    second = coordinator.validate_and_cache(db, user_id=user_id, plan_id=plan.id, code="SAVE20")

    assert store_factory.call_count == 1
    assert spy_store.find_by_code.call_count == 1
    assert second.is_valid is True
    assert second.discount_amount == first.discount_amount
    assert second.promo_code.code == "SAVE20"

    key = CacheKeys.validation_by_code("SAVE20", user_id, plan.id)
    assert fake_redis.ttls[key] == 120



def test_plan_change_drops_answers_cached_by_code(
    db, coordinator, invalidator, make_promo, make_plan, fake_redis, user_id
):
    plan = make_plan("100")
    promo = make_promo("SAVE20")
    coordinator.validate_and_cache(db, user_id=user_id, plan_id=plan.id, code="save20")
    key = CacheKeys.validation_by_code("SAVE20", user_id, plan.id)
    assert key in fake_redis.store

    invalidator.invalidate_for(PromoMutation.PLANS_CHANGED, promo.id)

    assert key not in fake_redis.store


def test_invalid_results_are_cached(db, cache, invalidator, make_plan, user_id):
    plan = make_plan()
    store_factory = MagicMock(side_effect=PromoCodeStore)
    coordinator = RedemptionCoordinator(
        cache, invalidator, store_factory=store_factory, now=fixed_now
    )

    for _ in range(2):
        result = coordinator.validate_and_cache(
            db, user_id=user_id, plan_id=plan.id, code="NOPE"
        )
        assert result.message == "Promo code not found"

    assert store_factory.call_count == 1


def test_store_failures_are_not_cached(db, cache, invalidator, make_plan, fake_redis, user_id):
    plan = make_plan()
    broken_store = MagicMock()
    broken_store.find_by_code.side_effect = OperationalError(
        "SELECT", {}, Exception("statement timeout")
    )
    coordinator = RedemptionCoordinator(
        cache, invalidator, store_factory=lambda session: broken_store, now=fixed_now
    )

    result = coordinator.validate_and_cache(
        db, user_id=user_id, plan_id=plan.id, code="SAVE20"
    )

    assert result.is_valid is False
    assert result.retryable is True
    assert fake_redis.store == {}


def test_cache_outage_falls_back_to_store(db, coordinator, make_promo, make_plan, fake_redis, user_id):
    plan = make_plan("100")
    make_promo("SAVE20")
    fake_redis.fail = True

    result = coordinator.validate_and_cache(
        db, user_id=user_id, plan_id=plan.id, code="SAVE20"
    )

    assert result.is_valid is True
    assert result.discount_amount == Decimal("20.00")


def test_unknown_plan_on_read_path(db, coordinator, make_promo, user_id):
    make_promo("SAVE20")

    result = coordinator.validate_and_cache(
        db, user_id=user_id, plan_id=uuid.uuid4(), code="SAVE20"
    )

    assert result.message == "Invalid subscription plan"


def test_missing_code_on_read_path(db, coordinator, user_id):
    result = coordinator.validate_and_cache(db, user_id=user_id, plan_id=uuid.uuid4(), code="  ")
    assert result.is_valid is False
    assert result.code == "PROMO_INVALID_DATA"


def test_redeem_survives_invalidation_failure(
    db, cache, make_promo, make_plan, make_subscription, user_id
):
    plan = make_plan("100")
    promo = make_promo("SAVE20")
    invalidator = MagicMock()
    invalidator.invalidate_for.side_effect = RuntimeError("redis exploded")
    coordinator = RedemptionCoordinator(cache, invalidator, now=fixed_now)
    subscription = make_subscription(user_id, plan)

    record = coordinator.redeem(
        db, subscription_id=subscription.id, user_id=user_id, promo_code_id=promo.id
    )

    assert record.id is not None
    invalidator.invalidate_for.assert_called_once()


def test_redeem_rejects_discount_mismatch(
    db, coordinator, make_promo, make_plan, make_subscription, user_id
):
    plan = make_plan("100")
    promo = make_promo("SAVE20")
    promo_id = promo.id
    subscription = make_subscription(user_id, plan)

    with pytest.raises(PromoValidationError) as exc_info:
        coordinator.redeem(
            db,
            subscription_id=subscription.id,
            user_id=user_id,
            promo_code_id=promo_id,
            discount_amount=Decimal("25.00"),
        )

    assert exc_info.value.code == "PROMO_DISCOUNT_MISMATCH"
    db.expire_all()
    assert db.get(PromoCode, promo_id).usage_count == 0
    assert _active_redemptions(db, promo_id) == 0


def test_redeem_accepts_matching_discount(
    db, coordinator, make_promo, make_plan, make_subscription, user_id
):
    plan = make_plan("100")
    promo = make_promo("SAVE20")
    subscription = make_subscription(user_id, plan)

    record = coordinator.redeem(
        db,
        subscription_id=subscription.id,
        user_id=user_id,
        promo_code_id=promo.id,
        discount_amount=Decimal("20"),
    )

    assert record.discount_amount == Decimal("20.00")


def test_redeem_requires_own_subscription(
    db, coordinator, make_promo, make_plan, make_subscription, user_id
):
    plan = make_plan()
    promo = make_promo("SAVE20")
    someone_else = make_subscription(uuid.uuid4(), plan)

    with pytest.raises(PromoNotFoundError) as exc_info:
        coordinator.redeem(
            db, subscription_id=someone_else.id, user_id=user_id, promo_code_id=promo.id
        )

    assert exc_info.value.code == "PROMO_SUBSCRIPTION_NOT_FOUND"


def test_redeem_unknown_promo(db, coordinator, make_plan, make_subscription, user_id):
    plan = make_plan()
    subscription = make_subscription(user_id, plan)

    with pytest.raises(PromoNotFoundError) as exc_info:
        coordinator.redeem(
            db, subscription_id=subscription.id, user_id=user_id, promo_code_id=uuid.uuid4()
        )

    assert exc_info.value.message == "Promo code not found"


class _LostRaceStore(PromoCodeStore):
    def atomic_increment_usage(self, promo_code_id):
        return False


def test_lost_race_reports_usage_limit(
    db, cache, invalidator, make_promo, make_plan, make_subscription, user_id
):
    plan = make_plan()
    promo = make_promo("SAVE20", usage_limit=1)
    promo_id = promo.id
    subscription = make_subscription(user_id, plan)
    coordinator = RedemptionCoordinator(
        cache, invalidator, store_factory=_LostRaceStore, now=fixed_now
    )

    with pytest.raises(PromoValidationError) as exc_info:
        coordinator.redeem(
            db, subscription_id=subscription.id, user_id=user_id, promo_code_id=promo_id
        )

    assert exc_info.value.message == "Promo code has reached its maximum usage limit"
    assert _active_redemptions(db, promo_id) == 0


class _TimeoutStore(PromoCodeStore):
    def create_redemption_record(self, **kwargs):
        raise OperationalError("INSERT", {}, Exception("canceling statement due to statement timeout"))


def test_store_timeout_rolls_back_redemption(
    db, cache, invalidator, make_promo, make_plan, make_subscription, user_id
):
    plan = make_plan()
    promo = make_promo("SAVE20", usage_limit=5)
    promo_id = promo.id
    subscription = make_subscription(user_id, plan)
    coordinator = RedemptionCoordinator(
        cache, invalidator, store_factory=_TimeoutStore, now=fixed_now
    )

    with pytest.raises(TransientStoreError) as exc_info:
        coordinator.redeem(
            db, subscription_id=subscription.id, user_id=user_id, promo_code_id=promo_id
        )

    assert exc_info.value.retryable is True
    assert exc_info.value.http_code == 503
    db.expire_all()
    assert db.get(PromoCode, promo_id).usage_count == 0


def test_concurrent_redemptions_never_exceed_limit(
    db, session_factory, cache, invalidator, make_promo, make_plan, make_subscription
):
    """N+k параллельных погашений: успешных ровно N, usage_count == N."""
    limit, extra = 3, 4
    plan = make_plan("100")
    promo = make_promo("RACE", usage_limit=limit)
    promo_id = promo.id
    targets = [
        (subscription.id, subscription.user_id)
        for subscription in (
            make_subscription(uuid.uuid4(), plan) for _ in range(limit + extra)
        )
    ]
    coordinator = RedemptionCoordinator(cache, invalidator, now=fixed_now)
    barrier = threading.Barrier(len(targets))

    def attempt(target):
        subscription_id, user_id = target
        barrier.wait()
        for _ in range(100):
            session = session_factory()
            try:
                coordinator.redeem(
                    session,
                    subscription_id=subscription_id,
                    user_id=user_id,
                    promo_code_id=promo_id,
                )
                return "ok"
            except TransientStoreError:
                # sqlite "database is locked"; the caller retries
                time.sleep(0.01)
            except PromoValidationError as exc:
                return exc.code
            finally:
                session.close()
        return "gave up"

    with ThreadPoolExecutor(max_workers=len(targets)) as pool:
        outcomes = list(pool.map(attempt, targets))

    assert outcomes.count("ok") == limit
    assert outcomes.count("PROMO_USAGE_LIMIT_REACHED") == extra

    db.expire_all()
    assert db.get(PromoCode, promo_id).usage_count == limit
    assert _active_redemptions(db, promo_id) == limit
