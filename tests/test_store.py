from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from app.core.promocodes.errors import PromoValidationError
from app.core.promocodes.models import PromoCode, SubscriptionPromoCode
from app.core.promocodes.services import RedemptionCoordinator
from app.core.promocodes.store import PromoCodeStore, escape_like
from tests.conftest import NOW, fixed_now


def _usage_count(db, promo_id):
    db.expire_all()
    return db.get(PromoCode, promo_id).usage_count


def test_increment_stops_at_limit(db, make_promo):
    promo = make_promo("SAVE20", usage_limit=2, usage_count=2)
    promo_id = promo.id

    assert PromoCodeStore(db).atomic_increment_usage(promo_id) is False
    db.commit()

    assert _usage_count(db, promo_id) == 2


def test_increment_below_limit(db, make_promo):
    promo = make_promo("SAVE20", usage_limit=2, usage_count=1)
    promo_id = promo.id

    assert PromoCodeStore(db).atomic_increment_usage(promo_id) is True
    db.commit()

    assert _usage_count(db, promo_id) == 2


def test_increment_without_limit(db, make_promo):
    promo = make_promo("SAVE20", usage_count=41)
    promo_id = promo.id

    assert PromoCodeStore(db).atomic_increment_usage(promo_id) is True
    db.commit()

    assert _usage_count(db, promo_id) == 42


def _record(store, promo, subscription):
    return store.create_redemption_record(
        subscription_id=subscription.id,
        promo_code_id=promo.id,
        user_id=subscription.user_id,
        discount_amount=Decimal("10.00"),
        applied_date=NOW.date(),
    )


def test_second_active_redemption_hits_unique_index(
    db, make_promo, make_plan, make_subscription, user_id
):
    plan = make_plan()
    promo = make_promo("SAVE20")
    first = make_subscription(user_id, plan)
    second = make_subscription(user_id, plan)
    store = PromoCodeStore(db)

    _record(store, promo, first)
    db.commit()

    with pytest.raises(IntegrityError):
        _record(store, promo, second)
    db.rollback()

    assert db.query(SubscriptionPromoCode).count() == 1


def test_inactive_redemption_does_not_block(
    db, make_promo, make_plan, make_subscription, make_redemption, user_id
):
    plan = make_plan()
    promo = make_promo("SAVE20")
    first = make_subscription(user_id, plan)
    second = make_subscription(user_id, plan)
    earlier = make_redemption(promo, first)
    earlier.is_active = False
    db.commit()

    _record(PromoCodeStore(db), promo, second)
    db.commit()

    assert db.query(SubscriptionPromoCode).count() == 2


class _StaleUsageStore(PromoCodeStore):
    """Sees the per-user count from before a concurrent commit."""

    def count_usage_by_user_and_code(self, promo_code_id, user_id):
        return 0


def test_same_user_race_reports_already_used(
    db, cache, invalidator, make_promo, make_plan, make_subscription, make_redemption, user_id
):
    plan = make_plan("100")
    promo = make_promo("SAVE20", usage_limit=5)
    promo_id = promo.id
    make_redemption(promo, make_subscription(user_id, plan))
    second = make_subscription(user_id, plan)
    coordinator = RedemptionCoordinator(
        cache, invalidator, store_factory=_StaleUsageStore, now=fixed_now
    )

    with pytest.raises(PromoValidationError) as exc_info:
        coordinator.redeem(
            db, subscription_id=second.id, user_id=user_id, promo_code_id=promo_id
        )

    assert exc_info.value.code == "PROMO_ALREADY_USED"
    assert exc_info.value.retryable is False
    assert _usage_count(db, promo_id) == 0
    assert db.query(SubscriptionPromoCode).count() == 1


def test_escape_like():
    assert escape_like("50%_off\\") == "50\\%\\_off\\\\"
