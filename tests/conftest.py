import fnmatch
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.orm import sessionmaker

# Environment must be in place before app.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ADMIN_SECRET_KEY", "test-admin-secret")

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.database.base import Base
from app.database.session import create_db_engine
from app.core.promocodes.cache import PromoCache
from app.core.promocodes.invalidation import CacheInvalidator
from app.core.promocodes.models import (
    ApplicableType,
    DiscountType,
    PromoCode,
    PromoCodeApplicablePlan,
    PromoCodeApplicableUser,
    SubscriptionPromoCode,
)
from app.core.promocodes.services import RedemptionCoordinator
from app.core.subscriptions.models import Subscription, SubscriptionPlan


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def fixed_now() -> datetime:
    return NOW


class FakeRedis:
    """In-memory stand-in for the few Redis commands the promo cache uses."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.fail = False
        self.failing_patterns = set()
        self.scanned = []

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis is down")

    def get(self, key):
        self._check()
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def scan_iter(self, match="*", count=None):
        self._check()
        self.scanned.append(match)
        if match in self.failing_patterns:
            raise RedisConnectionError(f"scan failed for {match}")
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    def ping(self):
        self._check()
        return True


@pytest.fixture
def engine(tmp_path):
    db_engine = create_db_engine(f"sqlite+pysqlite:///{tmp_path / 'promo.db'}")
    Base.metadata.create_all(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return PromoCache(fake_redis)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def invalidator(cache, sleeps):
    return CacheInvalidator(cache, sleep=sleeps.append)


@pytest.fixture
def coordinator(cache, invalidator):
    return RedemptionCoordinator(cache, invalidator, now=fixed_now)


@pytest.fixture
def make_plan(db):
    def _make_plan(price="100.00", name="Pro"):
        plan = SubscriptionPlan(name=name, price=Decimal(price), currency="INR")
        db.add(plan)
        db.commit()
        return plan

    return _make_plan


@pytest.fixture
def make_subscription(db):
    def _make_subscription(user_id, plan):
        subscription = Subscription(user_id=user_id, plan_id=plan.id, status="pending")
        db.add(subscription)
        db.commit()
        return subscription

    return _make_subscription


@pytest.fixture
def make_promo(db):
    def _make_promo(code="SAVE20", **overrides):
        plan_ids = overrides.pop("plan_ids", [])
        user_ids = overrides.pop("user_ids", [])
        fields = dict(
            code=code,
            description=f"{code} promo",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("20"),
            max_discount_amount=None,
            start_date=NOW - timedelta(days=1),
            end_date=NOW + timedelta(days=30),
            usage_limit=None,
            usage_count=0,
            is_active=True,
            is_first_time_only=False,
            applicable_to=ApplicableType.ALL,
        )
        fields.update(overrides)
        promo = PromoCode(**fields)
        promo.applicable_plans = [PromoCodeApplicablePlan(plan_id=pid) for pid in plan_ids]
        promo.applicable_users = [PromoCodeApplicableUser(user_id=uid) for uid in user_ids]
        db.add(promo)
        db.commit()
        return promo

    return _make_promo


@pytest.fixture
def make_redemption(db):
    def _make_redemption(promo, subscription, amount="10.00"):
        record = SubscriptionPromoCode(
            subscription_id=subscription.id,
            promo_code_id=promo.id,
            user_id=subscription.user_id,
            discount_amount=Decimal(amount),
            applied_date=NOW.date(),
            is_active=True,
        )
        db.add(record)
        db.commit()
        return record

    return _make_redemption


@pytest.fixture
def user_id():
    return uuid.uuid4()
