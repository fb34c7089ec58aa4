from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from app.core.promocodes.models import (
    DiscountType,
    PromoCode,
    PromoCodeApplicablePlan,
    PromoCodeApplicableUser,
    SubscriptionPromoCode,
)
from app.core.promocodes.schemas import PromoCodeListFilters
from app.core.subscriptions.models import Subscription, SubscriptionPlan


def normalize_code(code: str) -> str:
    return code.strip().upper()


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PromoCodeStore:
    """All promo-code queries, bound to one caller-owned session.

    The store never commits; the transaction boundary belongs to the caller.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _promo_query(self):
        return self.db.query(PromoCode).options(
            selectinload(PromoCode.applicable_plans),
            selectinload(PromoCode.applicable_users),
        )

    def find_by_id(
        self,
        promo_code_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> Optional[PromoCode]:
        query = self._promo_query().filter(PromoCode.id == promo_code_id)
        if for_update:
            query = query.with_for_update(of=PromoCode)
        return query.first()

    def find_by_code(self, code: str) -> Optional[PromoCode]:
        return (
            self._promo_query()
            .filter(PromoCode.code == normalize_code(code))
            .first()
        )

    def count_usage_by_user_and_code(
        self,
        promo_code_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> int:
        return (
            self.db.query(func.count(SubscriptionPromoCode.id))
            .join(
                Subscription,
                Subscription.id == SubscriptionPromoCode.subscription_id,
            )
            .filter(
                SubscriptionPromoCode.promo_code_id == promo_code_id,
                SubscriptionPromoCode.is_active.is_(True),
                Subscription.user_id == user_id,
            )
            .scalar()
            or 0
        )

    def count_prior_subscriptions(
        self,
        user_id: uuid.UUID,
        *,
        exclude_subscription_id: Optional[uuid.UUID] = None,
    ) -> int:
        query = self.db.query(func.count(Subscription.id)).filter(
            Subscription.user_id == user_id
        )
        if exclude_subscription_id is not None:
            query = query.filter(Subscription.id != exclude_subscription_id)
        return query.scalar() or 0

    def atomic_increment_usage(self, promo_code_id: uuid.UUID) -> bool:
        """Consume one unit of capacity, or report that none is left.

        Check and increment are one conditional UPDATE, so concurrent
        redemptions across processes can never push usage_count past
        usage_limit.
        """
        updated = (
            self.db.query(PromoCode)
            .filter(
                PromoCode.id == promo_code_id,
                or_(
                    PromoCode.usage_limit.is_(None),
                    PromoCode.usage_count < PromoCode.usage_limit,
                ),
            )
            .update(
                {PromoCode.usage_count: PromoCode.usage_count + 1},
                synchronize_session=False,
            )
        )
        return updated == 1

    def create_redemption_record(
        self,
        *,
        subscription_id: uuid.UUID,
        promo_code_id: uuid.UUID,
        user_id: uuid.UUID,
        discount_amount: Decimal,
        applied_date: date,
    ) -> SubscriptionPromoCode:
        record = SubscriptionPromoCode(
            subscription_id=subscription_id,
            promo_code_id=promo_code_id,
            user_id=user_id,
            discount_amount=discount_amount,
            applied_date=applied_date,
            is_active=True,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def find_subscription(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id)
            .first()
        )

    def get_plan_price(self, plan_id: uuid.UUID) -> Optional[Decimal]:
        return (
            self.db.query(SubscriptionPlan.price)
            .filter(SubscriptionPlan.id == plan_id)
            .scalar()
        )

    # admin-side helpers

    def code_exists(
        self,
        code: str,
        *,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> bool:
        query = self.db.query(PromoCode.id).filter(
            PromoCode.code == normalize_code(code)
        )
        if exclude_id is not None:
            query = query.filter(PromoCode.id != exclude_id)
        return query.first() is not None

    def existing_plan_ids(self, plan_ids: Iterable[uuid.UUID]) -> List[uuid.UUID]:
        ids = list(plan_ids)
        if not ids:
            return []
        rows = (
            self.db.query(SubscriptionPlan.id)
            .filter(SubscriptionPlan.id.in_(ids))
            .all()
        )
        return [row[0] for row in rows]

    def replace_applicable_plans(
        self,
        promo: PromoCode,
        plan_ids: Iterable[uuid.UUID],
    ) -> None:
        promo.applicable_plans = [
            PromoCodeApplicablePlan(plan_id=plan_id)
            for plan_id in dict.fromkeys(plan_ids)
        ]

    def replace_applicable_users(
        self,
        promo: PromoCode,
        user_ids: Iterable[uuid.UUID],
    ) -> None:
        promo.applicable_users = [
            PromoCodeApplicableUser(user_id=user_id)
            for user_id in dict.fromkeys(user_ids)
        ]

    def list_page(
        self,
        filters: PromoCodeListFilters,
        *,
        now: datetime,
    ) -> Tuple[List[PromoCode], int]:
        query = self._promo_query()

        if filters.status == "active":
            query = query.filter(PromoCode.is_active.is_(True))
        elif filters.status == "expired":
            query = query.filter(
                or_(
                    PromoCode.is_active.is_(False),
                    PromoCode.end_date < now,
                )
            )

        if filters.discount_type is not None:
            query = query.filter(
                PromoCode.discount_type == DiscountType(filters.discount_type)
            )

        if filters.search:
            pattern = f"%{escape_like(filters.search.lower())}%"
            query = query.filter(
                or_(
                    func.lower(PromoCode.code).like(pattern, escape="\\"),
                    func.lower(PromoCode.description).like(pattern, escape="\\"),
                )
            )

        total = query.count()
        items = (
            query.order_by(PromoCode.created_at.desc(), PromoCode.code.asc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        return items, total


__all__ = ["PromoCodeStore", "normalize_code"]
