from __future__ import annotations

import enum
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import relationship

from app.database.base import Base


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class ApplicableType(str, enum.Enum):
    ALL = "all"
    SPECIFIC_PLANS = "specific_plans"
    SPECIFIC_USERS = "specific_users"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint(
            "usage_limit IS NULL OR usage_count <= usage_limit",
            name="ck_promo_usage_within_limit",
        ),
    )

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    code = Column(String, nullable=False, unique=True, index=True)
    description = Column(Text, nullable=False)
    discount_type = Column(
        Enum(
            DiscountType,
            name="promo_discount_type",
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    discount_value = Column(Numeric(10, 2), nullable=False)
    max_discount_amount = Column(Numeric(10, 2), nullable=True)

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=True)

    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)
    is_first_time_only = Column(Boolean, nullable=False, default=False)
    applicable_to = Column(
        Enum(
            ApplicableType,
            name="promo_applicable_type",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ApplicableType.ALL,
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    applicable_plans = relationship(
        "PromoCodeApplicablePlan",
        back_populates="promo_code",
        cascade="all, delete-orphan",
    )
    applicable_users = relationship(
        "PromoCodeApplicableUser",
        back_populates="promo_code",
        cascade="all, delete-orphan",
    )
    redemptions = relationship(
        "SubscriptionPromoCode",
        back_populates="promo_code",
    )


class PromoCodeApplicablePlan(Base):
    __tablename__ = "promo_code_applicable_plans"
    __table_args__ = (
        UniqueConstraint("promo_code_id", "plan_id", name="uq_promo_plan"),
    )

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    promo_code_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("promo_codes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("subscription_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    promo_code = relationship("PromoCode", back_populates="applicable_plans")


class PromoCodeApplicableUser(Base):
    __tablename__ = "promo_code_applicable_users"
    __table_args__ = (
        UniqueConstraint("promo_code_id", "user_id", name="uq_promo_applicable_user"),
    )

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    promo_code_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("promo_codes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    promo_code = relationship("PromoCode", back_populates="applicable_users")


class SubscriptionPromoCode(Base):
    __tablename__ = "subscription_promo_codes"
    __table_args__ = (
        Index(
            "uq_subscription_promo_active_user",
            "promo_code_id",
            "user_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    subscription_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("subscriptions.id"),
        nullable=False,
        index=True,
    )
    promo_code_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("promo_codes.id"),
        nullable=False,
        index=True,
    )
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    applied_date = Column(Date, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    promo_code = relationship("PromoCode", back_populates="redemptions")
    subscription = relationship("Subscription")


__all__ = [
    "DiscountType",
    "ApplicableType",
    "PromoCode",
    "PromoCodeApplicablePlan",
    "PromoCodeApplicableUser",
    "SubscriptionPromoCode",
]
