from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic.config import ConfigDict

from app.core.promocodes.models import ApplicableType, DiscountType, PromoCode


PromoStatusFilter = Literal["active", "expired"]


class PromoCodePublic(BaseModel):
    id: uuid.UUID
    code: str
    description: str
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: Optional[Decimal] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    is_active: bool
    is_first_time_only: bool
    applicable_to: ApplicableType
    applicable_plan_ids: List[uuid.UUID] = Field(default_factory=list)
    applicable_user_ids: List[uuid.UUID] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, promo: PromoCode) -> "PromoCodePublic":
        out = cls.model_validate(promo)
        out.applicable_plan_ids = [row.plan_id for row in promo.applicable_plans]
        out.applicable_user_ids = [row.user_id for row in promo.applicable_users]
        return out


class ValidationResult(BaseModel):
    is_valid: bool
    message: str
    code: Optional[str] = None
    retryable: bool = False
    promo_code: Optional[PromoCodePublic] = None
    discount_amount: Optional[Decimal] = None

    @classmethod
    def ok(cls, promo_code: PromoCodePublic, message: str = "Promo code is valid") -> "ValidationResult":
        return cls(is_valid=True, message=message, promo_code=promo_code)

    @classmethod
    def fail(cls, message: str, code: Optional[str] = None, *, retryable: bool = False) -> "ValidationResult":
        return cls(is_valid=False, message=message, code=code, retryable=retryable)


class PromoCodeCreate(BaseModel):
    code: str
    description: str
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: Optional[Decimal] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    is_active: bool = True
    is_first_time_only: bool = False
    applicable_to: ApplicableType = ApplicableType.ALL
    applicable_plan_ids: List[uuid.UUID] = Field(default_factory=list)
    applicable_user_ids: List[uuid.UUID] = Field(default_factory=list)


class PromoCodeUpdate(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = None
    max_discount_amount: Optional[Decimal] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    is_active: Optional[bool] = None
    is_first_time_only: Optional[bool] = None
    applicable_to: Optional[ApplicableType] = None
    applicable_plan_ids: Optional[List[uuid.UUID]] = None
    applicable_user_ids: Optional[List[uuid.UUID]] = None


class PromoCodeListFilters(BaseModel):
    page: int = 1
    page_size: int = 10
    status: Optional[PromoStatusFilter] = None
    discount_type: Optional[DiscountType] = None
    search: str = ""


class PromoCodeListPage(BaseModel):
    items: List[PromoCodePublic]
    total_items: int
    total_pages: int
    current_page: int


class PromoCodeValidateRequest(BaseModel):
    plan_id: uuid.UUID
    code: Optional[str] = None
    promo_code_id: Optional[uuid.UUID] = None

    @model_validator(mode="after")
    def _require_code_or_id(self) -> "PromoCodeValidateRequest":
        if not self.code and self.promo_code_id is None:
            raise ValueError("Either code or promo_code_id is required")
        return self


class PromoCodeRedeemRequest(BaseModel):
    subscription_id: uuid.UUID
    promo_code_id: uuid.UUID
    discount_amount: Optional[Decimal] = None


class RedemptionPublic(BaseModel):
    id: uuid.UUID
    subscription_id: uuid.UUID
    promo_code_id: uuid.UUID
    user_id: uuid.UUID
    discount_amount: Decimal
    applied_date: date
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


__all__ = [
    "PromoStatusFilter",
    "PromoCodePublic",
    "ValidationResult",
    "PromoCodeCreate",
    "PromoCodeUpdate",
    "PromoCodeListFilters",
    "PromoCodeListPage",
    "PromoCodeValidateRequest",
    "PromoCodeRedeemRequest",
    "RedemptionPublic",
]
