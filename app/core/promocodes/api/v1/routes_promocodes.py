from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.dependencies import (
    get_current_user_id,
    get_db,
    get_redemption_coordinator,
)
from app.core.promocodes.schemas import (
    PromoCodeRedeemRequest,
    PromoCodeValidateRequest,
    RedemptionPublic,
)
from app.core.promocodes.services import RedemptionCoordinator
from app.response import (
    StandardResponse,
    make_rejection_response,
    make_success_response,
)


router = APIRouter(prefix="/promocodes", tags=["promocodes"])


@router.post(
    "/validate",
    response_model=StandardResponse,
    summary="Validate a promo code for a plan",
)
def validate_promocode(
    payload: PromoCodeValidateRequest,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
    coordinator: RedemptionCoordinator = Depends(get_redemption_coordinator),
) -> StandardResponse:
    """
    Always answers 200: an invalid code is a normal outcome, and the
    reason is in ``error.message`` and ``result.message``.
    """
    result = coordinator.validate_and_cache(
        db,
        user_id=user_id,
        plan_id=payload.plan_id,
        promo_code_id=payload.promo_code_id,
        code=payload.code,
    )
    if result.is_valid:
        return make_success_response(result=result)
    return make_rejection_response(
        result,
        code=result.code or "PROMO_INVALID",
        message=result.message,
        retryable=result.retryable,
    )


@router.post(
    "/redeem",
    response_model=StandardResponse,
    summary="Apply a promo code to a subscription",
)
def redeem_promocode(
    payload: PromoCodeRedeemRequest,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
    coordinator: RedemptionCoordinator = Depends(get_redemption_coordinator),
) -> StandardResponse:
    record = coordinator.redeem(
        db,
        subscription_id=payload.subscription_id,
        user_id=user_id,
        promo_code_id=payload.promo_code_id,
        discount_amount=payload.discount_amount,
    )
    return make_success_response(result=RedemptionPublic.model_validate(record))


__all__ = ["router"]
