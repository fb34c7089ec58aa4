from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.dependencies import get_db, get_promo_cache, require_admin
from app.core.promocodes.cache import PromoCache
from app.core.promocodes.invalidation import PromoMutation
from app.core.promocodes.models import DiscountType
from app.core.promocodes.schemas import (
    PromoCodeCreate,
    PromoCodeListFilters,
    PromoCodePublic,
    PromoCodeUpdate,
    PromoStatusFilter,
)
from app.core.promocodes.services import (
    create_promo_code,
    deactivate_promo_code,
    enqueue_cache_invalidation,
    get_promo_code_cached,
    get_promo_code_or_404,
    list_promo_codes_cached,
    update_promo_code,
)
from app.response import Pagination, StandardResponse, make_success_response


router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


@router.get(
    "/promocodes",
    response_model=StandardResponse,
)
def list_promocodes(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    status: Optional[PromoStatusFilter] = Query(None),
    discount_type: Optional[DiscountType] = Query(None),
    search: str = Query(""),
    db: Session = Depends(get_db),
    cache: PromoCache = Depends(get_promo_cache),
) -> StandardResponse:
    filters = PromoCodeListFilters(
        page=page,
        page_size=page_size,
        status=status,
        discount_type=discount_type,
        search=search.strip(),
    )
    result = list_promo_codes_cached(
        db,
        cache,
        filters,
        ttl_seconds=settings.promo_listing_ttl_seconds,
    )

    pagination = Pagination.from_counts(
        page=result.current_page,
        page_size=page_size,
        total=result.total_items,
    )
    return make_success_response(
        result={"items": result.items},
        pagination=pagination,
    )


@router.get(
    "/promocodes/{promo_id}",
    response_model=StandardResponse,
)
def get_promocode(
    promo_id: uuid.UUID,
    db: Session = Depends(get_db),
    cache: PromoCache = Depends(get_promo_cache),
) -> StandardResponse:
    promo_out = get_promo_code_cached(
        db,
        cache,
        promo_id,
        ttl_seconds=settings.promo_detail_ttl_seconds,
    )
    return make_success_response(result=promo_out)


@router.post(
    "/promocodes",
    response_model=StandardResponse,
)
def create_promocode(
    payload: PromoCodeCreate,
    db: Session = Depends(get_db),
) -> StandardResponse:
    promo = create_promo_code(db, data=payload)
    db.commit()
    db.refresh(promo)
    enqueue_cache_invalidation(PromoMutation.CREATE)
    return make_success_response(result=PromoCodePublic.from_model(promo))


@router.put(
    "/promocodes/{promo_id}",
    response_model=StandardResponse,
)
def update_promocode(
    promo_id: uuid.UUID,
    payload: PromoCodeUpdate,
    db: Session = Depends(get_db),
) -> StandardResponse:
    promo = get_promo_code_or_404(db, promo_id)
    promo = update_promo_code(db, promo=promo, data=payload)
    db.commit()
    db.refresh(promo)
    enqueue_cache_invalidation(PromoMutation.UPDATE, promo.id)
    return make_success_response(result=PromoCodePublic.from_model(promo))


@router.delete(
    "/promocodes/{promo_id}",
    response_model=StandardResponse,
)
def deactivate_promocode(
    promo_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> StandardResponse:
    promo = get_promo_code_or_404(db, promo_id)
    deactivate_promo_code(db, promo=promo)
    db.commit()
    enqueue_cache_invalidation(PromoMutation.DELETE, promo_id)
    return make_success_response(result={"id": str(promo_id), "is_active": False})


__all__ = ["router"]
