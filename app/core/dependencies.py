from __future__ import annotations

import uuid
from typing import Generator

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.promocodes.cache import PromoCache
from app.core.promocodes.services import RedemptionCoordinator
from app.database.session import SessionLocal
from app.response.response import APIError


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_redemption_coordinator(request: Request) -> RedemptionCoordinator:
    return request.app.state.redemption_coordinator


def get_promo_cache(
    coordinator: RedemptionCoordinator = Depends(get_redemption_coordinator),
) -> PromoCache:
    return coordinator.cache


def get_current_user_id(
    user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> uuid.UUID:
    """Caller identity, set by the auth gateway in front of this service."""
    if not user_id:
        raise APIError(
            code="AUTH_NOT_AUTHENTICATED",
            http_code=401,
            message="User authentication required",
        )
    try:
        return uuid.UUID(user_id)
    except ValueError:
        raise APIError(
            code="AUTH_INVALID_USER_ID",
            http_code=401,
            message="Invalid X-User-Id header",
        )


def require_admin(
    admin_secret: str | None = Header(default=None, alias="X-Admin-Secret"),
) -> None:
    if not settings.admin_secret_key or admin_secret != settings.admin_secret_key:
        raise APIError(
            code="ADMIN_FORBIDDEN",
            http_code=403,
            message="Access denied",
        )


__all__ = [
    "get_db",
    "get_redemption_coordinator",
    "get_promo_cache",
    "get_current_user_id",
    "require_admin",
]
