from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.core.admin.api.v1.routes_admin import router as admin_router
from app.core.config import Settings, settings
from app.core.promocodes.api.v1.routes_promocodes import (
    router as promocodes_router,
)
from app.core.promocodes.cache import PromoCache
from app.core.promocodes.invalidation import CacheInvalidator
from app.core.promocodes.services import RedemptionCoordinator
from app.database.session import SessionLocal
from app.response import (
    StandardResponse,
    make_error_from_api_error,
    make_error_response,
)
from app.response.response import APIError
from app.utils.redis_client import create_redis_client


logger = logging.getLogger(__name__)


def build_redemption_coordinator(config: Settings) -> RedemptionCoordinator:
    redis = create_redis_client(
        config.promo_cache_url,
        timeout_seconds=config.promo_cache_timeout_seconds,
    )
    cache = PromoCache(redis)
    invalidator = CacheInvalidator(
        cache,
        batch_size=config.promo_invalidation_batch_size,
        single_batch_size=config.promo_single_invalidation_batch_size,
        pattern_delay_seconds=config.promo_invalidation_pattern_delay_ms / 1000,
    )
    return RedemptionCoordinator(
        cache,
        invalidator,
        validation_ttl_seconds=config.promo_validation_ttl_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # a coordinator installed before startup is kept
    if getattr(app.state, "redemption_coordinator", None) is None:
        app.state.redemption_coordinator = build_redemption_coordinator(settings)
    logger.info("promo engine ready")
    yield


app = FastAPI(lifespan=lifespan)
app.state.redemption_coordinator = None


@app.exception_handler(APIError)
async def api_error_handler(
    request: Request,
    exc: APIError,
) -> JSONResponse:
    response: StandardResponse = make_error_from_api_error(exc)
    return JSONResponse(
        status_code=exc.http_code,
        content=jsonable_encoder(response),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    response: StandardResponse = make_error_response(
        code="REQUEST_VALIDATION_ERROR",
        http_code=422,
        message="Request payload is invalid",
        fields=jsonable_encoder(exc.errors()),
    )
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(response),
    )


app.title = "Promo Engine API"
app.version = "1.0.0"


@app.get("/health", include_in_schema=False)
def health(request: Request) -> dict:
    db_ok = False
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except Exception as exc:
        logger.warning("health: database check failed: %r", exc)
    finally:
        db.close()

    coordinator = request.app.state.redemption_coordinator
    cache_ok = coordinator is not None and coordinator.cache.ping()

    return {
        "api": True,
        "database": db_ok,
        "cache": cache_ok,
    }


app.include_router(promocodes_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


__all__ = ["app", "build_redemption_coordinator"]
