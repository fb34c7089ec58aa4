from __future__ import annotations

from typing import Any, Optional

from app.response.response import APIError


class PromoCodeError(APIError):
    """Base class for every promo-code failure surfaced to callers."""


class PromoValidationError(PromoCodeError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "PROMO_INVALID_DATA",
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(
            code=code,
            http_code=400,
            message=message,
            details=details,
        )


class PromoNotFoundError(PromoCodeError):
    def __init__(
        self,
        message: str = "Promo code not found",
        *,
        code: str = "PROMO_NOT_FOUND",
    ) -> None:
        super().__init__(code=code, http_code=404, message=message)


class PromoConflictError(PromoCodeError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "PROMO_DUPLICATE_CODE",
    ) -> None:
        super().__init__(code=code, http_code=409, message=message)


class TransientStoreError(PromoCodeError):
    """Database or cache timeout; the whole operation may be retried."""

    def __init__(
        self,
        message: str = "Promo code service is temporarily unavailable",
        *,
        code: str = "PROMO_STORE_UNAVAILABLE",
    ) -> None:
        super().__init__(
            code=code,
            http_code=503,
            message=message,
            retryable=True,
        )


class InvariantViolation(PromoCodeError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="PROMO_INVARIANT_VIOLATION",
            http_code=500,
            message=message,
        )


__all__ = [
    "PromoCodeError",
    "PromoValidationError",
    "PromoNotFoundError",
    "PromoConflictError",
    "TransientStoreError",
    "InvariantViolation",
]
