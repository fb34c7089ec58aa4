from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


class APIError(Exception):
    """Error that maps one-to-one onto the JSON error envelope."""

    def __init__(
        self,
        code: str,
        http_code: int,
        message: str,
        *,
        details: Optional[Any] = None,
        fields: Optional[Any] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.http_code = http_code
        self.message = message
        self.details = details
        self.fields = fields
        self.retryable = retryable

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def from_counts(cls, *, page: int, page_size: int, total: int) -> "Pagination":
        total_pages = math.ceil(total / page_size) if page_size else 1
        return cls(
            page=page,
            page_size=page_size,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class Meta(BaseModel):
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    pagination: Optional[Pagination] = None


class ErrorPayload(BaseModel):
    code: str
    http_code: int
    message: str
    # client may repeat the same request unchanged
    retryable: bool = False
    details: Optional[Any] = None
    fields: Optional[Any] = None

    @classmethod
    def from_api_error(cls, exc: APIError) -> "ErrorPayload":
        return cls(
            code=exc.code,
            http_code=exc.http_code,
            message=exc.message,
            retryable=exc.retryable,
            details=exc.details,
            fields=exc.fields,
        )


class StandardResponse(BaseModel):
    ok: bool
    result: Optional[Any] = None
    error: Optional[ErrorPayload] = None
    meta: Meta = Field(default_factory=Meta)


def _meta(
    request_id: Optional[str],
    pagination: Optional[Pagination] = None,
) -> Meta:
    return Meta(
        request_id=request_id or str(uuid.uuid4()),
        pagination=pagination,
    )


def make_success_response(
    result: Any,
    *,
    pagination: Optional[Pagination] = None,
    request_id: Optional[str] = None,
) -> StandardResponse:
    return StandardResponse(
        ok=True,
        result=result,
        error=None,
        meta=_meta(request_id, pagination),
    )


def make_rejection_response(
    result: Any,
    *,
    code: str,
    message: str,
    retryable: bool = False,
    request_id: Optional[str] = None,
) -> StandardResponse:
    """A handled "no" from the business layer.

    Sent with HTTP 200: the request itself succeeded, ``result`` carries
    the full answer and ``error`` explains the refusal.
    """
    return StandardResponse(
        ok=False,
        result=result,
        error=ErrorPayload(
            code=code,
            http_code=400,
            message=message,
            retryable=retryable,
        ),
        meta=_meta(request_id),
    )


def make_error_response(
    code: str,
    http_code: int,
    message: str,
    *,
    retryable: bool = False,
    details: Optional[Any] = None,
    fields: Optional[Any] = None,
    request_id: Optional[str] = None,
) -> StandardResponse:
    error = ErrorPayload(
        code=code,
        http_code=http_code,
        message=message,
        retryable=retryable,
        details=details,
        fields=fields,
    )
    return StandardResponse(
        ok=False,
        result=None,
        error=error,
        meta=_meta(request_id),
    )


def make_error_from_api_error(
    exc: APIError,
    *,
    request_id: Optional[str] = None,
) -> StandardResponse:
    return StandardResponse(
        ok=False,
        result=None,
        error=ErrorPayload.from_api_error(exc),
        meta=_meta(request_id),
    )


__all__ = [
    "APIError",
    "Pagination",
    "Meta",
    "ErrorPayload",
    "StandardResponse",
    "make_success_response",
    "make_rejection_response",
    "make_error_response",
    "make_error_from_api_error",
]
