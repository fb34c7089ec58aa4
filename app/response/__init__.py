from .response import (
    APIError,
    ErrorPayload,
    Meta,
    Pagination,
    StandardResponse,
    make_error_from_api_error,
    make_error_response,
    make_rejection_response,
    make_success_response,
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
