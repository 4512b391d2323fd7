from .response import (
    REQUEST_ID_HEADER,
    APIError,
    ErrorPayload,
    Meta,
    Pagination,
    StandardResponse,
    make_error_response,
    make_success_response,
)

__all__ = [
    "REQUEST_ID_HEADER",
    "APIError",
    "Pagination",
    "Meta",
    "ErrorPayload",
    "StandardResponse",
    "make_success_response",
    "make_error_response",
]
