from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


REQUEST_ID_HEADER = "X-Request-ID"


def _new_request_id() -> str:
    return str(uuid.uuid4())


class APIError(Exception):
    """
    Base for every error that reaches a client as the standard envelope.

    `details` is client-visible; anything meant only for the server log
    belongs on the subclass instead.
    """

    def __init__(
        self,
        code: str,
        http_code: int,
        message: str,
        *,
        details: Optional[Any] = None,
        fields: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.http_code = http_code
        self.message = message
        self.details = details
        self.fields = fields

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, http_code={self.http_code})"

    def to_response(self, *, request_id: Optional[str] = None) -> "StandardResponse":
        return make_error_response(
            self.code,
            self.http_code,
            self.message,
            details=self.details,
            fields=self.fields,
            request_id=request_id,
        )


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, *, page: int, page_size: int, total: int) -> "Pagination":
        total_pages = (total + page_size - 1) // page_size if page_size else 0
        return cls(
            page=page,
            page_size=page_size,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class Meta(BaseModel):
    request_id: str = Field(default_factory=_new_request_id)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    pagination: Optional[Pagination] = None


class ErrorPayload(BaseModel):
    code: str
    http_code: int
    message: str
    details: Optional[Any] = None
    fields: Optional[Any] = None


class StandardResponse(BaseModel):
    ok: bool
    result: Optional[Any] = None
    error: Optional[ErrorPayload] = None
    meta: Meta = Field(default_factory=Meta)


def make_success_response(
    result: Any,
    *,
    pagination: Optional[Pagination] = None,
    request_id: Optional[str] = None,
) -> StandardResponse:
    return StandardResponse(
        ok=True,
        result=result,
        meta=Meta(request_id=request_id or _new_request_id(), pagination=pagination),
    )


def make_error_response(
    code: str,
    http_code: int,
    message: str,
    *,
    details: Optional[Any] = None,
    fields: Optional[Any] = None,
    request_id: Optional[str] = None,
) -> StandardResponse:
    return StandardResponse(
        ok=False,
        error=ErrorPayload(
            code=code,
            http_code=http_code,
            message=message,
            details=details,
            fields=fields,
        ),
        meta=Meta(request_id=request_id or _new_request_id()),
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
