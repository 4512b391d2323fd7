from __future__ import annotations

import uuid
from typing import Generator

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from app.core.auth.models import User
from app.core.security import ACCESS_TOKEN_TYPE, decode_token
from app.database.session import SessionLocal
from app.response.response import APIError


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    authorization: str | None = Header(default=None, alias="Authorization"),
    db: Session = Depends(get_db),
) -> User:
    if not authorization:
        raise APIError(
            code="AUTH_NOT_AUTHENTICATED",
            http_code=401,
            message="Authorization header is required",
        )

    try:
        scheme, token = authorization.split(" ", 1)
    except ValueError:
        raise APIError(
            code="AUTH_INVALID_AUTH_HEADER",
            http_code=401,
            message="Malformed Authorization header",
        )

    if scheme.lower() != "bearer":
        raise APIError(
            code="AUTH_INVALID_AUTH_SCHEME",
            http_code=401,
            message="Bearer authorization scheme expected",
        )

    try:
        payload = decode_token(token)
    except Exception:
        raise APIError(
            code="AUTH_INVALID_TOKEN",
            http_code=401,
            message="Invalid or expired access token",
        )

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise APIError(
            code="AUTH_INVALID_TOKEN_TYPE",
            http_code=401,
            message="Wrong token type",
        )

    try:
        user_id = uuid.UUID(payload.get("sub"))
    except Exception:
        raise APIError(
            code="AUTH_INVALID_TOKEN_PAYLOAD",
            http_code=401,
            message="Malformed token payload",
        )

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise APIError(
            code="AUTH_USER_NOT_FOUND",
            http_code=401,
            message="User not found",
        )

    if not user.is_active:
        raise APIError(
            code="AUTH_USER_INACTIVE",
            http_code=403,
            message="User is deactivated",
        )

    return user


def get_current_superuser(user: User = Depends(get_current_user)) -> User:
    if not user.is_superuser:
        raise APIError(
            code="AUTH_FORBIDDEN",
            http_code=403,
            message="Administrator access required",
        )
    return user


__all__ = ["get_db", "get_current_user", "get_current_superuser"]
