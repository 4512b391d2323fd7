from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from app.core.config import settings


ACCESS_TOKEN_TYPE = "access"
PAYMENT_PAGE_TOKEN_TYPE = "payment_page"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _encode(payload: Dict[str, Any]) -> str:
    return jwt.encode(
        payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm
    )


def create_access_token(
    *,
    user_id: uuid.UUID,
    expires_delta: Optional[timedelta] = None,
) -> str:
    now = _utc_now()
    expire = now + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=settings.access_token_expire_minutes)
    )
    payload: Dict[str, Any] = {
        "sub": str(user_id),
        "type": ACCESS_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return _encode(payload)


def create_payment_page_token(
    *,
    user_id: uuid.UUID,
    order_id: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Short-lived bearer token for the hosted payment page.

    The page may be opened in a browser outside the app session, so the
    token carries its own subject and is scoped to a single order.
    """
    now = _utc_now()
    expire = now + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=settings.payment_page_token_expire_minutes)
    )
    payload: Dict[str, Any] = {
        "sub": str(user_id),
        "type": PAYMENT_PAGE_TOKEN_TYPE,
        "oid": order_id,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return _encode(payload)


def decode_token(token: str) -> Dict[str, Any]:
    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
    )


__all__ = [
    "ACCESS_TOKEN_TYPE",
    "PAYMENT_PAGE_TOKEN_TYPE",
    "create_access_token",
    "create_payment_page_token",
    "decode_token",
]
