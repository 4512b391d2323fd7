from __future__ import annotations

import socket
from typing import Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from app.core.config import settings


FALLBACK_REDIS_URL = "redis://localhost:6379/0"

_redis_client: Optional[Redis] = None


def _connect(url: str) -> Redis:
    client = Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=1,
        socket_timeout=1,
    )
    client.ping()
    return client


def _create_redis_client() -> Redis:
    """
    Connects to the broker Redis, falling back to a local instance when
    the configured host does not resolve (uvicorn started outside docker).
    The cache is optional: callers catch the error if neither is up.
    """
    try:
        return _connect(settings.celery_broker_url)
    except (RedisConnectionError, RedisTimeoutError, socket.gaierror):
        pass

    return _connect(FALLBACK_REDIS_URL)


def get_redis() -> Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = _create_redis_client()
    return _redis_client


__all__ = ["get_redis"]
