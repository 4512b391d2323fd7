from __future__ import annotations

import socket

from celery import Celery
from loguru import logger
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from app.core.config import settings


FALLBACK_BROKER_URL = "redis://localhost:6379/0"


def _choose_broker_url() -> str:
    """
    Try the configured broker first (usually redis://redis:6379/0 in
    docker), then a local Redis. If neither answers, keep the configured
    URL and let Celery retry the connection itself.
    """
    primary = settings.celery_broker_url

    for url in (primary, FALLBACK_BROKER_URL):
        try:
            client = Redis.from_url(url, socket_connect_timeout=1)
            client.ping()
            return url
        except (RedisConnectionError, RedisTimeoutError, socket.gaierror):
            continue

    logger.warning("No Redis broker reachable, using configured url", url=primary)
    return primary


broker_url = _choose_broker_url()

celery_app = Celery(
    "unextdoor_bg_worker",
    broker=broker_url,
)

celery_app.conf.beat_schedule = {
    "recover-pending-payments": {
        "task": "billing.recover_pending_payments",
        "schedule": 5 * 60.0,
    },
    "apply-scheduled-downgrades": {
        "task": "billing.apply_scheduled_downgrades",
        "schedule": 60 * 60.0,
    },
}
celery_app.conf.timezone = "UTC"

celery_app.autodiscover_tasks(
    packages=["unextdoor_bg_worker"],
)


__all__ = ["celery_app"]
