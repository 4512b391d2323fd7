from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from app.core.billing.services import build_billing_service
from app.database.session import SessionLocal
from unextdoor_bg_worker.celery_app import celery_app


@celery_app.task(name="billing.recover_pending_payments")
def recover_pending_payments(batch_size: int | None = None) -> Dict[str, Any]:
    """
    Periodic sweep over payments stuck in `pending`.

    Each transaction commits on its own inside the sweep, so the task
    itself never rolls back work that already succeeded.
    """
    logger.info("Running recover_pending_payments task")
    service = build_billing_service()
    db = SessionLocal()
    try:
        result = service.sweep(db, batch_size=batch_size)
    except Exception as exc:
        logger.opt(exception=exc).error("Recovery sweep aborted")
        db.rollback()
        raise
    finally:
        db.close()

    logger.info(
        "Recovery sweep done",
        checked=result.checked,
        recovered=result.recovered,
        failed=result.failed,
        skipped=result.skipped,
        errors=len(result.errors),
    )
    return result.as_dict()


@celery_app.task(name="billing.apply_scheduled_downgrades")
def apply_scheduled_downgrades(batch_size: int | None = None) -> Dict[str, Any]:
    logger.info("Running apply_scheduled_downgrades task")
    service = build_billing_service()
    db = SessionLocal()
    try:
        result = service.apply_scheduled_downgrades(db, batch_size=batch_size)
    except Exception as exc:
        logger.opt(exception=exc).error("Scheduled downgrade run aborted")
        db.rollback()
        raise
    finally:
        db.close()

    logger.info(
        "Scheduled downgrades done",
        checked=result["checked"],
        applied=result["applied"],
        expired=result["expired"],
        errors=len(result["errors"]),
    )
    return result


__all__ = ["recover_pending_payments", "apply_scheduled_downgrades"]
