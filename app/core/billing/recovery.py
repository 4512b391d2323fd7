from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy.orm import Session

from app.core.auth.models import User
from app.core.billing.activation import ActivationEngine, find_order, record_payment
from app.core.billing.errors import GatewayError, TransactionNotFound
from app.core.billing.gateway import PaymentGateway
from app.core.billing.lifecycle import get_live_subscription
from app.core.billing.models import PaymentOrder, PaymentTransaction, Subscription


AUTOMATIC_RECOVERY = "automatic"
MANUAL_RECOVERY = "manual"

UNVERIFIABLE_AFTER = timedelta(hours=24)
FAILED_ORDER_STATUSES = ("failed", "cancelled")


@dataclass
class SweepResult:
    checked: int = 0
    recovered: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "recovered": self.recovered,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass
class ManualRecovery:
    status: str
    message: str
    subscription: Optional[Subscription] = None


def _captured_payment(payments: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for payment in payments:
        if payment.get("status") == "captured" and payment.get("id"):
            return payment
    return None


def _mark_failed(
    db: Session,
    transaction: PaymentTransaction,
    *,
    reason: str,
    now: datetime,
    recovery_method: str,
) -> None:
    transaction.status = "failed"
    transaction.failure_reason = reason
    transaction.recovery_method = recovery_method
    transaction.recovered_at = now
    db.add(transaction)

    if transaction.payment_order_id is not None:
        order = db.get(PaymentOrder, transaction.payment_order_id)
        if order is not None and order.status in ("created", "processing"):
            order.status = "failed"
            order.updated_at = now
            db.add(order)


def recover_transaction(
    db: Session,
    transaction: PaymentTransaction,
    *,
    gateway: PaymentGateway,
    engine: ActivationEngine,
    now: datetime,
    recovery_method: str = AUTOMATIC_RECOVERY,
) -> Tuple[str, Optional[str]]:
    """
    Ask the gateway about one pending transaction and act on the answer.

    Returns `(outcome, gateway_status)` where outcome is one of
    `recovered`, `failed`, `pending` or `skipped`. Nothing is committed.
    """
    if not transaction.gateway_order_id:
        logger.warning(
            "Skipping transaction without gateway order id",
            transaction_id=str(transaction.id),
        )
        return "skipped", None

    try:
        remote = gateway.get_order(transaction.gateway_order_id)
    except GatewayError:
        if now - transaction.created_at > UNVERIFIABLE_AFTER:
            _mark_failed(
                db,
                transaction,
                reason="Unable to verify after 24 hours",
                now=now,
                recovery_method=recovery_method,
            )
            return "failed", None
        raise

    remote_status = remote.get("status")
    if remote_status == "paid":
        payment = _captured_payment(
            gateway.get_order_payments(transaction.gateway_order_id)
        )
        if payment is None:
            logger.info(
                "Order paid but no captured payment yet",
                gateway_order_id=transaction.gateway_order_id,
            )
            return "pending", remote_status

        engine.activate(
            db,
            transaction,
            payment_id=payment["id"],
            recovery_method=recovery_method,
        )
        return "recovered", remote_status

    if remote_status in FAILED_ORDER_STATUSES:
        _mark_failed(
            db,
            transaction,
            reason=f"Payment {remote_status} (recovery check)",
            now=now,
            recovery_method=recovery_method,
        )
        return "failed", remote_status

    return "pending", remote_status


def sweep(
    db: Session,
    *,
    gateway: PaymentGateway,
    engine: ActivationEngine,
    now: datetime,
    batch_size: int = 50,
    grace_minutes: int = 5,
) -> SweepResult:
    """
    Reconcile pending transactions older than the grace period.

    Every transaction is locked, processed and committed on its own; a
    failure is rolled back and reported without stopping the batch. Rows
    already locked by a live verification are skipped.
    """
    cutoff = now - timedelta(minutes=grace_minutes)
    candidate_ids = [
        row.id
        for row in db.query(PaymentTransaction.id)
        .filter(
            PaymentTransaction.status == "pending",
            PaymentTransaction.created_at < cutoff,
        )
        .order_by(PaymentTransaction.created_at.asc())
        .limit(batch_size)
        .all()
    ]

    result = SweepResult()
    logger.info("Recovery sweep started", candidates=len(candidate_ids))

    for transaction_id in candidate_ids:
        result.checked += 1
        gateway_order_id: Optional[str] = None
        try:
            transaction = (
                db.query(PaymentTransaction)
                .filter(
                    PaymentTransaction.id == transaction_id,
                    PaymentTransaction.status == "pending",
                )
                .with_for_update(skip_locked=True)
                .first()
            )
            if transaction is None:
                result.skipped += 1
                continue

            gateway_order_id = transaction.gateway_order_id
            outcome, _ = recover_transaction(
                db,
                transaction,
                gateway=gateway,
                engine=engine,
                now=now,
                recovery_method=AUTOMATIC_RECOVERY,
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.opt(exception=exc).error(
                "Recovery failed for transaction",
                transaction_id=str(transaction_id),
                gateway_order_id=gateway_order_id,
            )
            result.errors.append(
                {
                    "transaction_id": str(transaction_id),
                    "gateway_order_id": gateway_order_id,
                    "error": str(exc),
                }
            )
            continue

        if outcome == "recovered":
            result.recovered += 1
        elif outcome == "failed":
            result.failed += 1
        elif outcome == "skipped":
            result.skipped += 1

    logger.info("Recovery sweep finished", **result.as_dict())
    return result


def recover_order(
    db: Session,
    *,
    user: User,
    gateway_order_id: str,
    gateway: PaymentGateway,
    engine: ActivationEngine,
    now: datetime,
) -> ManualRecovery:
    """
    User-triggered check for one order, e.g. after the app lost the
    payment callback. Runs the same path as the sweeper.
    """
    transaction = (
        db.query(PaymentTransaction)
        .filter(
            PaymentTransaction.gateway_order_id == gateway_order_id,
            PaymentTransaction.user_id == user.id,
        )
        .order_by(PaymentTransaction.created_at.desc())
        .with_for_update()
        .first()
    )

    if transaction is not None and transaction.status == "completed":
        return ManualRecovery(
            status="completed",
            message="Payment already processed and subscription activated",
            subscription=get_live_subscription(db, user.id),
        )

    if transaction is not None and transaction.status == "failed":
        return ManualRecovery(
            status="failed",
            message=transaction.failure_reason or "Payment failed",
        )

    if transaction is not None:
        outcome, remote_status = recover_transaction(
            db,
            transaction,
            gateway=gateway,
            engine=engine,
            now=now,
            recovery_method=MANUAL_RECOVERY,
        )
        if outcome == "recovered":
            return ManualRecovery(
                status="recovered",
                message="Payment found and subscription activated successfully",
                subscription=get_live_subscription(db, user.id),
            )
        return ManualRecovery(
            status=outcome if outcome == "failed" else (remote_status or "pending"),
            message=f"Payment status: {remote_status or outcome}",
        )

    order = find_order(db, gateway_order_id, user_id=user.id)
    if order is None:
        raise TransactionNotFound()

    remote_status = gateway.get_order(gateway_order_id).get("status")
    if remote_status == "paid":
        payment = _captured_payment(gateway.get_order_payments(gateway_order_id))
        if payment is not None:
            transaction, _ = record_payment(
                db,
                order=order,
                gateway_payment_id=payment["id"],
                now=now,
            )
            engine.activate(
                db,
                transaction,
                payment_id=payment["id"],
                recovery_method=MANUAL_RECOVERY,
            )
            logger.info(
                "Recovered payment without prior callback",
                user_id=str(user.id),
                order_id=order.order_id,
                payment_id=payment["id"],
            )
            return ManualRecovery(
                status="recovered",
                message="Payment found and subscription activated successfully",
                subscription=get_live_subscription(db, user.id),
            )

    return ManualRecovery(
        status=remote_status or "unknown",
        message=f"Payment status: {remote_status or 'unknown'}",
    )


def recovery_stats(db: Session, *, now: datetime) -> Dict[str, Any]:
    def _count(status: str, since: datetime) -> int:
        return (
            db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.recovery_method.isnot(None),
                PaymentTransaction.status == status,
                PaymentTransaction.recovered_at >= since,
            )
            .count()
        )

    day_ago = now - timedelta(hours=24)
    week_ago = now - timedelta(days=7)
    pending = (
        db.query(PaymentTransaction)
        .filter(PaymentTransaction.status == "pending")
        .count()
    )
    return {
        "last_24_hours": {
            "recovered": _count("completed", day_ago),
            "failed": _count("failed", day_ago),
        },
        "last_7_days": {
            "recovered": _count("completed", week_ago),
            "failed": _count("failed", week_ago),
        },
        "currently_pending": pending,
    }


__all__ = [
    "AUTOMATIC_RECOVERY",
    "MANUAL_RECOVERY",
    "SweepResult",
    "ManualRecovery",
    "recover_transaction",
    "sweep",
    "recover_order",
    "recovery_stats",
]
