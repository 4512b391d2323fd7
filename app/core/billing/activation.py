from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.auth.models import User
from app.core.billing.currency import LocaleSignal, resolve_price, to_minor_units
from app.core.billing.errors import (
    DuplicateActivationRace,
    ImplausibleSubscriptionPricing,
    OrderNotFound,
)
from app.core.billing.lifecycle import (
    apply_plan,
    get_active_subscription,
    get_live_subscription,
    get_subscription_slot,
    invalidate_subscription_cache,
    sync_user_entitlement,
)
from app.core.billing.models import (
    LIVE_SUBSCRIPTION_STATUSES,
    PaymentOrder,
    PaymentTransaction,
    Subscription,
)
from app.core.billing.plans import get_plan, parse_plan_id, period_end
from app.core.billing.proration import calculate_upgrade


Clock = Callable[[], datetime]


@dataclass
class ActivationResult:
    subscription: Subscription
    proration_credit: int  # minor units of the transaction currency
    already_processed: bool = False


def find_order(
    db: Session,
    gateway_order_id: str,
    *,
    user_id: Optional[UUID] = None,
) -> Optional[PaymentOrder]:
    query = db.query(PaymentOrder).filter(
        PaymentOrder.gateway_order_id == gateway_order_id
    )
    if user_id is not None:
        query = query.filter(PaymentOrder.user_id == user_id)
    return query.order_by(PaymentOrder.created_at.desc()).first()


def record_payment(
    db: Session,
    *,
    order: PaymentOrder,
    gateway_payment_id: str,
    now: datetime,
    signature: Optional[str] = None,
) -> Tuple[PaymentTransaction, bool]:
    """
    Get or create the transaction for a gateway payment id.

    The payment id is the idempotency key: a repeated delivery returns the
    existing row. When two deliveries race on the insert the loser rolls
    back and re-reads, so this must run before any other pending writes
    in the session.
    """
    existing = (
        db.query(PaymentTransaction)
        .filter(PaymentTransaction.gateway_payment_id == gateway_payment_id)
        .first()
    )
    if existing is not None:
        return existing, False

    plan_type, plan_duration = parse_plan_id(order.plan_id)
    transaction = PaymentTransaction(
        user_id=order.user_id,
        plan_id=order.plan_id,
        plan_type=plan_type,
        plan_duration=plan_duration or "monthly",
        gateway_order_id=order.gateway_order_id,
        gateway_payment_id=gateway_payment_id,
        gateway_signature=signature,
        amount=order.amount,
        currency=order.currency,
        transaction_type=(
            "subscription_upgrade"
            if order.existing_subscription_id is not None
            else "subscription_creation"
        ),
        status="pending",
        plan_snapshot=order.plan_snapshot,
        payment_order_id=order.id,
        prior_subscription_id=order.existing_subscription_id,
        proration_credit=order.proration_credit or 0,
        created_at=now,
        updated_at=now,
    )
    if order.status == "created":
        order.status = "processing"
        order.updated_at = now
        db.add(order)
    db.add(transaction)

    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = (
            db.query(PaymentTransaction)
            .filter(PaymentTransaction.gateway_payment_id == gateway_payment_id)
            .first()
        )
        if existing is None:
            raise
        logger.info(
            "Payment already recorded by a concurrent delivery",
            payment_id=gateway_payment_id,
        )
        return existing, False

    logger.info(
        "Payment recorded",
        user_id=str(order.user_id),
        order_id=order.order_id,
        gateway_order_id=order.gateway_order_id,
        payment_id=gateway_payment_id,
        amount=order.amount,
        currency=order.currency,
    )
    return transaction, True


class ActivationEngine:
    """
    Turns a confirmed payment into the user's single live subscription.

    Callers own the transaction boundary: `activate` flushes but never
    commits. Safe to call again for the same payment; the second call
    returns the subscription produced by the first.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        rates: Optional[Mapping[str, float]] = None,
    ) -> None:
        self._clock = clock
        self._rates = rates

    def _find_activated(
        self, db: Session, transaction: PaymentTransaction
    ) -> Optional[Subscription]:
        activated = (
            db.query(Subscription)
            .filter(
                Subscription.user_id == transaction.user_id,
                Subscription.source_transaction_id == transaction.id,
                Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
            )
            .first()
        )
        if activated is not None:
            return activated
        if transaction.status == "completed":
            return get_live_subscription(db, transaction.user_id)
        return None

    def _fresh_credit(
        self,
        live: Subscription,
        transaction: PaymentTransaction,
        now: datetime,
    ) -> int:
        try:
            quote = calculate_upgrade(
                live,
                transaction.plan_id,
                transaction.currency,
                now=now,
                rates=self._rates,
            )
        except ImplausibleSubscriptionPricing as exc:
            # the payment already went through; fall back to the recorded credit
            logger.warning(
                "Ignoring fresh credit for implausible pricing",
                user_id=str(transaction.user_id),
                subscription_id=str(live.id),
                problems=exc.problems,
            )
            return 0
        return quote.credit_minor if quote.is_upgrade else 0

    def _plan_amount(self, transaction: PaymentTransaction) -> Tuple[int, float]:
        snapshot = transaction.plan_snapshot or {}
        price = snapshot.get("price")
        if price is not None and snapshot.get("currency") == transaction.currency:
            return to_minor_units(price, transaction.currency), float(price)
        quote = resolve_price(
            transaction.plan_id,
            LocaleSignal(preferred_currency=transaction.currency),
            rates=self._rates,
        )
        return quote.amount_minor, quote.amount

    def _complete(
        self,
        db: Session,
        transaction: PaymentTransaction,
        subscription: Subscription,
        *,
        now: datetime,
        payment_id: Optional[str],
        recovery_method: Optional[str],
    ) -> None:
        if payment_id and not transaction.gateway_payment_id:
            transaction.gateway_payment_id = payment_id
        transaction.status = "completed"
        transaction.completed_at = now
        transaction.failure_reason = None
        transaction.subscription_id = subscription.id
        if recovery_method:
            transaction.recovery_method = recovery_method
            transaction.recovered_at = now
        db.add(transaction)

        if transaction.payment_order_id is not None:
            order = db.get(PaymentOrder, transaction.payment_order_id)
            if order is not None and order.status != "paid":
                order.status = "paid"
                order.updated_at = now
                db.add(order)

    def activate(
        self,
        db: Session,
        transaction: PaymentTransaction,
        *,
        payment_id: Optional[str] = None,
        recovery_method: Optional[str] = None,
    ) -> ActivationResult:
        now = self._clock()

        user = (
            db.query(User)
            .filter(User.id == transaction.user_id)
            .with_for_update()
            .first()
        )
        if user is None:
            raise OrderNotFound("User for this payment no longer exists")

        activated = self._find_activated(db, transaction)
        if activated is not None:
            logger.info(
                "Activation already processed",
                user_id=str(transaction.user_id),
                transaction_id=str(transaction.id),
                subscription_id=str(activated.id),
            )
            return ActivationResult(
                subscription=activated,
                proration_credit=activated.applied_proration_credit or 0,
                already_processed=True,
            )

        try:
            live = get_active_subscription(db, user=user, now=now, for_update=True)

            credit = 0
            if live is not None:
                credit = self._fresh_credit(live, transaction, now)
            credit = max(credit, transaction.proration_credit or 0)

            if (
                live is not None
                and live.plan_id == transaction.plan_id
                and not transaction.is_upgrade
            ):
                self._complete(
                    db,
                    transaction,
                    live,
                    now=now,
                    payment_id=payment_id,
                    recovery_method=recovery_method,
                )
                db.flush()
                logger.info(
                    "Same plan already active, nothing to activate",
                    user_id=str(user.id),
                    subscription_id=str(live.id),
                )
                return ActivationResult(subscription=live, proration_credit=credit)

            slot = get_subscription_slot(db, user.id, for_update=True)
            if live is not None and (slot is None or slot.id != live.id):
                live.status = "cancelled"
                live.cancelled_at = now
                live.cancel_reason = "upgraded_or_replaced"
                db.add(live)
                # the partial unique index must see the old row leave first
                db.flush()

            plan = get_plan(transaction.plan_id)
            amount, display_price = self._plan_amount(transaction)

            subscription = slot
            if subscription is None:
                subscription = Subscription(user_id=user.id, created_at=now)

            apply_plan(
                subscription,
                plan,
                amount=amount,
                currency=transaction.currency,
                display_price=display_price,
            )
            subscription.status = "active"
            subscription.current_period_start = now
            subscription.current_period_end = period_end(now, plan.duration)
            subscription.next_billing_date = subscription.current_period_end
            subscription.cancel_at_period_end = False
            subscription.cancel_reason = None
            subscription.cancelled_at = None
            subscription.scheduled_downgrade_plan_id = None
            subscription.scheduled_downgrade_date = None
            subscription.auto_renewal = True
            subscription.source_transaction_id = transaction.id
            subscription.prior_subscription_id = live.id if live is not None else None
            subscription.prior_plan_id = live.plan_id if live is not None else None
            subscription.applied_proration_credit = credit
            subscription.updated_at = now
            db.add(subscription)
            db.flush()

            self._complete(
                db,
                transaction,
                subscription,
                now=now,
                payment_id=payment_id,
                recovery_method=recovery_method,
            )
            sync_user_entitlement(user, subscription)
            db.add(user)
            db.flush()
        except (IntegrityError, StaleDataError) as exc:
            db.rollback()
            logger.warning(
                "Concurrent activation detected",
                user_id=str(transaction.user_id),
                transaction_id=str(transaction.id),
                error=type(exc).__name__,
            )
            raise DuplicateActivationRace(transaction.user_id) from exc

        invalidate_subscription_cache(user.id)
        logger.info(
            "Subscription activated",
            user_id=str(user.id),
            subscription_id=str(subscription.id),
            plan_id=subscription.plan_id,
            transaction_id=str(transaction.id),
            payment_id=transaction.gateway_payment_id,
            proration_credit=credit,
            replaced=str(live.id) if live is not None else None,
        )
        return ActivationResult(subscription=subscription, proration_credit=credit)


__all__ = [
    "Clock",
    "ActivationResult",
    "ActivationEngine",
    "find_order",
    "record_payment",
]
