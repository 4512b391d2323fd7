from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import UUID

from fastapi import Request
from loguru import logger
from sqlalchemy.orm import Session

from app.core.auth.models import User
from app.core.billing import lifecycle, orders, recovery
from app.core.billing.activation import (
    ActivationEngine,
    ActivationResult,
    Clock,
    find_order,
    record_payment,
)
from app.core.billing.currency import EXCHANGE_RATES, LocaleSignal, resolve_price
from app.core.billing.errors import (
    DuplicateActivationRace,
    GatewayError,
    InvalidPaymentSignature,
    InvalidWebhookSignature,
    OrderNotFound,
    PaymentsDisabledError,
    ValidationError,
)
from app.core.billing.gateway import (
    SIGNATURE_MISMATCH,
    PaymentGateway,
    RazorpayGateway,
)
from app.core.billing.models import PaymentOrder, PaymentTransaction, Subscription
from app.core.billing.plans import PlanDefinition, list_plans
from app.core.config import settings


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VerificationResult:
    subscription: Subscription
    transaction: PaymentTransaction
    proration_credit: int
    already_processed: bool


class BillingService:
    """
    Entry point for everything that moves money or entitlement.

    Built once at startup with its collaborators injected. Most methods
    leave committing to the caller; the payment confirmation paths
    (verify, webhook, sweep) commit themselves because a recorded payment
    must survive a failed activation.
    """

    def __init__(
        self,
        *,
        gateway: PaymentGateway,
        clock: Clock = _utc_now,
        rates: Optional[Mapping[str, float]] = None,
        payments_enabled: bool = True,
        server_url: str = "http://localhost:8000",
        fallback_currency: str = "USD",
        order_ttl_hours: int = 24,
        recovery_grace_minutes: int = 5,
        recovery_batch_size: int = 50,
    ) -> None:
        self.gateway = gateway
        self.clock = clock
        self.rates = dict(rates or EXCHANGE_RATES)
        self.payments_enabled = payments_enabled
        self.server_url = server_url
        self.fallback_currency = fallback_currency
        self.order_ttl_hours = order_ttl_hours
        self.recovery_grace_minutes = recovery_grace_minutes
        self.recovery_batch_size = recovery_batch_size
        self.engine = ActivationEngine(clock=clock, rates=self.rates)

    def locale_for(
        self, headers: Mapping[str, str], user: Optional[User] = None
    ) -> LocaleSignal:
        return LocaleSignal.from_headers(
            headers,
            preferred_currency=user.preferred_currency if user is not None else None,
            fallback_currency=self.fallback_currency,
        )

    def plans_for(
        self, locale: LocaleSignal
    ) -> List[Tuple[PlanDefinition, Any]]:
        return [
            (plan, resolve_price(plan.plan_id, locale, rates=self.rates))
            for plan in list_plans()
        ]

    def create_order(
        self,
        db: Session,
        *,
        user: User,
        plan_id: str,
        locale: LocaleSignal,
        user_agent: Optional[str] = None,
    ) -> orders.CreatedOrder:
        return orders.create_order(
            db,
            user=user,
            plan_id=plan_id,
            locale=locale,
            gateway=self.gateway,
            now=self.clock(),
            payments_enabled=self.payments_enabled,
            server_url=self.server_url,
            rates=self.rates,
            user_agent=user_agent,
        )

    def get_order_for_payment_page(
        self, db: Session, *, order_id: str, token: str
    ) -> PaymentOrder:
        return orders.get_order_for_payment_page(
            db,
            order_id=order_id,
            token=token,
            now=self.clock(),
            ttl_hours=self.order_ttl_hours,
        )

    def payment_details(
        self, db: Session, *, order_id: str, token: str
    ) -> Dict[str, Any]:
        order = self.get_order_for_payment_page(db, order_id=order_id, token=token)
        return orders.build_payment_details(
            order,
            public_key=self.gateway.public_key,
            ttl_hours=self.order_ttl_hours,
        )

    def upgrade_preview(
        self,
        db: Session,
        *,
        user: User,
        plan_id: str,
        locale: LocaleSignal,
    ) -> orders.UpgradePreview:
        return orders.upgrade_preview(
            db,
            user=user,
            plan_id=plan_id,
            locale=locale,
            now=self.clock(),
            rates=self.rates,
        )

    def _activate_with_retry(
        self,
        db: Session,
        transaction_id: UUID,
        *,
        payment_id: Optional[str] = None,
    ) -> Tuple[ActivationResult, PaymentTransaction]:
        def _once() -> Tuple[ActivationResult, PaymentTransaction]:
            transaction = db.get(PaymentTransaction, transaction_id)
            result = self.engine.activate(db, transaction, payment_id=payment_id)
            db.commit()
            return result, transaction

        try:
            return _once()
        except DuplicateActivationRace:
            # the winner has committed by now; the second pass short-circuits
            logger.info(
                "Retrying activation after race",
                transaction_id=str(transaction_id),
            )
        return _once()

    def verify_payment(
        self,
        db: Session,
        *,
        user: User,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> VerificationResult:
        if not self.payments_enabled:
            raise PaymentsDisabledError()

        verification = self.gateway.verify_payment(
            gateway_payment_id, gateway_order_id, signature
        )
        if not verification.success:
            if verification.error == SIGNATURE_MISMATCH:
                logger.warning(
                    "Payment signature mismatch",
                    user_id=str(user.id),
                    gateway_order_id=gateway_order_id,
                    payment_id=gateway_payment_id,
                )
                raise InvalidPaymentSignature()
            logger.error(
                "Payment verification failed at gateway",
                user_id=str(user.id),
                gateway_order_id=gateway_order_id,
                error=verification.error,
            )
            raise GatewayError(verification.error or "verification failed")

        order = find_order(db, gateway_order_id, user_id=user.id)
        if order is None:
            raise OrderNotFound()
        if order.status in ("expired", "failed"):
            # money was taken; activation still has to happen
            logger.warning(
                "Verified payment for a closed order",
                order_id=order.order_id,
                status=order.status,
            )

        now = self.clock()
        transaction, _ = record_payment(
            db,
            order=order,
            gateway_payment_id=gateway_payment_id,
            now=now,
            signature=signature,
        )
        db.commit()
        transaction_id = transaction.id

        try:
            result, transaction = self._activate_with_retry(
                db, transaction_id, payment_id=gateway_payment_id
            )
        except Exception:
            db.rollback()
            logger.exception(
                "Activation failed after verified payment; left pending for recovery",
                user_id=str(user.id),
                order_id=order.order_id,
                payment_id=gateway_payment_id,
                amount=order.amount,
                currency=order.currency,
            )
            raise

        return VerificationResult(
            subscription=result.subscription,
            transaction=transaction,
            proration_credit=result.proration_credit,
            already_processed=result.already_processed,
        )

    def handle_webhook(
        self,
        db: Session,
        *,
        body: bytes,
        signature: str,
    ) -> Dict[str, Any]:
        if not self.gateway.verify_webhook_signature(body, signature):
            raise InvalidWebhookSignature()

        try:
            event = json.loads(body)
        except ValueError:
            raise ValidationError("Malformed webhook body", code="BILLING_BAD_WEBHOOK")

        event_type = event.get("event")
        payment = (
            (event.get("payload") or {}).get("payment", {}).get("entity") or {}
        )
        payment_id = payment.get("id")
        gateway_order_id = payment.get("order_id")
        logger.info(
            "Webhook received",
            event=event_type,
            payment_id=payment_id,
            gateway_order_id=gateway_order_id,
        )

        if event_type not in ("payment.authorized", "payment.captured", "payment.failed"):
            return {"event": event_type, "status": "ignored"}

        if not payment_id or not gateway_order_id:
            raise ValidationError(
                "Webhook payment entity is incomplete", code="BILLING_BAD_WEBHOOK"
            )

        order = find_order(db, gateway_order_id)
        if order is None:
            logger.warning(
                "Webhook for unknown order", gateway_order_id=gateway_order_id
            )
            return {"event": event_type, "status": "ignored"}

        now = self.clock()
        if event_type == "payment.failed":
            transaction = (
                db.query(PaymentTransaction)
                .filter(PaymentTransaction.gateway_payment_id == payment_id)
                .first()
            )
            reason = payment.get("error_description") or "Payment failed"
            if transaction is not None and transaction.status == "pending":
                transaction.status = "failed"
                transaction.failure_reason = reason
                db.add(transaction)
            if order.status in orders.PAYABLE_ORDER_STATUSES:
                order.status = "failed"
                order.updated_at = now
                db.add(order)
            db.commit()
            return {"event": event_type, "status": "processed"}

        transaction, _ = record_payment(
            db, order=order, gateway_payment_id=payment_id, now=now
        )
        db.commit()

        if event_type == "payment.captured":
            result, _ = self._activate_with_retry(
                db, transaction.id, payment_id=payment_id
            )
            return {
                "event": event_type,
                "status": "processed",
                "subscription_id": str(result.subscription.id),
                "already_processed": result.already_processed,
            }

        return {"event": event_type, "status": "processed"}

    def sweep(
        self, db: Session, *, batch_size: Optional[int] = None
    ) -> recovery.SweepResult:
        return recovery.sweep(
            db,
            gateway=self.gateway,
            engine=self.engine,
            now=self.clock(),
            batch_size=batch_size or self.recovery_batch_size,
            grace_minutes=self.recovery_grace_minutes,
        )

    def recover_order(
        self, db: Session, *, user: User, gateway_order_id: str
    ) -> recovery.ManualRecovery:
        result = recovery.recover_order(
            db,
            user=user,
            gateway_order_id=gateway_order_id,
            gateway=self.gateway,
            engine=self.engine,
            now=self.clock(),
        )
        db.commit()
        return result

    def recovery_stats(self, db: Session) -> Dict[str, Any]:
        return recovery.recovery_stats(db, now=self.clock())

    def current_subscription(self, db: Session, *, user: User) -> Optional[Subscription]:
        return lifecycle.get_current_subscription(db, user=user, now=self.clock())

    def cancel(self, db: Session, *, user: User) -> Subscription:
        return lifecycle.cancel_subscription(db, user=user, now=self.clock())

    def reactivate(self, db: Session, *, user: User) -> Subscription:
        return lifecycle.reactivate_subscription(db, user=user)

    def schedule_downgrade(
        self, db: Session, *, user: User, plan_id: str
    ) -> Tuple[Subscription, PlanDefinition]:
        return lifecycle.schedule_downgrade(db, user=user, plan_id=plan_id)

    def set_auto_renewal(self, db: Session, *, user: User, enabled: bool) -> Subscription:
        return lifecycle.set_auto_renewal(db, user=user, enabled=enabled)

    def transaction_history(
        self, db: Session, *, user: User, page: int, page_size: int
    ) -> Tuple[List[PaymentTransaction], int]:
        return lifecycle.transaction_history(
            db, user=user, page=page, page_size=page_size
        )

    def apply_scheduled_downgrades(
        self, db: Session, *, batch_size: Optional[int] = None
    ) -> Dict[str, Any]:
        return lifecycle.apply_scheduled_downgrades(
            db,
            now=self.clock(),
            batch_size=batch_size or self.recovery_batch_size,
        )


def build_billing_service(gateway: Optional[PaymentGateway] = None) -> BillingService:
    return BillingService(
        gateway=gateway or RazorpayGateway.from_settings(),
        payments_enabled=settings.payments_enabled,
        server_url=settings.server_url,
        fallback_currency=settings.fallback_currency,
        order_ttl_hours=settings.payment_order_ttl_hours,
        recovery_grace_minutes=settings.recovery_grace_minutes,
        recovery_batch_size=settings.recovery_batch_size,
    )


def get_billing_service(request: Request) -> BillingService:
    service = getattr(request.app.state, "billing_service", None)
    if service is None:
        service = build_billing_service()
        request.app.state.billing_service = service
    return service


__all__ = [
    "VerificationResult",
    "BillingService",
    "build_billing_service",
    "get_billing_service",
]
