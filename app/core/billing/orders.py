from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

from loguru import logger
from sqlalchemy.orm import Session

from app.core.auth.models import User
from app.core.billing.currency import LocaleSignal, PriceQuote, from_minor_units, resolve_price
from app.core.billing.errors import (
    DowngradeNotAllowedMidCycle,
    GatewayError,
    GatewayOrderCreationFailed,
    OrderExpired,
    OrderNotFound,
    PaymentPageTokenInvalid,
    PaymentsDisabledError,
    ValidationError,
)
from app.core.billing.gateway import MIN_ORDER_AMOUNT, PaymentGateway
from app.core.billing.lifecycle import get_active_subscription
from app.core.billing.models import PaymentOrder, Subscription
from app.core.billing.plans import PlanDefinition, get_plan
from app.core.billing.proration import UpgradeQuote, calculate_upgrade
from app.core.security import (
    PAYMENT_PAGE_TOKEN_TYPE,
    create_payment_page_token,
    decode_token,
)


PAYABLE_ORDER_STATUSES = ("created", "processing")


@dataclass
class CreatedOrder:
    order: PaymentOrder
    price: PriceQuote
    upgrade: Optional[UpgradeQuote]
    existing: Optional[Subscription]
    payment_url: str


@dataclass(frozen=True)
class UpgradePreview:
    current_plan_id: str
    current_plan_name: str
    new_plan_id: str
    new_plan_name: str
    original_price: float
    proration_credit: float
    final_price: float
    remaining_days: int
    daily_rate: float
    currency: str
    symbol: str
    currency_converted: bool


def _epoch_ms(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def make_order_id(user_id: Any, now: datetime) -> str:
    suffix = str(user_id).replace("-", "")[-8:]
    # random tail keeps ids unique for orders created within the same millisecond
    return f"ord_{_epoch_ms(now)}_{suffix}{secrets.token_hex(2)}"


def make_receipt(now: datetime) -> str:
    return f"sub_{str(_epoch_ms(now))[-10:]}"


def plan_snapshot(plan: PlanDefinition, price: PriceQuote) -> Dict[str, Any]:
    return {
        "plan_id": plan.plan_id,
        "name": plan.name,
        "description": plan.description,
        "tier": plan.tier,
        "duration": plan.duration,
        "interval_count": plan.interval_count,
        "price": price.amount,
        "currency": price.currency_code,
        "symbol": price.symbol,
        "features": plan.features.as_dict(),
    }


def payment_page_url(server_url: str, order_id: str, token: str) -> str:
    return (
        f"{server_url.rstrip('/')}/api/v1/subscriptions/payment-page/"
        f"{order_id}?token={quote(token, safe='')}"
    )


def _quote_upgrade(
    existing: Subscription,
    plan: PlanDefinition,
    price: PriceQuote,
    *,
    now: datetime,
    rates: Optional[Mapping[str, float]],
) -> UpgradeQuote:
    upgrade = calculate_upgrade(
        existing,
        plan.plan_id,
        price.currency_code,
        now=now,
        rates=rates,
    )
    if not upgrade.is_upgrade:
        raise DowngradeNotAllowedMidCycle(upgrade.reason)
    return upgrade


def create_order(
    db: Session,
    *,
    user: User,
    plan_id: str,
    locale: LocaleSignal,
    gateway: PaymentGateway,
    now: datetime,
    payments_enabled: bool,
    server_url: str,
    rates: Optional[Mapping[str, float]] = None,
    user_agent: Optional[str] = None,
) -> CreatedOrder:
    if not payments_enabled:
        raise PaymentsDisabledError()

    plan = get_plan(plan_id)
    price = resolve_price(plan.plan_id, locale, rates=rates)

    existing = get_active_subscription(db, user=user, now=now)
    upgrade: Optional[UpgradeQuote] = None
    credit_minor = 0
    if existing is not None:
        upgrade = _quote_upgrade(existing, plan, price, now=now, rates=rates)
        credit_minor = upgrade.credit_minor

    original_minor = price.amount_minor
    amount_minor = max(0, original_minor - credit_minor)
    if amount_minor < MIN_ORDER_AMOUNT:
        raise ValidationError(
            "The remaining value of your plan covers this upgrade. "
            "Please try again closer to the end of your current period.",
            code="BILLING_AMOUNT_BELOW_MINIMUM",
            details={
                "amount": amount_minor,
                "minimum": MIN_ORDER_AMOUNT,
                "currency": price.currency_code,
            },
        )

    notes = {
        "user_id": str(user.id),
        "plan_id": plan.plan_id,
        "subscription_type": "upgrade" if existing is not None else "new",
        "proration_credit": from_minor_units(credit_minor, price.currency_code),
    }

    try:
        result = gateway.create_order(
            amount_minor,
            price.currency_code,
            receipt=make_receipt(now),
            notes=notes,
        )
    except GatewayError as exc:
        logger.error(
            "Gateway order creation raised",
            user_id=str(user.id),
            plan_id=plan.plan_id,
            amount=amount_minor,
            currency=price.currency_code,
            reason=exc.reason,
        )
        raise GatewayOrderCreationFailed(exc.reason, gateway_payload=exc.gateway_payload) from exc

    if not result.success:
        logger.error(
            "Gateway order creation failed",
            user_id=str(user.id),
            plan_id=plan.plan_id,
            amount=amount_minor,
            currency=price.currency_code,
            error=result.error,
            payload=result.data,
        )
        raise GatewayOrderCreationFailed(
            result.error or "order creation failed", gateway_payload=result.data
        )

    order = PaymentOrder(
        order_id=make_order_id(user.id, now),
        user_id=user.id,
        plan_id=plan.plan_id,
        gateway_order_id=result.data["id"],
        amount=amount_minor,
        original_amount=original_minor,
        currency=price.currency_code,
        status="created",
        plan_snapshot=plan_snapshot(plan, price),
        user_snapshot={
            "name": user.name or user.email,
            "email": user.email,
            "contact": user.phone or "",
        },
        proration_credit=credit_minor,
        existing_subscription_id=existing.id if existing is not None else None,
        user_agent=user_agent,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.flush()

    token = create_payment_page_token(user_id=user.id, order_id=order.order_id)
    logger.info(
        "Payment order created",
        user_id=str(user.id),
        order_id=order.order_id,
        gateway_order_id=order.gateway_order_id,
        amount=amount_minor,
        original_amount=original_minor,
        proration_credit=credit_minor,
        currency=price.currency_code,
    )
    return CreatedOrder(
        order=order,
        price=price,
        upgrade=upgrade,
        existing=existing,
        payment_url=payment_page_url(server_url, order.order_id, token),
    )


def _decode_payment_page_token(token: str) -> Dict[str, Any]:
    if not token:
        raise PaymentPageTokenInvalid("Payment link token is required")
    try:
        payload = decode_token(token)
    except Exception:
        raise PaymentPageTokenInvalid()
    if payload.get("type") != PAYMENT_PAGE_TOKEN_TYPE or not payload.get("sub"):
        raise PaymentPageTokenInvalid()
    return payload


def get_order_for_payment_page(
    db: Session,
    *,
    order_id: str,
    token: str,
    now: datetime,
    ttl_hours: int = 24,
) -> PaymentOrder:
    """
    Load a payable order for the hosted payment page.

    An order past its lifetime is marked `expired` and committed here,
    before `OrderExpired` propagates.
    """
    payload = _decode_payment_page_token(token)
    if payload.get("oid") != order_id:
        raise OrderNotFound()

    order = db.query(PaymentOrder).filter(PaymentOrder.order_id == order_id).first()
    if (
        order is None
        or str(order.user_id) != str(payload["sub"])
        or order.status not in PAYABLE_ORDER_STATUSES
    ):
        raise OrderNotFound()

    if now > order.created_at + timedelta(hours=ttl_hours):
        order.status = "expired"
        order.updated_at = now
        db.add(order)
        db.commit()
        logger.info("Payment order expired on access", order_id=order_id)
        raise OrderExpired()

    return order


def build_payment_details(
    order: PaymentOrder,
    *,
    public_key: str,
    ttl_hours: int = 24,
) -> Dict[str, Any]:
    snapshot = order.plan_snapshot or {}
    contact = order.user_snapshot or {}
    return {
        "key": public_key,
        "order_id": order.order_id,
        "gateway_order_id": order.gateway_order_id,
        "amount": order.amount,
        "original_amount": order.original_amount,
        "proration_credit": order.proration_credit,
        "currency": order.currency,
        "name": "UNextDoor",
        "description": f"{snapshot.get('name', order.plan_id)} Plan Subscription",
        "plan": snapshot,
        "prefill": {
            "name": contact.get("name", ""),
            "email": contact.get("email", ""),
            "contact": contact.get("contact", ""),
        },
        "expires_at": order.created_at + timedelta(hours=ttl_hours),
    }


def upgrade_preview(
    db: Session,
    *,
    user: User,
    plan_id: str,
    locale: LocaleSignal,
    now: datetime,
    rates: Optional[Mapping[str, float]] = None,
) -> UpgradePreview:
    plan = get_plan(plan_id)
    existing = get_active_subscription(db, user=user, now=now)
    if existing is None:
        raise ValidationError(
            "No active subscription found to upgrade from",
            code="BILLING_NO_ACTIVE_SUBSCRIPTION",
        )
    if existing.plan_id == plan.plan_id:
        raise ValidationError(
            "You are already subscribed to this plan",
            code="BILLING_SAME_PLAN",
        )

    price = resolve_price(plan.plan_id, locale, rates=rates)
    upgrade = _quote_upgrade(existing, plan, price, now=now, rates=rates)

    return UpgradePreview(
        current_plan_id=existing.plan_id,
        current_plan_name=existing.plan_name,
        new_plan_id=plan.plan_id,
        new_plan_name=plan.name,
        original_price=price.amount,
        proration_credit=upgrade.proration_credit,
        final_price=from_minor_units(
            max(0, price.amount_minor - upgrade.credit_minor), price.currency_code
        ),
        remaining_days=upgrade.remaining_days,
        daily_rate=round(upgrade.daily_rate, 4),
        currency=price.currency_code,
        symbol=price.symbol,
        currency_converted=upgrade.currency_converted,
    )


__all__ = [
    "PAYABLE_ORDER_STATUSES",
    "CreatedOrder",
    "UpgradePreview",
    "make_order_id",
    "make_receipt",
    "plan_snapshot",
    "payment_page_url",
    "create_order",
    "get_order_for_payment_page",
    "build_payment_details",
    "upgrade_preview",
]
