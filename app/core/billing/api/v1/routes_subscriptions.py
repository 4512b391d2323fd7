from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import HTMLResponse
from redis import Redis
from sqlalchemy.orm import Session

from app.core.auth.models import User
from app.core.billing.lifecycle import subscription_cache_key
from app.core.billing.payment_page import render_payment_error, render_payment_page
from app.core.billing.schemas import (
    AutoRenewalRequest,
    AutoRenewalResponse,
    CancelResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    CurrentSubscriptionResponse,
    ExistingSubscriptionBrief,
    PaymentDetailsResponse,
    RecoverPendingRequest,
    RecoveryCheckResponse,
    ScheduleDowngradeRequest,
    ScheduleDowngradeResponse,
    SubscriptionPublic,
    SweepResponse,
    TransactionPublic,
    UpgradePreviewResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from app.core.billing.services import BillingService, get_billing_service
from app.core.config import settings
from app.core.dependencies import get_current_superuser, get_current_user, get_db
from app.response import StandardResponse, make_success_response
from app.response.response import APIError, Pagination
from app.utils.redis_client import get_redis


logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)
router = APIRouter(
    prefix="/subscriptions",
    tags=["subscriptions"],
)


def _subscription_public(subscription) -> Dict[str, Any] | None:
    if subscription is None:
        return None
    return SubscriptionPublic.model_validate(subscription).model_dump()


@router.get(
    "/current",
    response_model=StandardResponse,
    summary="Current subscription of the user",
)
def get_current(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    """
    Returns the live subscription, expiring it first if its period is over.
    Cached in Redis; every entitlement change drops the key.
    """
    cache_key = subscription_cache_key(user.id)
    ttl = settings.subscription_cache_ttl_seconds

    redis: Redis | None = None
    try:
        redis = get_redis()
        cached = redis.get(cache_key)
        if cached is not None:
            logger.info("subscription cache hit (key=%s)", cache_key)
            return make_success_response(result=json.loads(cached))
        logger.info("subscription cache miss (key=%s)", cache_key)
    except Exception as exc:
        logger.warning("subscription cache error: %r", exc)
        redis = None

    subscription = service.current_subscription(db, user=user)
    db.commit()

    has_active = subscription is not None and subscription.is_live
    result_data = CurrentSubscriptionResponse(
        subscription=_subscription_public(subscription) if has_active else None,
        has_active_subscription=has_active,
    ).model_dump()

    if redis is not None:
        try:
            payload = jsonable_encoder(result_data)
            redis.setex(cache_key, ttl, json.dumps(payload))
            logger.info("subscription cache set (key=%s, ttl=%s)", cache_key, ttl)
        except Exception as exc:
            logger.warning("subscription cache set error: %r", exc)

    return make_success_response(result=result_data)


@router.post(
    "/create-order",
    response_model=StandardResponse,
    summary="Create a payment order for a plan",
)
def create_order(
    payload: CreateOrderRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    created = service.create_order(
        db,
        user=user,
        plan_id=payload.plan_id,
        locale=service.locale_for(request.headers, user),
        user_agent=request.headers.get("user-agent"),
    )
    db.commit()

    order = created.order
    existing = None
    if created.existing is not None:
        existing = ExistingSubscriptionBrief(
            plan_id=created.existing.plan_id,
            current_period_end=created.existing.current_period_end,
        )
    result = CreateOrderResponse(
        order_id=order.order_id,
        gateway_order_id=order.gateway_order_id,
        amount=order.amount,
        original_amount=order.original_amount,
        proration_credit=order.proration_credit,
        currency=order.currency,
        plan=order.plan_snapshot,
        payment_url=created.payment_url,
        existing_subscription=existing,
    )
    return make_success_response(result=result)


@router.post(
    "/verify-payment",
    response_model=StandardResponse,
    summary="Verify a signed payment and activate the subscription",
)
def verify_payment(
    payload: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    verified = service.verify_payment(
        db,
        user=user,
        gateway_order_id=payload.gateway_order_id,
        gateway_payment_id=payload.gateway_payment_id,
        signature=payload.signature,
    )
    result = VerifyPaymentResponse(
        subscription=SubscriptionPublic.model_validate(verified.subscription),
        transaction=TransactionPublic.model_validate(verified.transaction),
        proration_credit=verified.proration_credit,
        already_processed=verified.already_processed,
    )
    return make_success_response(result=result)


@router.get(
    "/upgrade-preview/{plan_id}",
    response_model=StandardResponse,
    summary="Preview prorated price of an upgrade",
)
def upgrade_preview(
    plan_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    preview = service.upgrade_preview(
        db,
        user=user,
        plan_id=plan_id,
        locale=service.locale_for(request.headers, user),
    )
    return make_success_response(
        result=UpgradePreviewResponse.model_validate(preview)
    )


@router.post(
    "/cancel",
    response_model=StandardResponse,
    summary="Cancel at the end of the current period",
)
def cancel(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    subscription = service.cancel(db, user=user)
    db.commit()
    db.refresh(subscription)
    return make_success_response(
        result=CancelResponse(
            subscription=SubscriptionPublic.model_validate(subscription),
            active_until=subscription.current_period_end,
        )
    )


@router.post(
    "/reactivate",
    response_model=StandardResponse,
    summary="Undo a pending cancellation",
)
def reactivate(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    subscription = service.reactivate(db, user=user)
    db.commit()
    db.refresh(subscription)
    return make_success_response(
        result={"subscription": _subscription_public(subscription)}
    )


@router.post(
    "/schedule-downgrade",
    response_model=StandardResponse,
    summary="Schedule a downgrade for the end of the period",
)
def schedule_downgrade(
    payload: ScheduleDowngradeRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    subscription, target = service.schedule_downgrade(
        db, user=user, plan_id=payload.plan_id
    )
    db.commit()
    return make_success_response(
        result=ScheduleDowngradeResponse(
            current_plan_id=subscription.plan_id,
            scheduled_plan_id=target.plan_id,
            scheduled_plan_name=target.name,
            effective_date=subscription.scheduled_downgrade_date,
        )
    )


@router.put(
    "/auto-renewal",
    response_model=StandardResponse,
    summary="Turn auto renewal on or off",
)
def update_auto_renewal(
    payload: AutoRenewalRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    subscription = service.set_auto_renewal(
        db, user=user, enabled=payload.auto_renewal
    )
    db.commit()
    return make_success_response(
        result=AutoRenewalResponse(auto_renewal=subscription.auto_renewal)
    )


@router.get(
    "/transactions",
    response_model=StandardResponse,
    summary="Payment history",
)
def list_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    items, total = service.transaction_history(
        db, user=user, page=page, page_size=page_size
    )
    return make_success_response(
        result=[TransactionPublic.model_validate(item) for item in items],
        pagination=Pagination.build(page=page, page_size=page_size, total=total),
    )


@router.get(
    "/verify-payment/{gateway_order_id}",
    response_model=StandardResponse,
    summary="Re-check an order with the gateway (manual recovery)",
)
def verify_payment_status(
    gateway_order_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    outcome = service.recover_order(
        db, user=user, gateway_order_id=gateway_order_id
    )
    return make_success_response(
        result=RecoveryCheckResponse(
            status=outcome.status,
            message=outcome.message,
            subscription=_subscription_public(outcome.subscription),
        )
    )


@router.post(
    "/recover-pending",
    response_model=StandardResponse,
    summary="Run a recovery sweep now (admin)",
)
def recover_pending(
    payload: RecoverPendingRequest | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_superuser),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    batch_size = payload.batch_size if payload is not None else None
    result = service.sweep(db, batch_size=batch_size)
    return make_success_response(result=SweepResponse(**result.as_dict()))


@router.get(
    "/recovery-stats",
    response_model=StandardResponse,
    summary="Recovery statistics (admin)",
)
def recovery_stats(
    db: Session = Depends(get_db),
    _: User = Depends(get_current_superuser),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    return make_success_response(result=service.recovery_stats(db))


@router.get(
    "/payment-details/{order_id}",
    response_model=StandardResponse,
    summary="Checkout data for the hosted payment page",
)
def payment_details(
    order_id: str,
    token: str = Query(""),
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    details = service.payment_details(db, order_id=order_id, token=token)
    return make_success_response(result=PaymentDetailsResponse(**details))


@router.get(
    "/payment-page/{order_id}",
    response_class=HTMLResponse,
    include_in_schema=False,
)
def payment_page(
    order_id: str,
    token: str = Query(""),
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
) -> HTMLResponse:
    try:
        details = service.payment_details(db, order_id=order_id, token=token)
    except APIError as exc:
        logger.info("payment page refused (order=%s, code=%s)", order_id, exc.code)
        return HTMLResponse(
            render_payment_error(
                title="Payment link unavailable",
                message=exc.message,
                code=exc.code,
            ),
            status_code=exc.http_code,
        )
    return HTMLResponse(render_payment_page(details))


__all__ = ["router"]
