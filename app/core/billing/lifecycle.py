from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy.orm import Session

from app.core.auth.models import User
from app.core.billing.currency import LocaleSignal, resolve_price
from app.core.billing.errors import SubscriptionNotFound, ValidationError
from app.core.billing.models import (
    LIVE_SUBSCRIPTION_STATUSES,
    PaymentTransaction,
    Subscription,
)
from app.core.billing.plans import PlanDefinition, get_plan, plan_rank
from app.utils.redis_client import get_redis


SUBSCRIPTION_CACHE_KEY = "subscription:user:{user_id}"


def subscription_cache_key(user_id: UUID) -> str:
    return SUBSCRIPTION_CACHE_KEY.format(user_id=user_id)


def invalidate_subscription_cache(user_id: UUID) -> None:
    try:
        redis = get_redis()
        redis.delete(subscription_cache_key(user_id))
    except Exception as exc:
        logger.debug("Subscription cache invalidation skipped", error=repr(exc))


def get_live_subscription(
    db: Session,
    user_id: UUID,
    *,
    for_update: bool = False,
) -> Optional[Subscription]:
    query = (
        db.query(Subscription)
        .filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
        )
        .order_by(Subscription.created_at.desc())
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_subscription_slot(
    db: Session,
    user_id: UUID,
    *,
    for_update: bool = False,
) -> Optional[Subscription]:
    """The user's most recent subscription row, whatever its status."""
    query = (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc())
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def sync_user_entitlement(user: User, subscription: Optional[Subscription]) -> None:
    if subscription is None or not subscription.is_live:
        user.subscription_tier = "free"
        user.subscription_status = subscription.status if subscription else "none"
        return
    user.subscription_tier = subscription.plan_type
    user.subscription_status = subscription.status
    user.current_subscription_id = subscription.id


def apply_plan(
    subscription: Subscription,
    plan: PlanDefinition,
    *,
    amount: int,
    currency: str,
    display_price: float,
) -> None:
    subscription.plan_id = plan.plan_id
    subscription.plan_type = plan.tier
    subscription.plan_name = plan.name
    subscription.plan_duration = plan.duration
    subscription.interval_count = plan.interval_count
    subscription.features = plan.features.as_dict()
    subscription.amount = amount
    subscription.currency = currency
    subscription.display_price = display_price


def _switch_to_scheduled_plan(subscription: Subscription) -> None:
    target = get_plan(subscription.scheduled_downgrade_plan_id)
    quote = resolve_price(
        target.plan_id,
        LocaleSignal(preferred_currency=subscription.currency or "INR"),
    )
    previous_plan_id = subscription.plan_id
    apply_plan(
        subscription,
        target,
        amount=quote.amount_minor,
        currency=quote.currency_code,
        display_price=quote.amount,
    )
    subscription.prior_plan_id = previous_plan_id


def expire_subscription(
    db: Session, subscription: Subscription, user: Optional[User]
) -> None:
    """
    End access at the close of the paid period.

    A pending scheduled downgrade moves the row onto the lower plan, but no
    new period is granted: the lower plan is bought like any other order.
    """
    if subscription.scheduled_downgrade_plan_id and not subscription.cancel_at_period_end:
        _switch_to_scheduled_plan(subscription)
    subscription.scheduled_downgrade_plan_id = None
    subscription.scheduled_downgrade_date = None
    subscription.status = "expired"
    subscription.next_billing_date = subscription.current_period_end
    db.add(subscription)
    if user is not None:
        sync_user_entitlement(user, subscription)
        db.add(user)
    invalidate_subscription_cache(subscription.user_id)


def is_lapsed(subscription: Subscription, now: datetime) -> bool:
    return subscription.status == "active" and now > subscription.current_period_end


def _expire_if_lapsed(
    db: Session, subscription: Subscription, user: User, now: datetime
) -> bool:
    if not is_lapsed(subscription, now):
        return False
    logger.info(
        "Subscription expired on read",
        user_id=str(user.id),
        subscription_id=str(subscription.id),
    )
    expire_subscription(db, subscription, user)
    db.flush()
    return True


def get_current_subscription(
    db: Session,
    *,
    user: User,
    now: datetime,
) -> Optional[Subscription]:
    """
    Live subscription for `user`, expiring it on the way if its period
    is over. An expired subscription is returned so callers can report it.
    """
    subscription = get_live_subscription(db, user.id)
    if subscription is None:
        return None
    _expire_if_lapsed(db, subscription, user, now)
    return subscription


def get_active_subscription(
    db: Session,
    *,
    user: User,
    now: datetime,
    for_update: bool = False,
) -> Optional[Subscription]:
    """Like `get_current_subscription`, but a lapsed subscription counts as none."""
    subscription = get_live_subscription(db, user.id, for_update=for_update)
    if subscription is None or _expire_if_lapsed(db, subscription, user, now):
        return None
    return subscription


def _require_active(db: Session, user: User) -> Subscription:
    subscription = get_live_subscription(db, user.id, for_update=True)
    if subscription is None or subscription.status != "active":
        raise SubscriptionNotFound()
    return subscription


def cancel_subscription(
    db: Session,
    *,
    user: User,
    now: datetime,
    reason: str = "user_requested",
) -> Subscription:
    subscription = _require_active(db, user)
    subscription.cancel_at_period_end = True
    subscription.cancelled_at = now
    subscription.cancel_reason = reason
    db.add(subscription)
    db.flush()
    invalidate_subscription_cache(user.id)
    logger.info(
        "Subscription set to cancel at period end",
        user_id=str(user.id),
        subscription_id=str(subscription.id),
    )
    return subscription


def reactivate_subscription(db: Session, *, user: User) -> Subscription:
    subscription = get_live_subscription(db, user.id, for_update=True)
    if (
        subscription is None
        or subscription.status != "active"
        or not subscription.cancel_at_period_end
    ):
        raise SubscriptionNotFound("No cancelled subscription found to reactivate")

    subscription.cancel_at_period_end = False
    subscription.cancelled_at = None
    subscription.cancel_reason = None
    db.add(subscription)
    db.flush()
    invalidate_subscription_cache(user.id)
    return subscription


def schedule_downgrade(
    db: Session,
    *,
    user: User,
    plan_id: str,
) -> Tuple[Subscription, PlanDefinition]:
    target = get_plan(plan_id)
    subscription = _require_active(db, user)

    if plan_rank(target.plan_id) >= plan_rank(subscription.plan_id):
        raise ValidationError(
            "This is not a downgrade. Use the upgrade flow instead.",
            code="BILLING_NOT_A_DOWNGRADE",
            details={"current_plan": subscription.plan_id, "plan_id": plan_id},
        )

    subscription.scheduled_downgrade_plan_id = target.plan_id
    subscription.scheduled_downgrade_date = subscription.current_period_end
    db.add(subscription)
    db.flush()
    invalidate_subscription_cache(user.id)
    logger.info(
        "Downgrade scheduled",
        user_id=str(user.id),
        subscription_id=str(subscription.id),
        plan_id=target.plan_id,
        effective=subscription.scheduled_downgrade_date.isoformat(),
    )
    return subscription, target


def set_auto_renewal(db: Session, *, user: User, enabled: bool) -> Subscription:
    # stored preference only; renewals are still bought as regular orders
    subscription = _require_active(db, user)
    subscription.auto_renewal = enabled
    db.add(subscription)
    db.flush()
    invalidate_subscription_cache(user.id)
    return subscription


def transaction_history(
    db: Session,
    *,
    user: User,
    page: int,
    page_size: int,
) -> Tuple[List[PaymentTransaction], int]:
    query = db.query(PaymentTransaction).filter(PaymentTransaction.user_id == user.id)
    total = query.count()
    items = (
        query.order_by(PaymentTransaction.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def _apply_one_downgrade(db: Session, subscription: Subscription) -> str:
    user = (
        db.query(User)
        .filter(User.id == subscription.user_id)
        .with_for_update()
        .first()
    )
    outcome = "expired" if subscription.cancel_at_period_end else "applied"
    expire_subscription(db, subscription, user)
    return outcome


def apply_scheduled_downgrades(
    db: Session,
    *,
    now: datetime,
    batch_size: int = 50,
) -> Dict[str, Any]:
    """
    Close out subscriptions whose scheduled downgrade is due.

    The row moves onto the target plan and expires with the paid period;
    the lower plan starts once it is bought. A subscription that is also
    set to cancel at period end just expires. Each subscription commits on
    its own so one failure does not block the rest.
    """
    due_ids = [
        row.id
        for row in db.query(Subscription.id)
        .filter(
            Subscription.status == "active",
            Subscription.scheduled_downgrade_plan_id.isnot(None),
            Subscription.scheduled_downgrade_date <= now,
        )
        .order_by(Subscription.scheduled_downgrade_date.asc())
        .limit(batch_size)
        .all()
    ]

    result: Dict[str, Any] = {
        "checked": len(due_ids),
        "applied": 0,
        "expired": 0,
        "errors": [],
    }

    for subscription_id in due_ids:
        try:
            subscription = (
                db.query(Subscription)
                .filter(
                    Subscription.id == subscription_id,
                    Subscription.status == "active",
                    Subscription.scheduled_downgrade_plan_id.isnot(None),
                )
                .with_for_update(skip_locked=True)
                .first()
            )
            if subscription is None:
                continue
            outcome = _apply_one_downgrade(db, subscription)
            db.commit()
            result[outcome] += 1
            logger.info(
                "Scheduled downgrade processed",
                subscription_id=str(subscription_id),
                outcome=outcome,
            )
        except Exception as exc:
            db.rollback()
            logger.opt(exception=exc).error(
                "Failed to apply scheduled downgrade",
                subscription_id=str(subscription_id),
            )
            result["errors"].append(
                {"subscription_id": str(subscription_id), "error": str(exc)}
            )

    return result


__all__ = [
    "SUBSCRIPTION_CACHE_KEY",
    "subscription_cache_key",
    "invalidate_subscription_cache",
    "get_live_subscription",
    "get_subscription_slot",
    "sync_user_entitlement",
    "apply_plan",
    "expire_subscription",
    "is_lapsed",
    "get_current_subscription",
    "get_active_subscription",
    "cancel_subscription",
    "reactivate_subscription",
    "schedule_downgrade",
    "set_auto_renewal",
    "transaction_history",
    "apply_scheduled_downgrades",
]
