from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Mapping, Optional, Tuple

from loguru import logger

from app.core.billing.currency import (
    convert_amount,
    from_minor_units,
    get_currency,
    round_to_currency,
    to_minor_units,
)
from app.core.billing.errors import ImplausibleSubscriptionPricing
from app.core.billing.models import Subscription
from app.core.billing.plans import DURATION_MONTHS, plan_rank


DAYS_PER_MONTH = 30
SECONDS_PER_DAY = 86400

MIN_PLAUSIBLE_PRICE = 0.01
MIN_PLAUSIBLE_BY_CURRENCY = {
    "INR": 50.0,
    "USD": 0.99,
}


@dataclass(frozen=True)
class ExistingPricing:
    currency: str
    display_price: float
    correction: Optional[str] = None


@dataclass(frozen=True)
class UpgradeQuote:
    is_upgrade: bool
    proration_credit: float = 0.0
    remaining_days: int = 0
    daily_rate: float = 0.0
    existing_currency: Optional[str] = None
    new_currency: Optional[str] = None
    currency_converted: bool = False
    reason: str = ""

    @property
    def credit_minor(self) -> int:
        if not self.proration_credit or self.new_currency is None:
            return 0
        return to_minor_units(self.proration_credit, self.new_currency)


def _infer_currency(subscription: Subscription) -> str:
    amount = subscription.amount or 0
    if amount < 1000:
        # dollars below 100, cents below 1000
        return "USD"
    if amount > 10000:
        return "INR"
    if subscription.display_price:
        return "USD" if subscription.display_price < 20 else "INR"
    return "INR"


def _infer_display_price(amount: int, currency: str) -> float:
    if currency == "USD":
        if amount < 100:
            return float(amount)
        if amount < 1000:
            return round(amount / 100, 2)
        # INR paise stored for a USD plan
        return round(amount / 8333, 2)
    if currency == "INR":
        if amount < 1000:
            return float(amount)
        return amount / 100
    return from_minor_units(amount, currency)


def _plausibility_problems(currency: str, price: float) -> List[str]:
    problems: List[str] = []
    if price < MIN_PLAUSIBLE_PRICE:
        problems.append(f"display price too small: {price}")
    floor = MIN_PLAUSIBLE_BY_CURRENCY.get(currency)
    if floor is not None and price < floor:
        problems.append(f"{currency} display price suspiciously low: {price}")
    return problems


def _attempt_correction(
    subscription: Subscription, currency: str, price: float
) -> Optional[Tuple[str, float, str]]:
    amount = subscription.amount or 0

    if currency == "INR" and price < MIN_PLAUSIBLE_BY_CURRENCY["INR"]:
        if 1 <= amount <= 20:
            return "USD", float(amount), "INR price too low, amount read as USD dollars"
        if 99 <= amount <= 2000:
            return "USD", round(amount / 100, 2), "INR price too low, amount read as USD cents"

    if currency == "USD" and price < MIN_PLAUSIBLE_BY_CURRENCY["USD"]:
        if 99 <= amount <= 2000:
            return "USD", round(amount / 100, 2), "USD amount read as cents"
        if amount >= 5000:
            return "INR", amount / 100, "USD price too low, amount read as INR paise"

    if "basic" in (subscription.plan_id or "").lower() and amount >= 10000:
        return "INR", amount / 100, "basic plan amount read as INR paise"

    return None


def resolve_existing_pricing(subscription: Subscription) -> ExistingPricing:
    """
    Work out what the user actually paid for `subscription`, in major units.

    Legacy rows may be missing `currency`/`display_price` or carry a
    USD price stored as if it were INR. Inputs below a plausibility floor
    get one reinterpretation attempt; if that fails too the calculation
    is refused instead of producing a near-zero credit.
    """
    currency = (subscription.currency or "").upper() or _infer_currency(subscription)
    price = subscription.display_price
    if not price:
        price = _infer_display_price(subscription.amount or 0, currency)

    problems = _plausibility_problems(currency, price)
    if not problems:
        return ExistingPricing(currency=currency, display_price=price)

    logger.warning(
        "Implausible subscription pricing",
        subscription_id=str(subscription.id),
        amount=subscription.amount,
        display_price=subscription.display_price,
        currency=subscription.currency,
        plan_id=subscription.plan_id,
        problems=problems,
    )

    corrected = _attempt_correction(subscription, currency, price)
    if corrected is None:
        raise ImplausibleSubscriptionPricing(problems, subscription_id=subscription.id)

    new_currency, new_price, reason = corrected
    remaining = _plausibility_problems(new_currency, new_price)
    if remaining:
        raise ImplausibleSubscriptionPricing(
            problems + remaining, subscription_id=subscription.id
        )

    logger.info(
        "Applied subscription pricing correction",
        subscription_id=str(subscription.id),
        currency=new_currency,
        display_price=new_price,
        reason=reason,
    )
    return ExistingPricing(currency=new_currency, display_price=new_price, correction=reason)


def remaining_days(period_end: datetime, now: datetime) -> int:
    seconds = (period_end - now).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def calculate_upgrade(
    existing: Subscription,
    new_plan_id: str,
    new_currency: str,
    *,
    now: datetime,
    rates: Optional[Mapping[str, float]] = None,
) -> UpgradeQuote:
    """
    Credit owed for the unused part of `existing` when moving to `new_plan_id`.

    Only strictly higher-ranked plans are upgrades. The daily rate uses a
    fixed 30-day month. The returned credit is in `new_currency` major
    units and never negative; clamping the payable amount is the caller's
    job.
    """
    new_currency = get_currency(new_currency).code
    current_rank = plan_rank(existing.plan_id)
    new_rank = plan_rank(new_plan_id)
    if new_rank <= current_rank:
        return UpgradeQuote(
            is_upgrade=False,
            new_currency=new_currency,
            reason="Not an upgrade - same or lower tier",
        )

    pricing = resolve_existing_pricing(existing)

    interval_count = existing.interval_count or DURATION_MONTHS.get(
        existing.plan_duration, 1
    )
    days = remaining_days(existing.current_period_end, now)
    daily_rate = pricing.display_price / (interval_count * DAYS_PER_MONTH)
    raw_credit = round(days * daily_rate, 2)

    converted = pricing.currency != new_currency
    if converted:
        credit = convert_amount(raw_credit, pricing.currency, new_currency, rates=rates)
    else:
        credit = round_to_currency(raw_credit, new_currency)

    return UpgradeQuote(
        is_upgrade=True,
        proration_credit=max(0.0, credit),
        remaining_days=days,
        daily_rate=daily_rate,
        existing_currency=pricing.currency,
        new_currency=new_currency,
        currency_converted=converted,
        reason=f"Upgrade from {existing.plan_id} to {new_plan_id}",
    )


__all__ = [
    "ExistingPricing",
    "UpgradeQuote",
    "resolve_existing_pricing",
    "remaining_days",
    "calculate_upgrade",
]
