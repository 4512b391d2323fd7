from __future__ import annotations

from datetime import timedelta

import pytest

from app.core.billing.currency import LocaleSignal, resolve_price
from app.core.billing.errors import ImplausibleSubscriptionPricing
from app.core.billing.models import Subscription
from app.core.billing.proration import (
    calculate_upgrade,
    remaining_days,
    resolve_existing_pricing,
)

from tests.conftest import START


def _subscription(**overrides) -> Subscription:
    values = {
        "plan_id": "basic_monthly",
        "plan_type": "basic",
        "plan_name": "Basic",
        "plan_duration": "monthly",
        "status": "active",
        "amount": 14900,
        "display_price": 149.0,
        "currency": "INR",
        "interval_count": 1,
        "current_period_start": START - timedelta(days=3),
        "current_period_end": START + timedelta(days=27),
    }
    values.update(overrides)
    return Subscription(**values)


def test_basic_to_standard_with_27_days_left():
    quote = calculate_upgrade(_subscription(), "standard_quarterly", "INR", now=START)

    assert quote.is_upgrade
    assert quote.remaining_days == 27
    assert quote.daily_rate == pytest.approx(149 / 30)
    assert quote.proration_credit == pytest.approx(134.10)
    assert quote.credit_minor == 13410
    assert not quote.currency_converted

    price = resolve_price("standard_quarterly", LocaleSignal(preferred_currency="INR"))
    assert price.amount_minor - quote.credit_minor == 26490


def test_same_or_lower_tier_is_not_an_upgrade():
    same = calculate_upgrade(_subscription(), "basic_monthly", "INR", now=START)
    assert not same.is_upgrade
    assert same.proration_credit == 0

    lower = calculate_upgrade(
        _subscription(plan_id="pro_yearly", plan_type="pro", interval_count=12),
        "standard_quarterly",
        "INR",
        now=START,
    )
    assert not lower.is_upgrade
    assert lower.credit_minor == 0


def test_tier_check_happens_before_pricing_sanity():
    broken = _subscription(display_price=0.5, amount=50)
    quote = calculate_upgrade(broken, "basic_monthly", "INR", now=START)
    assert not quote.is_upgrade


def test_elapsed_period_gives_no_credit():
    expired = _subscription(current_period_end=START - timedelta(days=2))
    quote = calculate_upgrade(expired, "pro_yearly", "INR", now=START)

    assert quote.is_upgrade
    assert quote.remaining_days == 0
    assert quote.proration_credit == 0


def test_partial_day_counts_as_a_full_day():
    end = START + timedelta(days=2, hours=1)
    assert remaining_days(end, START) == 3
    assert remaining_days(START - timedelta(seconds=1), START) == 0


def test_implausible_pricing_is_refused():
    broken = _subscription(display_price=0.5, amount=50)
    with pytest.raises(ImplausibleSubscriptionPricing) as exc_info:
        calculate_upgrade(broken, "standard_quarterly", "INR", now=START)

    assert exc_info.value.http_code == 422
    assert exc_info.value.problems


def test_usd_price_stored_as_inr_is_corrected():
    legacy = _subscription(display_price=1.99, amount=199, currency="INR")

    pricing = resolve_existing_pricing(legacy)
    assert pricing.currency == "USD"
    assert pricing.display_price == pytest.approx(1.99)
    assert pricing.correction

    quote = calculate_upgrade(legacy, "standard_quarterly", "USD", now=START)
    assert quote.proration_credit == pytest.approx(1.79)
    assert not quote.currency_converted


def test_missing_currency_and_display_price_are_inferred():
    legacy = _subscription(display_price=None, currency=None)

    pricing = resolve_existing_pricing(legacy)
    assert pricing.currency == "INR"
    assert pricing.display_price == pytest.approx(149.0)

    quote = calculate_upgrade(legacy, "standard_quarterly", "INR", now=START)
    assert quote.credit_minor == 13410


def test_credit_is_converted_into_the_new_currency():
    usd = _subscription(display_price=1.99, amount=199, currency="USD")
    quote = calculate_upgrade(usd, "standard_quarterly", "INR", now=START)

    assert quote.currency_converted
    assert quote.existing_currency == "USD"
    assert quote.new_currency == "INR"
    assert quote.proration_credit == pytest.approx(149.16)


def test_credit_never_negative():
    for days in (0, 1, 15, 90):
        sub = _subscription(current_period_end=START + timedelta(days=days))
        quote = calculate_upgrade(sub, "pro_yearly", "INR", now=START)
        assert quote.proration_credit >= 0
