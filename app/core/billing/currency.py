from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from app.core.billing.errors import ValidationError


@dataclass(frozen=True)
class CurrencyInfo:
    code: str
    symbol: str
    decimals: int
    name: str


CANONICAL_CURRENCY = "INR"

CURRENCIES: Dict[str, CurrencyInfo] = {
    "INR": CurrencyInfo(code="INR", symbol="₹", decimals=2, name="Indian Rupee"),
    "USD": CurrencyInfo(code="USD", symbol="$", decimals=2, name="US Dollar"),
    "KRW": CurrencyInfo(code="KRW", symbol="₩", decimals=0, name="South Korean Won"),
}

# canonical (INR) units per one unit of the currency
EXCHANGE_RATES: Dict[str, float] = {
    "INR": 1.0,
    "USD": 83.33,
    "KRW": 0.0625,
}

COUNTRY_CURRENCY: Dict[str, str] = {
    "IN": "INR",
    "KR": "KRW",
}

# major units; currencies missing here are converted from INR
PLAN_PRICES: Dict[str, Dict[str, float]] = {
    "basic_monthly": {"INR": 149, "USD": 1.99},
    "standard_quarterly": {"INR": 399, "USD": 4.99},
    "pro_yearly": {"INR": 999, "USD": 11.99},
}


def get_currency(code: str) -> CurrencyInfo:
    info = CURRENCIES.get((code or "").upper())
    if info is None:
        raise ValidationError(
            "Unsupported currency",
            code="BILLING_UNSUPPORTED_CURRENCY",
            details={"currency": code},
        )
    return info


def _country_from_accept_language(value: str) -> Optional[str]:
    for part in value.split(","):
        tag = part.split(";", 1)[0].strip()
        pieces = tag.replace("_", "-").split("-")
        for subtag in pieces[1:]:
            if len(subtag) == 2 and subtag.isalpha():
                return subtag.upper()
    return None


@dataclass(frozen=True)
class LocaleSignal:
    """
    What we know about where the user is paying from.

    A saved currency preference wins over anything detected from
    headers; an unknown country falls back to `fallback_currency`.
    """

    country_code: Optional[str] = None
    preferred_currency: Optional[str] = None
    fallback_currency: str = "USD"

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        *,
        preferred_currency: Optional[str] = None,
        fallback_currency: str = "USD",
    ) -> "LocaleSignal":
        lowered = {k.lower(): v for k, v in headers.items()}

        country: Optional[str] = None
        for header in ("cf-ipcountry", "x-country-code"):
            raw = (lowered.get(header) or "").strip()
            if raw:
                country = raw.upper()
                break

        if country is None:
            accept_language = lowered.get("accept-language")
            if accept_language:
                country = _country_from_accept_language(accept_language)

        return cls(
            country_code=country,
            preferred_currency=preferred_currency,
            fallback_currency=fallback_currency,
        )

    @property
    def currency(self) -> str:
        if self.preferred_currency and self.preferred_currency.upper() in CURRENCIES:
            return self.preferred_currency.upper()
        if self.country_code and self.country_code in COUNTRY_CURRENCY:
            return COUNTRY_CURRENCY[self.country_code]
        return self.fallback_currency.upper()


@dataclass(frozen=True)
class PriceQuote:
    plan_id: str
    amount: float
    currency_code: str
    symbol: str

    @property
    def amount_minor(self) -> int:
        return to_minor_units(self.amount, self.currency_code)


def round_to_currency(amount: float, currency: str) -> float:
    decimals = get_currency(currency).decimals
    rounded = round(amount, decimals)
    return float(int(rounded)) if decimals == 0 else rounded


def convert_amount(
    amount: float,
    from_currency: str,
    to_currency: str,
    *,
    rates: Optional[Mapping[str, float]] = None,
    rounded: bool = True,
) -> float:
    rates = rates or EXCHANGE_RATES
    src = get_currency(from_currency).code
    dst = get_currency(to_currency).code
    if src == dst:
        return round_to_currency(amount, dst) if rounded else float(amount)

    converted = float(amount) * rates[src] / rates[dst]
    if not rounded:
        return converted
    return round_to_currency(converted, dst)


def to_minor_units(amount: float, currency: str) -> int:
    decimals = get_currency(currency).decimals
    return int(round(float(amount) * (10**decimals)))


def from_minor_units(amount: int, currency: str) -> float:
    decimals = get_currency(currency).decimals
    if decimals == 0:
        return float(amount)
    return round(amount / (10**decimals), decimals)


def resolve_price(
    plan_id: str,
    locale: LocaleSignal,
    *,
    rates: Optional[Mapping[str, float]] = None,
) -> PriceQuote:
    prices = PLAN_PRICES.get(plan_id)
    if prices is None:
        raise ValidationError(
            "Invalid plan ID",
            code="BILLING_UNKNOWN_PLAN",
            details={"plan_id": plan_id},
        )

    currency = locale.currency
    if currency not in CURRENCIES:
        currency = CANONICAL_CURRENCY
    info = CURRENCIES[currency]

    if currency in prices:
        amount = float(prices[currency])
    else:
        amount = convert_amount(
            prices[CANONICAL_CURRENCY], CANONICAL_CURRENCY, currency, rates=rates
        )

    return PriceQuote(
        plan_id=plan_id,
        amount=amount,
        currency_code=info.code,
        symbol=info.symbol,
    )


__all__ = [
    "CurrencyInfo",
    "CANONICAL_CURRENCY",
    "CURRENCIES",
    "EXCHANGE_RATES",
    "PLAN_PRICES",
    "LocaleSignal",
    "PriceQuote",
    "get_currency",
    "round_to_currency",
    "convert_amount",
    "to_minor_units",
    "from_minor_units",
    "resolve_price",
]
