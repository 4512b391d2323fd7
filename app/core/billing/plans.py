from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Tuple

from app.core.billing.errors import ValidationError


PlanDuration = Literal["monthly", "quarterly", "yearly"]

PLAN_HIERARCHY: Dict[str, int] = {
    "basic": 1,
    "standard": 2,
    "pro": 3,
}

DURATION_MONTHS: Dict[str, int] = {
    "monthly": 1,
    "quarterly": 3,
    "yearly": 12,
}


@dataclass(frozen=True)
class PlanFeatures:
    lessons_per_period: int
    has_forum_access: bool = False
    has_live_chat_support: bool = False
    has_bonus_content: bool = False
    has_certification: bool = False
    has_early_access: bool = False
    discount_percentage: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "lessons_per_period": self.lessons_per_period,
            "has_forum_access": self.has_forum_access,
            "has_live_chat_support": self.has_live_chat_support,
            "has_bonus_content": self.has_bonus_content,
            "has_certification": self.has_certification,
            "has_early_access": self.has_early_access,
            "discount_percentage": self.discount_percentage,
        }


@dataclass(frozen=True)
class PlanDefinition:
    plan_id: str
    tier: str
    duration: PlanDuration
    name: str
    description: str
    interval_count: int
    features: PlanFeatures
    perks: Tuple[str, ...] = field(default_factory=tuple)
    popular: bool = False

    @property
    def rank(self) -> int:
        return PLAN_HIERARCHY[self.tier]


PLAN_CATALOG: Dict[str, PlanDefinition] = {
    "basic_monthly": PlanDefinition(
        plan_id="basic_monthly",
        tier="basic",
        duration="monthly",
        name="Basic",
        description="Perfect for getting started with Korean learning",
        interval_count=1,
        features=PlanFeatures(lessons_per_period=10),
        perks=("Access to monthly newsletters only",),
    ),
    "standard_quarterly": PlanDefinition(
        plan_id="standard_quarterly",
        tier="standard",
        duration="quarterly",
        name="Standard",
        description="Most popular choice for serious learners",
        interval_count=3,
        features=PlanFeatures(
            lessons_per_period=30,
            has_forum_access=True,
            has_bonus_content=True,
            has_certification=True,
            has_early_access=True,
        ),
        perks=(
            "Early access to upcoming lessons",
            "Quarterly live Q&A session",
        ),
        popular=True,
    ),
    "pro_yearly": PlanDefinition(
        plan_id="pro_yearly",
        tier="pro",
        duration="yearly",
        name="Pro",
        description="Ultimate Korean learning experience with all features",
        interval_count=12,
        features=PlanFeatures(
            lessons_per_period=120,
            has_forum_access=True,
            has_live_chat_support=True,
            has_bonus_content=True,
            has_certification=True,
            has_early_access=True,
            discount_percentage=10,
        ),
        perks=(
            "Early-bird access to new features and lessons",
            "10% discount on workshops and one-on-one coaching packages",
        ),
    ),
}


def parse_plan_id(plan_id: str) -> Tuple[str, str]:
    """Split `<tier>_<duration>`; a missing duration comes back empty."""
    tier, _, duration = (plan_id or "").partition("_")
    return tier, duration


def plan_rank(plan_id: str) -> int:
    tier, _ = parse_plan_id(plan_id)
    return PLAN_HIERARCHY.get(tier, 0)


def get_plan(plan_id: str) -> PlanDefinition:
    plan = PLAN_CATALOG.get(plan_id)
    if plan is None:
        raise ValidationError(
            "Invalid plan ID",
            code="BILLING_UNKNOWN_PLAN",
            details={"plan_id": plan_id},
        )
    return plan


def list_plans() -> List[PlanDefinition]:
    return sorted(PLAN_CATALOG.values(), key=lambda p: p.rank)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end(start: datetime, duration: str) -> datetime:
    # unknown durations bill monthly
    return add_months(start, DURATION_MONTHS.get(duration, 1))


__all__ = [
    "PlanDuration",
    "PLAN_HIERARCHY",
    "DURATION_MONTHS",
    "PlanFeatures",
    "PlanDefinition",
    "PLAN_CATALOG",
    "parse_plan_id",
    "plan_rank",
    "get_plan",
    "list_plans",
    "add_months",
    "period_end",
]
