from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from app.core.auth.models import User
from app.core.billing.schemas import PlanPublic, PlansResponse
from app.core.billing.services import BillingService, get_billing_service
from app.core.dependencies import get_db
from app.core.security import ACCESS_TOKEN_TYPE, decode_token
from app.response import StandardResponse, make_success_response


router = APIRouter(prefix="/plans", tags=["plans"])


def _optional_user(
    authorization: str | None = Header(default=None, alias="Authorization"),
    db: Session = Depends(get_db),
) -> User | None:
    # anonymous visitors get location-based pricing
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    try:
        payload = decode_token(authorization.split(" ", 1)[1])
        user_id = uuid.UUID(payload.get("sub"))
    except Exception:
        return None
    if payload.get("type") != ACCESS_TOKEN_TYPE:
        return None
    return db.query(User).filter(User.id == user_id).first()


@router.get(
    "",
    response_model=StandardResponse,
    summary="Available plans priced for the caller's locale",
)
def list_plans(
    request: Request,
    user: User | None = Depends(_optional_user),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    locale = service.locale_for(request.headers, user)
    plans = [
        PlanPublic(
            id=plan.plan_id,
            name=plan.name,
            description=plan.description,
            tier=plan.tier,
            duration=plan.duration,
            interval_count=plan.interval_count,
            price=price.amount,
            currency=price.currency_code,
            currency_symbol=price.symbol,
            features=plan.features.as_dict(),
            perks=list(plan.perks),
            popular=plan.popular,
        )
        for plan, price in service.plans_for(locale)
    ]
    return make_success_response(
        result=PlansResponse(
            plans=plans,
            currency=locale.currency,
            country_code=locale.country_code,
        )
    )


__all__ = ["router"]
