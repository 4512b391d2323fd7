from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.core.billing.schemas import WebhookAck
from app.core.billing.services import BillingService, get_billing_service
from app.core.dependencies import get_db
from app.response import StandardResponse, make_success_response


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/razorpay",
    response_model=StandardResponse,
    summary="Razorpay payment events",
)
async def razorpay_webhook(
    request: Request,
    signature: str | None = Header(default=None, alias="X-Razorpay-Signature"),
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
) -> StandardResponse:
    body = await request.body()
    ack = await run_in_threadpool(
        service.handle_webhook, db, body=body, signature=signature or ""
    )
    return make_success_response(result=WebhookAck(**ack))


__all__ = ["router"]
