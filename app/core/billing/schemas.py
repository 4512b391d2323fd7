from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict


class PlanPublic(BaseModel):
    id: str
    name: str
    description: str
    tier: str
    duration: str
    interval_count: int
    price: float
    currency: str
    currency_symbol: str
    features: dict[str, Any]
    perks: list[str]
    popular: bool


class PlansResponse(BaseModel):
    plans: list[PlanPublic]
    currency: str
    country_code: Optional[str] = None


class SubscriptionPublic(BaseModel):
    id: uuid.UUID
    plan_id: str
    plan_type: str
    plan_name: str
    plan_duration: str
    status: str
    amount: int
    display_price: Optional[float] = None
    currency: Optional[str] = None
    interval_count: int
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: Optional[datetime] = None
    cancel_at_period_end: bool
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    scheduled_downgrade_plan_id: Optional[str] = None
    scheduled_downgrade_date: Optional[datetime] = None
    auto_renewal: bool
    features: Optional[dict[str, Any]] = None
    source_transaction_id: Optional[uuid.UUID] = None
    prior_subscription_id: Optional[uuid.UUID] = None
    prior_plan_id: Optional[str] = None
    applied_proration_credit: int = 0

    model_config = ConfigDict(from_attributes=True)


class CurrentSubscriptionResponse(BaseModel):
    subscription: Optional[SubscriptionPublic] = None
    has_active_subscription: bool


class CreateOrderRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)


class ExistingSubscriptionBrief(BaseModel):
    plan_id: str
    current_period_end: datetime


class CreateOrderResponse(BaseModel):
    order_id: str
    gateway_order_id: str
    amount: int  # minor units
    original_amount: int
    proration_credit: int
    currency: str
    plan: dict[str, Any]
    payment_url: str
    existing_subscription: Optional[ExistingSubscriptionBrief] = None


class VerifyPaymentRequest(BaseModel):
    gateway_order_id: str = Field(..., min_length=1)
    gateway_payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class TransactionPublic(BaseModel):
    id: uuid.UUID
    plan_id: str
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    amount: int
    currency: str
    transaction_type: str
    status: str
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    proration_credit: int = 0
    subscription_id: Optional[uuid.UUID] = None
    recovery_method: Optional[str] = None
    recovered_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VerifyPaymentResponse(BaseModel):
    subscription: SubscriptionPublic
    transaction: TransactionPublic
    proration_credit: int
    already_processed: bool


class UpgradePreviewResponse(BaseModel):
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

    model_config = ConfigDict(from_attributes=True)


class CancelResponse(BaseModel):
    subscription: SubscriptionPublic
    active_until: datetime


class ScheduleDowngradeRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)


class ScheduleDowngradeResponse(BaseModel):
    current_plan_id: str
    scheduled_plan_id: str
    scheduled_plan_name: str
    effective_date: datetime


class AutoRenewalRequest(BaseModel):
    auto_renewal: bool


class AutoRenewalResponse(BaseModel):
    auto_renewal: bool


class RecoveryCheckResponse(BaseModel):
    status: str
    message: str
    subscription: Optional[SubscriptionPublic] = None


class RecoverPendingRequest(BaseModel):
    batch_size: Optional[int] = Field(default=None, ge=1, le=500)


class SweepResponse(BaseModel):
    checked: int
    recovered: int
    failed: int
    skipped: int
    errors: list[dict[str, Any]]


class PaymentPrefill(BaseModel):
    name: str = ""
    email: str = ""
    contact: str = ""


class PaymentDetailsResponse(BaseModel):
    key: str
    order_id: str
    gateway_order_id: str
    amount: int
    original_amount: int
    proration_credit: int
    currency: str
    name: str
    description: str
    plan: dict[str, Any]
    prefill: PaymentPrefill
    expires_at: datetime


class WebhookAck(BaseModel):
    event: Optional[str] = None
    status: str
    subscription_id: Optional[str] = None
    already_processed: Optional[bool] = None


__all__ = [
    "PlanPublic",
    "PlansResponse",
    "SubscriptionPublic",
    "CurrentSubscriptionResponse",
    "CreateOrderRequest",
    "ExistingSubscriptionBrief",
    "CreateOrderResponse",
    "VerifyPaymentRequest",
    "TransactionPublic",
    "VerifyPaymentResponse",
    "UpgradePreviewResponse",
    "CancelResponse",
    "ScheduleDowngradeRequest",
    "ScheduleDowngradeResponse",
    "AutoRenewalRequest",
    "AutoRenewalResponse",
    "RecoveryCheckResponse",
    "RecoverPendingRequest",
    "SweepResponse",
    "PaymentPrefill",
    "PaymentDetailsResponse",
    "WebhookAck",
]
