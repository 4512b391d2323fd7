from __future__ import annotations

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from app.database.base import Base, UTCDateTime


JSONType = JSON().with_variant(JSONB(), "postgresql")

ORDER_STATUSES = ("created", "processing", "paid", "failed", "expired")
TRANSACTION_STATUSES = ("pending", "completed", "failed")
SUBSCRIPTION_STATUSES = ("active", "cancelled", "expired", "trialing")
LIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


class PaymentOrder(Base):
    __tablename__ = "payment_orders"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "gateway_order_id",
            name="uq_payment_orders_user_gateway_order",
        ),
    )

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    order_id = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = Column(String, nullable=False)
    gateway_order_id = Column(String, nullable=False, index=True)

    amount = Column(Integer, nullable=False)  # minor units, after proration
    original_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default="created")

    plan_snapshot = Column(JSONType, nullable=False)
    user_snapshot = Column(JSONType, nullable=True)
    proration_credit = Column(Integer, nullable=False, default=0)
    existing_subscription_id = Column(Uuid(as_uuid=True), nullable=True)
    user_agent = Column(String, nullable=True)

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    user = relationship("User")


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = Column(String, nullable=False)
    plan_type = Column(String, nullable=False)
    plan_duration = Column(String, nullable=False)

    gateway_order_id = Column(String, nullable=True, index=True)
    # idempotency key for repeated deliveries of the same payment
    gateway_payment_id = Column(String, nullable=True, unique=True)
    gateway_signature = Column(String, nullable=True)

    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String(3), nullable=False)
    transaction_type = Column(
        String, nullable=False, default="subscription_creation"
    )  # subscription_creation|subscription_upgrade
    status = Column(String, nullable=False, default="pending", index=True)
    completed_at = Column(UTCDateTime(), nullable=True)
    failure_reason = Column(Text, nullable=True)

    plan_snapshot = Column(JSONType, nullable=True)
    payment_order_id = Column(Uuid(as_uuid=True), nullable=True)
    prior_subscription_id = Column(Uuid(as_uuid=True), nullable=True)
    proration_credit = Column(Integer, nullable=False, default=0)
    subscription_id = Column(Uuid(as_uuid=True), nullable=True)

    recovery_method = Column(String, nullable=True)  # automatic|manual
    recovered_at = Column(UTCDateTime(), nullable=True)

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
        index=True,
    )
    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    user = relationship("User")

    @property
    def is_upgrade(self) -> bool:
        return self.transaction_type == "subscription_upgrade"


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # at most one live subscription per user
        Index(
            "uq_subscriptions_user_active",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'trialing')"),
            sqlite_where=text("status IN ('active', 'trialing')"),
        ),
    )

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    plan_id = Column(String, nullable=False)
    plan_type = Column(String, nullable=False)
    plan_name = Column(String, nullable=False)
    plan_duration = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")

    amount = Column(Integer, nullable=False)  # minor units
    # legacy rows may lack these
    display_price = Column(Float, nullable=True)
    currency = Column(String(3), nullable=True)
    interval_count = Column(Integer, nullable=False, default=1)

    current_period_start = Column(UTCDateTime(), nullable=False)
    current_period_end = Column(UTCDateTime(), nullable=False)
    next_billing_date = Column(UTCDateTime(), nullable=True)

    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancel_reason = Column(String, nullable=True)
    cancelled_at = Column(UTCDateTime(), nullable=True)

    scheduled_downgrade_plan_id = Column(String, nullable=True)
    scheduled_downgrade_date = Column(UTCDateTime(), nullable=True)

    auto_renewal = Column(Boolean, nullable=False, default=True)
    features = Column(JSONType, nullable=True)

    source_transaction_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    prior_subscription_id = Column(Uuid(as_uuid=True), nullable=True)
    prior_plan_id = Column(String, nullable=True)
    applied_proration_credit = Column(Integer, nullable=False, default=0)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    user = relationship("User")

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_SUBSCRIPTION_STATUSES


__all__ = [
    "ORDER_STATUSES",
    "TRANSACTION_STATUSES",
    "SUBSCRIPTION_STATUSES",
    "LIVE_SUBSCRIPTION_STATUSES",
    "PaymentOrder",
    "PaymentTransaction",
    "Subscription",
]
