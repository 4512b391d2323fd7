from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, String, Uuid, func

from app.database.base import Base, UTCDateTime


class User(Base):
    __tablename__ = "users"

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    preferred_currency = Column(String(3), nullable=True)

    # denormalised from the active subscription for fast reads
    subscription_tier = Column(String, nullable=False, default="free")
    subscription_status = Column(String, nullable=False, default="none")
    current_subscription_id = Column(Uuid(as_uuid=True), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    is_superuser = Column(Boolean, nullable=False, default=False)

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


__all__ = ["User"]
