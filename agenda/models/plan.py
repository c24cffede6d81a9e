# agenda/models/plan.py
"""
Plans, subscriptions and the monthly usage cache
"""
from sqlalchemy import Column, String, Boolean, Integer, Text, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
import enum
import uuid

from agenda.models.base import Base, UTCDateTime, utcnow


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Plan(Base):
    __tablename__ = "plans"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String(50), nullable=False, unique=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    price_cents = Column(Integer, nullable=False, default=0)

    # NULL means unlimited
    max_professionals = Column(Integer, nullable=True)
    max_appointments_month = Column(Integer, nullable=True)
    allow_multi_establishments = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())

    def __repr__(self):
        return f"<Plan(code={self.code})>"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_user_id = Column(UUID(as_uuid=True), nullable=False, unique=True)
    plan_code = Column(String(50), ForeignKey("plans.code"), nullable=False)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)

    current_period_start = Column(UTCDateTime, nullable=False, default=utcnow)
    current_period_end = Column(UTCDateTime, nullable=False)

    provider = Column(String(50), nullable=True)
    provider_subscription_id = Column(String(255), nullable=True)
    provider_order_id = Column(String(255), nullable=True)
    buyer_email = Column(String(255), nullable=True)
    raw_last_event = Column(JSON, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Subscription(owner={self.owner_user_id}, plan={self.plan_code}, status={self.status})>"


class BillingWebhookEvent(Base):
    """Idempotency log for billing provider events"""
    __tablename__ = "billing_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_billing_webhook_events_provider_event"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    received_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    processed_at = Column(UTCDateTime, nullable=True)
    processing_error = Column(Text, nullable=True)


class EstablishmentMonthlyUsage(Base):
    """Cached monthly appointment count, reconciled from real counts on every insert"""
    __tablename__ = "establishment_monthly_usage"
    __table_args__ = (
        UniqueConstraint("establishment_id", "year", "month", name="uq_monthly_usage_period"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    establishment_id = Column(
        UUID(as_uuid=True), ForeignKey("establishments.id", ondelete="CASCADE"), nullable=False
    )
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    appointments_count = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
