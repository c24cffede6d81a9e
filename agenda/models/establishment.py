# agenda/models/establishment.py
"""
Establishment (tenant) and its weekly business hours
"""
from sqlalchemy import Column, String, Boolean, Integer, Text, Time, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from agenda.models.base import Base, UTCDateTime, utcnow


class Establishment(Base):
    __tablename__ = "establishments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    timezone = Column(String(50), nullable=False, default="America/Sao_Paulo")

    # Booking configuration
    booking_enabled = Column(Boolean, nullable=False, default=True)
    auto_confirm_bookings = Column(Boolean, nullable=False, default=False)
    slot_interval_minutes = Column(Integer, nullable=False, default=15)
    buffer_minutes = Column(Integer, nullable=False, default=0)
    max_future_days = Column(Integer, nullable=False, default=30)
    reschedule_min_hours = Column(Integer, nullable=False, default=2)

    # Public form / policy flags
    require_policy_acceptance = Column(Boolean, nullable=False, default=False)
    cancellation_policy_text = Column(Text, nullable=True)
    ask_email = Column(Boolean, nullable=False, default=False)
    ask_notes = Column(Boolean, nullable=False, default=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())

    business_hours = relationship(
        "BusinessHours", back_populates="establishment", cascade="all, delete-orphan"
    )
    professionals = relationship("Professional", back_populates="establishment")
    services = relationship("Service", back_populates="establishment")

    def __repr__(self):
        return f"<Establishment(id={self.id}, slug={self.slug})>"


class BusinessHours(Base):
    """Weekly opening hours. weekday: 0=Sunday .. 6=Saturday"""
    __tablename__ = "business_hours"
    __table_args__ = (
        UniqueConstraint("establishment_id", "weekday", name="uq_business_hours_weekday"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    establishment_id = Column(
        UUID(as_uuid=True), ForeignKey("establishments.id", ondelete="CASCADE"), nullable=False
    )
    weekday = Column(Integer, nullable=False)
    open_time = Column(Time, nullable=True)
    close_time = Column(Time, nullable=True)
    closed = Column(Boolean, nullable=False, default=False)

    establishment = relationship("Establishment", back_populates="business_hours")

    def __repr__(self):
        return f"<BusinessHours(establishment_id={self.establishment_id}, weekday={self.weekday})>"
