# agenda/models/appointment.py
from sqlalchemy import Column, String, Text, ForeignKey, JSON, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
import uuid

from agenda.models.base import Base, UTCDateTime, utcnow


class AppointmentStatus(str, enum.Enum):
    BOOKED = "booked"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELED = "canceled"
    NO_SHOW = "no_show"


# Statuses that occupy a professional's calendar
ACTIVE_STATUSES = (AppointmentStatus.BOOKED.value, AppointmentStatus.CONFIRMED.value)


class AppointmentEventType(str, enum.Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    PROFESSIONAL_CHANGED = "professional_changed"
    CANCELED = "canceled"
    COMPLETED = "completed"
    NO_SHOW_MARKED = "no_show_marked"


class ActorType(str, enum.Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"
    SYSTEM = "system"


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_professional_start", "professional_id", "start_at"),
        Index("ix_appointments_establishment_created", "establishment_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # References
    establishment_id = Column(UUID(as_uuid=True), ForeignKey("establishments.id"), nullable=False)
    professional_id = Column(UUID(as_uuid=True), ForeignKey("professionals.id"), nullable=False)
    service_id = Column(UUID(as_uuid=True), ForeignKey("services.id"), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False)

    # end_at = start_at + service duration at booking time
    start_at = Column(UTCDateTime, nullable=False)
    end_at = Column(UTCDateTime, nullable=False)

    status = Column(String(20), nullable=False, default=AppointmentStatus.BOOKED.value)
    customer_notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    establishment = relationship("Establishment")
    professional = relationship("Professional")
    service = relationship("Service")
    customer = relationship("Customer")
    events = relationship(
        "AppointmentEvent", back_populates="appointment", order_by="AppointmentEvent.created_at"
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def __repr__(self):
        return f"<Appointment(id={self.id}, status={self.status}, start_at={self.start_at})>"


class AppointmentEvent(Base):
    """Append-only audit trail, one row per state transition"""
    __tablename__ = "appointment_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    appointment_id = Column(
        UUID(as_uuid=True), ForeignKey("appointments.id"), nullable=False, index=True
    )
    event_type = Column(String(30), nullable=False)
    actor_type = Column(String(20), nullable=False)
    actor_user_id = Column(UUID(as_uuid=True), nullable=True)
    from_payload = Column(JSON, nullable=True)
    to_payload = Column(JSON, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())

    appointment = relationship("Appointment", back_populates="events")

    def __repr__(self):
        return f"<AppointmentEvent(appointment_id={self.appointment_id}, type={self.event_type})>"
