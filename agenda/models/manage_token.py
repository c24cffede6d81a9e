# agenda/models/manage_token.py
from datetime import datetime, timezone

from sqlalchemy import Column, String, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from agenda.models.base import Base, UTCDateTime, utcnow


class AppointmentManageToken(Base):
    """
    Anonymous self-service credential for exactly one appointment.
    Only the SHA-256 of the raw token is stored; the raw value lives in the customer's link.
    """
    __tablename__ = "appointment_manage_tokens"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    appointment_id = Column(
        UUID(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    expires_at = Column(UTCDateTime, nullable=False)
    used_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())

    appointment = relationship("Appointment")

    def is_expired(self, now: datetime = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def __repr__(self):
        return f"<AppointmentManageToken appointment={self.appointment_id} hash={self.token_hash[:8]}...>"
