# agenda/models/service.py
"""
Service Model - what customers book.
duration_minutes is the single source of truth for an appointment's end time.
"""
from sqlalchemy import Column, String, Integer, ForeignKey, Boolean, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from agenda.models.base import Base, UTCDateTime, utcnow


class Service(Base):
    __tablename__ = "services"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    establishment_id = Column(
        UUID(as_uuid=True),
        ForeignKey("establishments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())

    establishment = relationship("Establishment", back_populates="services")

    def __repr__(self):
        return f"<Service(id={self.id}, name={self.name}, establishment_id={self.establishment_id})>"

    @property
    def formatted_price(self) -> str:
        """Return human-readable price string"""
        if self.price_cents is None:
            return "Consult"
        return f"R$ {self.price_cents / 100:.2f}".replace(".", ",")

    @property
    def formatted_duration(self) -> str:
        """Return human-readable duration string"""
        hours = self.duration_minutes // 60
        minutes = self.duration_minutes % 60

        if hours > 0 and minutes > 0:
            return f"{hours}h {minutes}m"
        elif hours > 0:
            return f"{hours}h"
        else:
            return f"{minutes}m"
