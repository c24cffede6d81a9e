# agenda/models/professional.py
"""
Professionals (or shared resources) that appointments are booked against
"""
from sqlalchemy import Column, String, Boolean, Integer, Time, ForeignKey, Table, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from agenda.models.base import Base, UTCDateTime, utcnow

# Which services each professional performs
professional_services = Table(
    "professional_services",
    Base.metadata,
    Column("professional_id", UUID(as_uuid=True), ForeignKey("professionals.id", ondelete="CASCADE"),
           primary_key=True),
    Column("service_id", UUID(as_uuid=True), ForeignKey("services.id", ondelete="CASCADE"),
           primary_key=True),
)


class Professional(Base):
    __tablename__ = "professionals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    establishment_id = Column(
        UUID(as_uuid=True), ForeignKey("establishments.id"), nullable=False, index=True
    )
    name = Column(String(200), nullable=False)
    slug = Column(String(100), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    # Max concurrent active appointments (e.g. a room serving N customers)
    capacity = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())

    establishment = relationship("Establishment", back_populates="professionals")
    services = relationship("Service", secondary=professional_services, lazy="selectin")
    hours = relationship(
        "ProfessionalHours", back_populates="professional", cascade="all, delete-orphan"
    )

    def offers(self, service_id) -> bool:
        return any(service.id == service_id for service in self.services)

    def __repr__(self):
        return f"<Professional(id={self.id}, name={self.name})>"


class ProfessionalHours(Base):
    """Per-professional weekly hours; narrows the establishment hours for that weekday"""
    __tablename__ = "professional_hours"
    __table_args__ = (
        UniqueConstraint("professional_id", "weekday", name="uq_professional_hours_weekday"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    professional_id = Column(
        UUID(as_uuid=True), ForeignKey("professionals.id", ondelete="CASCADE"), nullable=False
    )
    weekday = Column(Integer, nullable=False)  # 0=Sunday, 6=Saturday
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    closed = Column(Boolean, nullable=False, default=False)

    professional = relationship("Professional", back_populates="hours")

    def __repr__(self):
        return f"<ProfessionalHours(professional_id={self.professional_id}, weekday={self.weekday})>"
