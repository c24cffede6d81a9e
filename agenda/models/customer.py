# agenda/models/customer.py
from sqlalchemy import Column, String, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
import uuid

from agenda.models.base import Base, UTCDateTime, utcnow


class Customer(Base):
    """Establishment-scoped customer, keyed by phone (digits only)"""
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("establishment_id", "phone", name="uq_customers_establishment_phone"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    establishment_id = Column(
        UUID(as_uuid=True), ForeignKey("establishments.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=False)
    email = Column(String(255), nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())

    def __repr__(self):
        return f"<Customer(id={self.id}, establishment_id={self.establishment_id})>"
