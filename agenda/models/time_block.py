# agenda/models/time_block.py
from sqlalchemy import Column, String, Integer, Boolean, Time, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
import uuid

from agenda.models.base import Base, UTCDateTime, utcnow


class TimeBlock(Base):
    """One-off unavailability (holiday, day off). professional_id NULL = whole establishment"""
    __tablename__ = "time_blocks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    establishment_id = Column(
        UUID(as_uuid=True), ForeignKey("establishments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    professional_id = Column(
        UUID(as_uuid=True), ForeignKey("professionals.id", ondelete="CASCADE"), nullable=True
    )
    start_at = Column(UTCDateTime, nullable=False)
    end_at = Column(UTCDateTime, nullable=False)
    reason = Column(String(200), nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())


class RecurringTimeBlock(Base):
    """Weekly unavailability (lunch break). weekday: 0=Sunday .. 6=Saturday"""
    __tablename__ = "recurring_time_blocks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    establishment_id = Column(
        UUID(as_uuid=True), ForeignKey("establishments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    professional_id = Column(
        UUID(as_uuid=True), ForeignKey("professionals.id", ondelete="CASCADE"), nullable=True
    )
    weekday = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    reason = Column(String(200), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
