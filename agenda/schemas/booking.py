"""
Pydantic schemas for the public booking flow and dashboard appointment actions
"""
import re
from datetime import date, datetime, time
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PHONE_MASK = re.compile(r"^\(\d{2}\)\s?\d{4,5}-?\d{4}$")
TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# ============================================================================
# Request Schemas (for incoming data)
# ============================================================================

class CustomerInput(BaseModel):
    """Customer contact captured by the booking form"""
    name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., description='"(11) 98765-4321" or 10-11 digits')
    email: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        v = v.strip()
        if PHONE_MASK.match(v) or (v.isdigit() and len(v) in (10, 11)):
            return v
        raise ValueError("Phone must look like (11) 98765-4321")


class SlotSelection(BaseModel):
    """Either a full start_at, or a local date plus "HH:MM" """
    model_config = ConfigDict(populate_by_name=True)

    start_at: Optional[datetime] = None
    booking_date: Optional[date] = Field(None, alias="date")
    booking_time: Optional[str] = Field(None, alias="time")

    @field_validator("booking_time")
    @classmethod
    def validate_time(cls, v):
        if v is not None and not TIME_OF_DAY.match(v):
            raise ValueError('Time must be "HH:MM"')
        return v

    @model_validator(mode="after")
    def require_slot(self):
        if self.start_at is None and (self.booking_date is None or self.booking_time is None):
            raise ValueError("Provide start_at, or date and time")
        return self

    def resolved_start(self) -> datetime:
        """Naive results are wall-clock time at the establishment"""
        if self.start_at is not None:
            return self.start_at
        hours, minutes = (int(part) for part in self.booking_time.split(":"))
        return datetime.combine(self.booking_date, time(hours, minutes))


class CreateAppointmentRequest(SlotSelection):
    service_id: UUID
    professional_id: UUID
    customer: CustomerInput
    policy_accepted: bool = False


class RescheduleRequest(SlotSelection):
    professional_id: Optional[UUID] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ============================================================================
# Response Schemas (for outgoing data)
# ============================================================================

class AvailabilityResponse(BaseModel):
    bookable: bool
    establishment_id: str
    reason: Optional[str] = None
    service_id: Optional[str] = None
    professional_id: Optional[str] = None
    timezone: Optional[str] = None
    days: Dict[str, List[str]] = Field(default_factory=dict)
    assignments: Optional[Dict[str, Dict[str, str]]] = None


class CreateAppointmentResponse(BaseModel):
    appointment_id: str
    manage_token: Optional[str] = None
    manage_url: Optional[str] = None
    status: str
    start_at: str
    end_at: str
    professional_id: str


class ManageTokenResponse(BaseModel):
    appointment_id: str
    manage_token: str
    manage_url: str
