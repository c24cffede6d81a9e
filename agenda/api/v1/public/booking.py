# ============================================================================
# agenda/api/v1/public/booking.py
# Public booking page endpoints - no authentication
# ============================================================================
from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session
from datetime import date
from typing import Optional
from uuid import UUID

from agenda.config.database import get_db
from agenda.config.settings import settings
from agenda.models.appointment import ActorType
from agenda.schemas.booking import (
    AvailabilityResponse,
    CreateAppointmentRequest,
    CreateAppointmentResponse,
)
from agenda.services.appointment.appointment_service import AppointmentService
from agenda.services.availability.availability_service import AvailabilityService

router = APIRouter(tags=["public-booking"])


def manage_url(raw_token: Optional[str]) -> Optional[str]:
    if not raw_token:
        return None
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/manage/{raw_token}"


@router.get("/{slug}/availability", response_model=AvailabilityResponse, response_model_exclude_none=True)
def get_availability(
        slug: str = Path(..., description="Establishment slug"),
        service_id: UUID = Query(..., description="Service to book"),
        professional_id: Optional[UUID] = Query(None, description="Omit for any professional"),
        start_date: Optional[date] = Query(None, description="First day, defaults to today"),
        end_date: Optional[date] = Query(None, description="Last day, defaults to start_date"),
        db: Session = Depends(get_db)
):
    """
    Bookable "HH:MM" start times per day.
    bookable=false means booking is switched off, not that the day is full.
    """
    return AvailabilityService.get_availability(
        db=db,
        establishment_slug=slug,
        service_id=service_id,
        professional_id=professional_id,
        start_date=start_date,
        end_date=end_date,
    )


@router.post("/{slug}/appointments", response_model=CreateAppointmentResponse, status_code=201)
def create_appointment(
        request: CreateAppointmentRequest,
        slug: str = Path(..., description="Establishment slug"),
        db: Session = Depends(get_db)
):
    """
    Book an appointment. The manage_url is the customer's only way back to
    the booking, it is returned once and never again.
    """
    result = AppointmentService.create_appointment(
        db=db,
        establishment_slug=slug,
        service_id=request.service_id,
        professional_id=request.professional_id,
        start_at=request.resolved_start(),
        customer_name=request.customer.name,
        customer_phone=request.customer.phone,
        customer_email=request.customer.email,
        customer_notes=request.customer.notes,
        policy_accepted=request.policy_accepted,
        actor_type=ActorType.CUSTOMER.value,
    )
    result["manage_url"] = manage_url(result["manage_token"])
    return result
