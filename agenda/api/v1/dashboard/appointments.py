# ============================================================================
# agenda/api/v1/dashboard/appointments.py
# Staff authenticated endpoints - thin HTTP layer
# ============================================================================
from fastapi import APIRouter, Depends, Query, Path
from sqlalchemy.orm import Session
from datetime import date
from typing import Optional
from uuid import UUID

from agenda.api.dependencies import StaffIdentity, get_current_staff
from agenda.api.v1.public.booking import manage_url
from agenda.config.database import get_db
from agenda.schemas.booking import CancelRequest, ManageTokenResponse, RescheduleRequest
from agenda.services.appointment.appointment_query_service import AppointmentQueryService
from agenda.services.appointment.appointment_service import AppointmentService

router = APIRouter(prefix="/appointments", tags=["dashboard-appointments"])


@router.get("")
def list_appointments(
        start_date: Optional[date] = Query(None, description="Appointments on or after this date"),
        end_date: Optional[date] = Query(None, description="Appointments on or before this date"),
        status: Optional[str] = Query(None,
                                      description="Filter by status (booked, confirmed, canceled, completed, no_show)"),
        professional_id: Optional[UUID] = Query(None, description="Filter by professional"),
        customer_phone: Optional[str] = Query(None, description="Filter by customer phone number"),
        skip: int = Query(0, ge=0, description="Number of records to skip"),
        limit: int = Query(50, ge=1, le=100, description="Number of records to return"),
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    """List appointments for your establishment."""
    return AppointmentQueryService.list_appointments(
        db=db,
        establishment_id=staff.establishment_id,
        start_date=start_date,
        end_date=end_date,
        status=status,
        professional_id=professional_id,
        customer_phone=customer_phone,
        skip=skip,
        limit=limit
    )


@router.get("/upcoming/today")
def get_todays_appointments(
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    return AppointmentQueryService.get_todays_appointments(db=db, establishment_id=staff.establishment_id)


@router.get("/upcoming/week")
def get_week_appointments(
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    return AppointmentQueryService.get_week_appointments(db=db, establishment_id=staff.establishment_id)


@router.get("/{appointment_id}")
def get_appointment(
        appointment_id: UUID = Path(..., description="The appointment ID"),
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    """Appointment details including its event history."""
    return AppointmentQueryService.get_appointment_by_id(
        db=db,
        establishment_id=staff.establishment_id,
        appointment_id=appointment_id
    )


@router.post("/{appointment_id}/reschedule")
def reschedule_appointment(
        request: RescheduleRequest,
        appointment_id: UUID = Path(..., description="The appointment ID"),
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    """Staff reschedules skip the customer lead-time rule."""
    return AppointmentService.reschedule_appointment(
        db=db,
        new_start_at=request.resolved_start(),
        appointment_id=appointment_id,
        new_professional_id=request.professional_id,
        establishment_id=staff.establishment_id,
        actor_type=staff.actor_type,
        actor_user_id=staff.user_id,
    )


@router.post("/{appointment_id}/cancel")
def cancel_appointment(
        request: CancelRequest,
        appointment_id: UUID = Path(..., description="The appointment ID"),
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    return AppointmentService.cancel_appointment(
        db=db,
        appointment_id=appointment_id,
        establishment_id=staff.establishment_id,
        reason=request.reason,
        actor_type=staff.actor_type,
        actor_user_id=staff.user_id,
    )


@router.post("/{appointment_id}/confirm")
def confirm_appointment(
        appointment_id: UUID = Path(..., description="The appointment ID"),
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    return AppointmentService.confirm_appointment(
        db=db,
        appointment_id=appointment_id,
        establishment_id=staff.establishment_id,
        actor_type=staff.actor_type,
        actor_user_id=staff.user_id,
    )


@router.post("/{appointment_id}/complete")
def complete_appointment(
        appointment_id: UUID = Path(..., description="The appointment ID"),
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    return AppointmentService.complete_appointment(
        db=db,
        appointment_id=appointment_id,
        establishment_id=staff.establishment_id,
        actor_type=staff.actor_type,
        actor_user_id=staff.user_id,
    )


@router.post("/{appointment_id}/no-show")
def mark_no_show(
        appointment_id: UUID = Path(..., description="The appointment ID"),
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    return AppointmentService.mark_no_show(
        db=db,
        appointment_id=appointment_id,
        establishment_id=staff.establishment_id,
        actor_type=staff.actor_type,
        actor_user_id=staff.user_id,
    )


@router.post("/{appointment_id}/manage-token", response_model=ManageTokenResponse)
def reissue_manage_token(
        appointment_id: UUID = Path(..., description="The appointment ID"),
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    """New manage link for the customer; the previous link stops working."""
    result = AppointmentService.reissue_manage_token(
        db=db,
        appointment_id=appointment_id,
        establishment_id=staff.establishment_id,
    )
    result["manage_url"] = manage_url(result["manage_token"])
    return result
