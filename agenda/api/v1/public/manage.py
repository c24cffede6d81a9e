# ============================================================================
# agenda/api/v1/public/manage.py
# Self-service endpoints behind the customer's manage link
# ============================================================================
from fastapi import APIRouter, Depends, Path
from sqlalchemy.orm import Session

from agenda.config.database import get_db
from agenda.models.appointment import ActorType
from agenda.schemas.booking import CancelRequest, RescheduleRequest
from agenda.services.appointment.appointment_query_service import serialize_appointment
from agenda.services.appointment.appointment_service import AppointmentService

router = APIRouter(prefix="/manage", tags=["public-manage"])


@router.get("/{token}")
def get_managed_appointment(
        token: str = Path(..., description="Manage token from the booking link"),
        db: Session = Depends(get_db)
):
    """Appointment summary plus the establishment's policy for the manage page."""
    appointment, _ = AppointmentService.resolve_appointment(db, manage_token=token)
    establishment = appointment.establishment

    result = serialize_appointment(appointment)
    result["establishment"] = {
        "name": establishment.name,
        "slug": establishment.slug,
        "reschedule_min_hours": establishment.reschedule_min_hours,
        "cancellation_policy_text": establishment.cancellation_policy_text,
    }
    return result


@router.post("/{token}/reschedule")
def reschedule_appointment(
        request: RescheduleRequest,
        token: str = Path(..., description="Manage token from the booking link"),
        db: Session = Depends(get_db)
):
    return AppointmentService.reschedule_appointment(
        db=db,
        new_start_at=request.resolved_start(),
        manage_token=token,
        new_professional_id=request.professional_id,
        actor_type=ActorType.CUSTOMER.value,
    )


@router.post("/{token}/cancel")
def cancel_appointment(
        request: CancelRequest,
        token: str = Path(..., description="Manage token from the booking link"),
        db: Session = Depends(get_db)
):
    result = AppointmentService.cancel_appointment(
        db=db,
        manage_token=token,
        reason=request.reason,
        actor_type=ActorType.CUSTOMER.value,
    )
    return {"ok": True, "appointment": result}
