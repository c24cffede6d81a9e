# ============================================================================
# agenda/api/v1/dashboard/subscription.py
# Plan usage for the dashboard badge and "add" buttons
# ============================================================================
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from agenda.api.dependencies import StaffIdentity, get_current_staff
from agenda.config.database import get_db
from agenda.services.subscription.quota_service import QuotaService

router = APIRouter(prefix="/subscription", tags=["dashboard-subscription"])


@router.get("/usage")
def get_usage(
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    return QuotaService.get_subscription_usage(db, staff.establishment_id)


@router.get("/can-create-professional")
def can_create_professional(
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    return QuotaService.can_create_professional(db, staff.establishment_id).to_dict()


@router.get("/can-create-appointment")
def can_create_appointment(
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    return QuotaService.can_create_appointment(db, staff.establishment_id).to_dict()


@router.get("/can-accept-bookings")
def can_accept_bookings(
        staff: StaffIdentity = Depends(get_current_staff),
        db: Session = Depends(get_db)
):
    return QuotaService.can_establishment_accept_bookings(db, staff.establishment_id).to_dict()
