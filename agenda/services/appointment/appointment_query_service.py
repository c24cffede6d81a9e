# ============================================================================
# agenda/services/appointment/appointment_query_service.py
# Read-only appointment queries for the dashboard - no FastAPI dependencies
# ============================================================================
from sqlalchemy.orm import Session
from datetime import datetime, date, timedelta, timezone
from typing import Optional, Dict, Any
from uuid import UUID

from agenda.config.settings import get_settings
from agenda.core.exceptions import NotFound
from agenda.models.appointment import Appointment, ACTIVE_STATUSES
from agenda.models.customer import Customer
from agenda.models.establishment import Establishment
from agenda.services.calendar.calendar_rules import day_bounds, get_timezone


def establishment_timezone(establishment: Establishment):
    return get_timezone(establishment.timezone, get_settings().DEFAULT_TIMEZONE)


def serialize_appointment(appointment: Appointment, detailed: bool = False) -> Dict[str, Any]:
    """Convert Appointment model to dictionary, times in the establishment's timezone."""
    tz = establishment_timezone(appointment.establishment)
    start_local = appointment.start_at.astimezone(tz)

    base = {
        "id": str(appointment.id),
        "establishment_id": str(appointment.establishment_id),
        "status": appointment.status,
        "start_at": start_local.isoformat(),
        "end_at": appointment.end_at.astimezone(tz).isoformat(),
        "date": start_local.date().isoformat(),
        "time": start_local.strftime("%H:%M"),
        "duration_minutes": int((appointment.end_at - appointment.start_at).total_seconds() // 60),
        "professional": {
            "id": str(appointment.professional_id),
            "name": appointment.professional.name,
        },
        "service": {
            "id": str(appointment.service_id),
            "name": appointment.service.name,
            "price": appointment.service.formatted_price,
        },
        "customer": {
            "name": appointment.customer.name,
        },
    }

    if detailed:
        base["customer"].update({
            "id": str(appointment.customer_id),
            "phone": appointment.customer.phone,
            "email": appointment.customer.email,
        })
        base.update({
            "customer_notes": appointment.customer_notes,
            "internal_notes": appointment.internal_notes,
            "created_at": appointment.created_at.isoformat(),
            "updated_at": appointment.updated_at.isoformat(),
            "events": [
                {
                    "event_type": event.event_type,
                    "actor_type": event.actor_type,
                    "from": event.from_payload,
                    "to": event.to_payload,
                    "created_at": event.created_at.isoformat(),
                }
                for event in appointment.events
            ],
        })

    return base


class AppointmentQueryService:
    """Service layer for appointment listings."""

    @staticmethod
    def _establishment(db: Session, establishment_id: UUID) -> Establishment:
        establishment = db.query(Establishment).filter(Establishment.id == establishment_id).first()
        if not establishment:
            raise NotFound("Establishment not found", resource="establishment")
        return establishment

    @staticmethod
    def list_appointments(
            db: Session,
            establishment_id: UUID,
            start_date: Optional[date] = None,
            end_date: Optional[date] = None,
            status: Optional[str] = None,
            professional_id: Optional[UUID] = None,
            customer_phone: Optional[str] = None,
            skip: int = 0,
            limit: int = 50
    ) -> Dict[str, Any]:
        """Get paginated list of appointments with filters. Dates are local to the establishment."""
        establishment = AppointmentQueryService._establishment(db, establishment_id)
        tz = establishment_timezone(establishment)

        query = db.query(Appointment).filter(Appointment.establishment_id == establishment_id)

        if start_date:
            query = query.filter(Appointment.start_at >= day_bounds(start_date, tz).start)
        if end_date:
            query = query.filter(Appointment.start_at < day_bounds(end_date, tz).end)
        if status:
            query = query.filter(Appointment.status == status)
        if professional_id:
            query = query.filter(Appointment.professional_id == professional_id)
        if customer_phone:
            digits = "".join(ch for ch in customer_phone if ch.isdigit())
            query = query.join(Customer, Appointment.customer_id == Customer.id).filter(
                Customer.phone == digits
            )

        query = query.order_by(Appointment.start_at.asc())
        total = query.count()
        appointments = query.offset(skip).limit(limit).all()

        return {
            "establishment_id": str(establishment_id),
            "total_appointments": total,
            "page": {
                "skip": skip,
                "limit": limit,
                "total_pages": (total + limit - 1) // limit if total > 0 else 0
            },
            "filters": {
                "start_date": start_date.isoformat() if start_date else None,
                "end_date": end_date.isoformat() if end_date else None,
                "status": status,
                "professional_id": str(professional_id) if professional_id else None,
                "customer_phone": customer_phone,
            },
            "appointments": [serialize_appointment(appt) for appt in appointments]
        }

    @staticmethod
    def get_appointment_by_id(
            db: Session,
            establishment_id: UUID,
            appointment_id: UUID
    ) -> Dict[str, Any]:
        appointment = db.query(Appointment).filter(
            Appointment.id == appointment_id,
            Appointment.establishment_id == establishment_id
        ).first()

        if not appointment:
            raise NotFound("Appointment not found", resource="appointment")

        return serialize_appointment(appointment, detailed=True)

    @staticmethod
    def get_todays_appointments(
            db: Session,
            establishment_id: UUID,
            now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Active appointments for today, local to the establishment."""
        establishment = AppointmentQueryService._establishment(db, establishment_id)
        tz = establishment_timezone(establishment)
        today = (now or datetime.now(timezone.utc)).astimezone(tz).date()
        bounds = day_bounds(today, tz)

        appointments = db.query(Appointment).filter(
            Appointment.establishment_id == establishment_id,
            Appointment.start_at >= bounds.start,
            Appointment.start_at < bounds.end,
            Appointment.status.in_(ACTIVE_STATUSES)
        ).order_by(Appointment.start_at.asc()).all()

        return {
            "establishment_id": str(establishment_id),
            "date": today.isoformat(),
            "total_appointments": len(appointments),
            "appointments": [serialize_appointment(appt) for appt in appointments]
        }

    @staticmethod
    def get_week_appointments(
            db: Session,
            establishment_id: UUID,
            now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Active appointments from now until the end of the 7th day ahead."""
        establishment = AppointmentQueryService._establishment(db, establishment_id)
        tz = establishment_timezone(establishment)
        now = now or datetime.now(timezone.utc)
        week_end = day_bounds(now.astimezone(tz).date() + timedelta(days=7), tz).end

        appointments = db.query(Appointment).filter(
            Appointment.establishment_id == establishment_id,
            Appointment.start_at >= now,
            Appointment.start_at < week_end,
            Appointment.status.in_(ACTIVE_STATUSES)
        ).order_by(Appointment.start_at.asc()).all()

        return {
            "establishment_id": str(establishment_id),
            "period": {
                "start": now.astimezone(tz).date().isoformat(),
                "end": (week_end - timedelta(days=1)).date().isoformat()
            },
            "total_appointments": len(appointments),
            "appointments": [serialize_appointment(appt) for appt in appointments]
        }
