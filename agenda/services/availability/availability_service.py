# agenda/services/availability/availability_service.py
from typing import Dict, List, Optional
from datetime import date, datetime, timedelta, timezone
from uuid import UUID
from sqlalchemy.orm import Session
import logging

from agenda.config.settings import get_settings
from agenda.core.exceptions import NotFound
from agenda.models.appointment import Appointment, ACTIVE_STATUSES
from agenda.models.establishment import Establishment
from agenda.models.professional import Professional
from agenda.models.service import Service
from agenda.services.availability.slot_generator import find_slot_starts, format_slot
from agenda.services.calendar.calendar_rules import (
    Interval,
    day_bounds,
    get_timezone,
    load_calendar_rules,
    resolve_open_intervals,
)
from agenda.services.subscription.quota_service import QuotaService

logger = logging.getLogger(__name__)


class AvailabilityService:
    """Booking-page facade over the calendar rules resolver and the slot generator"""

    @staticmethod
    def get_availability(
            db: Session,
            establishment_slug: str,
            service_id: UUID,
            professional_id: Optional[UUID] = None,
            start_date: Optional[date] = None,
            end_date: Optional[date] = None,
            now: Optional[datetime] = None,
    ) -> Dict:
        """
        Bookable "HH:MM" slots per local date.

        Returns {"bookable": False, "reason": ...} when booking is switched off
        for the establishment, service or professional, so callers can tell
        that apart from a day without free slots. With no professional given,
        each slot is assigned to the first professional that can take it.
        """
        now = now or datetime.now(timezone.utc)

        establishment = db.query(Establishment).filter(
            Establishment.slug == establishment_slug
        ).first()
        if not establishment:
            raise NotFound("Establishment not found", resource="establishment")

        service = db.query(Service).filter(
            Service.id == service_id,
            Service.establishment_id == establishment.id
        ).first()
        if not service:
            raise NotFound("Service not found", resource="service")

        if not establishment.booking_enabled:
            return AvailabilityService._not_bookable(establishment, "booking_disabled")
        if not service.active:
            return AvailabilityService._not_bookable(establishment, "service_inactive")

        if professional_id is not None:
            professional = db.query(Professional).filter(
                Professional.id == professional_id,
                Professional.establishment_id == establishment.id
            ).first()
            if not professional:
                raise NotFound("Professional not found", resource="professional")
            if not professional.active or not professional.offers(service.id):
                return AvailabilityService._not_bookable(establishment, "professional_unavailable")
            professionals = [professional]
        else:
            professionals = AvailabilityService.eligible_professionals(db, establishment.id, service.id)
            if not professionals:
                return AvailabilityService._not_bookable(establishment, "no_professionals")

        quota = QuotaService.can_create_appointment(db, establishment.id, now=now)
        if not quota.allowed:
            return AvailabilityService._not_bookable(establishment, "quota_exceeded")

        tz = get_timezone(establishment.timezone, get_settings().DEFAULT_TIMEZONE)
        days = AvailabilityService.clip_date_range(establishment, start_date, end_date, now)

        result_days: Dict[str, List[str]] = {day.isoformat(): [] for day in days}
        assignments: Dict[str, Dict[str, str]] = {day.isoformat(): {} for day in days}

        if days:
            range_start = day_bounds(days[0], tz).start.astimezone(timezone.utc)
            range_end = day_bounds(days[-1], tz).end.astimezone(timezone.utc)

            for professional in professionals:
                per_day = AvailabilityService.professional_slots(
                    db, establishment, service, professional, days, range_start, range_end, now
                )
                for day_key, starts in per_day.items():
                    for start in starts:
                        # First fit: earlier professionals keep the slot
                        assignments[day_key].setdefault(format_slot(start), str(professional.id))

            for day_key, slot_map in assignments.items():
                result_days[day_key] = sorted(slot_map)

        logger.info(
            f"Availability for {establishment.slug}: "
            f"{sum(len(v) for v in result_days.values())} slots over {len(days)} day(s)"
        )

        result = {
            "bookable": True,
            "establishment_id": str(establishment.id),
            "service_id": str(service.id),
            "professional_id": str(professional_id) if professional_id else None,
            "timezone": tz.key,
            "days": result_days,
        }
        if professional_id is None:
            result["assignments"] = assignments
        return result

    @staticmethod
    def professional_slots(
            db: Session,
            establishment: Establishment,
            service: Service,
            professional: Professional,
            days: List[date],
            range_start: datetime,
            range_end: datetime,
            now: datetime,
    ) -> Dict[str, List[datetime]]:
        """Bookable start datetimes per day for one professional"""
        tz = get_timezone(establishment.timezone, get_settings().DEFAULT_TIMEZONE)
        rules = load_calendar_rules(db, establishment, professional.id, range_start, range_end)
        buffer = timedelta(minutes=establishment.buffer_minutes or 0)
        busy = [
            Interval(start.astimezone(tz), end.astimezone(tz))
            for start, end in AvailabilityService.busy_intervals(
                db, professional.id, range_start - buffer, range_end + buffer
            )
        ]

        per_day = {}
        for day in days:
            open_intervals = resolve_open_intervals(day, tz, rules, professional.id)
            per_day[day.isoformat()] = find_slot_starts(
                open_intervals,
                duration_minutes=service.duration_minutes,
                buffer_minutes=establishment.buffer_minutes or 0,
                slot_interval_minutes=establishment.slot_interval_minutes or 15,
                busy=busy,
                capacity=professional.capacity or 1,
                now=now,
                min_lead_minutes=get_settings().BOOKING_MIN_LEAD_MINUTES,
            )
        return per_day

    @staticmethod
    def busy_intervals(
            db: Session,
            professional_id: UUID,
            range_start: datetime,
            range_end: datetime,
            exclude_appointment_id: Optional[UUID] = None,
    ) -> List[Interval]:
        """Active appointments of a professional overlapping the range"""
        query = db.query(Appointment.start_at, Appointment.end_at).filter(
            Appointment.professional_id == professional_id,
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.start_at < range_end,
            Appointment.end_at > range_start,
        )
        if exclude_appointment_id:
            query = query.filter(Appointment.id != exclude_appointment_id)
        return [Interval(start, end) for start, end in query.order_by(Appointment.start_at).all()]

    @staticmethod
    def eligible_professionals(db: Session, establishment_id: UUID, service_id: UUID) -> List[Professional]:
        professionals = db.query(Professional).filter(
            Professional.establishment_id == establishment_id,
            Professional.active == True
        ).order_by(Professional.name, Professional.id).all()
        return [p for p in professionals if p.offers(service_id)]

    @staticmethod
    def clip_date_range(
            establishment: Establishment,
            start_date: Optional[date],
            end_date: Optional[date],
            now: datetime,
    ) -> List[date]:
        """Requested dates limited to [today, today + max_future_days] in local time"""
        tz = get_timezone(establishment.timezone, get_settings().DEFAULT_TIMEZONE)
        today = now.astimezone(tz).date()
        horizon = today + timedelta(days=establishment.max_future_days or 0)

        start = start_date or today
        end = end_date or start
        start = max(start, today)
        end = min(end, horizon)

        days = []
        current = start
        while current <= end:
            days.append(current)
            current += timedelta(days=1)
        return days

    @staticmethod
    def _not_bookable(establishment: Establishment, reason: str) -> Dict:
        logger.info(f"Establishment {establishment.slug} not bookable: {reason}")
        return {
            "bookable": False,
            "establishment_id": str(establishment.id),
            "reason": reason,
        }
