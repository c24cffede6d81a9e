# ============================================================================
# agenda/services/appointment/appointment_service.py
# The only place appointment rows are created or change state
# ============================================================================
"""
Appointment mutation engine.

Every write re-validates the requested interval inside the transaction,
after locking the professional row, so two requests for the same
professional are serialized by the database. Read-time availability is
advisory; this is authoritative.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from agenda.config.settings import get_settings
from agenda.core.exceptions import (
    BookingError,
    InvalidTransition,
    NotFound,
    PolicyViolation,
    SlotNoLongerAvailable,
    ValidationError,
)
from agenda.models.appointment import (
    ACTIVE_STATUSES,
    ActorType,
    Appointment,
    AppointmentEvent,
    AppointmentEventType,
    AppointmentStatus,
)
from agenda.models.establishment import Establishment
from agenda.models.manage_token import AppointmentManageToken
from agenda.models.professional import Professional
from agenda.models.service import Service
from agenda.services.appointment.appointment_query_service import serialize_appointment
from agenda.services.availability.availability_service import AvailabilityService
from agenda.services.availability.slot_generator import fits_capacity, is_on_grid
from agenda.services.calendar.calendar_rules import (
    Interval,
    day_bounds,
    get_timezone,
    load_calendar_rules,
    resolve_open_intervals,
)
from agenda.services.customer.customer_service import (
    CustomerService,
    clean_email,
    clean_name,
    clean_notes,
    normalize_phone,
)
from agenda.services.manage_token.manage_token_service import ManageTokenService
from agenda.services.notification.notification_service import NotificationService
from agenda.services.subscription.quota_service import QuotaService
from agenda.utils.my_logging import mask_phone

logger = logging.getLogger(__name__)

# Actors that skip the customer lead-time and booking-window rules
PRIVILEGED_ACTORS = (ActorType.STAFF.value, ActorType.ADMIN.value, ActorType.SYSTEM.value)

# PostgreSQL serialization_failure / deadlock_detected / lock_not_available
CONFLICT_PGCODES = ("40001", "40P01", "55P03")


def _is_write_conflict(exc: Exception) -> bool:
    if isinstance(exc, IntegrityError):
        return True
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in CONFLICT_PGCODES:
        return True
    return "database is locked" in str(orig).lower()


class AppointmentService:
    """Create, reschedule, cancel and status transitions for appointments"""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _timezone(establishment: Establishment):
        return get_timezone(establishment.timezone, get_settings().DEFAULT_TIMEZONE)

    @staticmethod
    def to_aware(establishment: Establishment, start_at: datetime) -> datetime:
        """Naive datetimes are wall-clock time at the establishment"""
        tz = AppointmentService._timezone(establishment)
        if start_at.tzinfo is None:
            return start_at.replace(tzinfo=tz)
        return start_at.astimezone(tz)

    @staticmethod
    def _snapshot(appointment: Appointment) -> Dict:
        return {
            "status": appointment.status,
            "start_at": appointment.start_at.isoformat(),
            "end_at": appointment.end_at.isoformat(),
            "professional_id": str(appointment.professional_id),
        }

    @staticmethod
    def _append_event(
            db: Session,
            appointment: Appointment,
            event_type: AppointmentEventType,
            actor_type: str,
            actor_user_id: Optional[UUID],
            from_payload: Optional[Dict],
            to_payload: Optional[Dict],
            now: datetime,
    ) -> AppointmentEvent:
        event = AppointmentEvent(
            appointment_id=appointment.id,
            event_type=event_type.value,
            actor_type=actor_type,
            actor_user_id=actor_user_id,
            from_payload=from_payload,
            to_payload=to_payload,
            created_at=now,
        )
        db.add(event)
        return event

    @staticmethod
    def _lock_professionals(db: Session, professional_ids: Iterable[UUID]) -> List[Professional]:
        """Row-lock professionals in id order so concurrent writers never deadlock"""
        locked = []
        for professional_id in sorted(set(professional_ids), key=str):
            locked.append(
                db.query(Professional)
                .filter(Professional.id == professional_id)
                .with_for_update()
                .populate_existing()
                .one()
            )
        return locked

    @staticmethod
    def _lock_appointment(db: Session, appointment_id: UUID) -> Appointment:
        return (
            db.query(Appointment)
            .filter(Appointment.id == appointment_id)
            .with_for_update()
            .populate_existing()
            .one()
        )

    @staticmethod
    def check_interval(
            db: Session,
            establishment: Establishment,
            professional: Professional,
            start_at: datetime,
            end_at: datetime,
            exclude_appointment_id: Optional[UUID] = None,
    ) -> None:
        """
        Same interval math the availability query uses: the interval must sit
        inside one open interval of its local day and fit the professional's
        capacity given the buffer.
        """
        tz = AppointmentService._timezone(establishment)
        local_start = start_at.astimezone(tz)
        local_end = end_at.astimezone(tz)
        day = local_start.date()

        if not is_on_grid(local_start, establishment.slot_interval_minutes or 15):
            raise ValidationError(
                "Start time must be aligned to the booking grid",
                field="start_at",
                slot_interval_minutes=establishment.slot_interval_minutes,
            )

        bounds = day_bounds(day, tz)
        rules = load_calendar_rules(
            db,
            establishment,
            professional.id,
            bounds.start.astimezone(timezone.utc),
            bounds.end.astimezone(timezone.utc),
        )
        candidate = Interval(local_start, local_end)
        open_intervals = resolve_open_intervals(day, tz, rules, professional.id)
        if not any(interval.contains(candidate) for interval in open_intervals):
            raise SlotNoLongerAvailable(reason="outside_open_hours")

        buffer_minutes = establishment.buffer_minutes or 0
        buffer = timedelta(minutes=buffer_minutes)
        busy = AvailabilityService.busy_intervals(
            db,
            professional.id,
            start_at - buffer,
            end_at + buffer,
            exclude_appointment_id=exclude_appointment_id,
        )
        if not fits_capacity(candidate, busy, buffer_minutes, professional.capacity or 1):
            raise SlotNoLongerAvailable(reason="conflict")

    @staticmethod
    def _check_booking_window(
            establishment: Establishment,
            start_at: datetime,
            actor_type: str,
            now: datetime,
    ) -> None:
        if start_at < now:
            raise PolicyViolation("Cannot book a time in the past", reason="in_past")

        if actor_type in PRIVILEGED_ACTORS:
            return

        lead = timedelta(minutes=get_settings().BOOKING_MIN_LEAD_MINUTES)
        if start_at < now + lead:
            raise PolicyViolation("This time is too close to book online", reason="lead_time")

        tz = AppointmentService._timezone(establishment)
        horizon = now.astimezone(tz).date() + timedelta(days=establishment.max_future_days or 0)
        if start_at.astimezone(tz).date() > horizon:
            raise PolicyViolation(
                f"Bookings are accepted up to {establishment.max_future_days} days ahead",
                reason="beyond_booking_window",
            )

    @staticmethod
    def _check_change_lead_time(
            establishment: Establishment,
            appointment: Appointment,
            actor_type: str,
            now: datetime,
    ) -> None:
        """Customers must change an appointment more than reschedule_min_hours before it starts"""
        if actor_type in PRIVILEGED_ACTORS:
            return
        min_hours = establishment.reschedule_min_hours or 0
        if appointment.start_at - now <= timedelta(hours=min_hours):
            raise PolicyViolation(
                f"Changes must be made at least {min_hours} hour(s) before the appointment",
                reason="lead_time",
                reschedule_min_hours=min_hours,
            )

    @staticmethod
    def _ensure_active(appointment: Appointment) -> None:
        if not appointment.is_active:
            raise InvalidTransition(
                f"Appointment is {appointment.status} and can no longer be changed",
                status=appointment.status,
            )

    @staticmethod
    def _commit(db: Session, appointment_id: Optional[UUID] = None) -> None:
        try:
            db.commit()
        except (IntegrityError, OperationalError) as exc:
            db.rollback()
            if _is_write_conflict(exc):
                logger.warning(f"Write conflict on appointment {appointment_id}: {exc.__class__.__name__}")
                raise SlotNoLongerAvailable(reason="concurrent_booking") from exc
            raise

    @staticmethod
    def _bookable_professional(
            db: Session,
            establishment: Establishment,
            service: Service,
            professional_id: UUID,
    ) -> Professional:
        professional = db.query(Professional).filter(
            Professional.id == professional_id,
            Professional.establishment_id == establishment.id
        ).first()
        if not professional:
            raise NotFound("Professional not found", resource="professional")
        if not professional.active:
            raise PolicyViolation("This professional is not taking bookings", reason="professional_inactive")
        if not professional.offers(service.id):
            raise PolicyViolation(
                "This professional does not offer the selected service",
                reason="service_not_offered",
            )
        return professional

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @staticmethod
    def resolve_appointment(
            db: Session,
            appointment_id: Optional[UUID] = None,
            manage_token: Optional[str] = None,
            establishment_id: Optional[UUID] = None,
            now: Optional[datetime] = None,
    ) -> Tuple[Appointment, Optional[AppointmentManageToken]]:
        """
        Find an appointment by id (staff paths, optionally scoped to an
        establishment) or by raw manage token (customer paths).
        """
        if manage_token is not None:
            token, appointment = ManageTokenService.validate(db, manage_token, now=now)
            return appointment, token

        if appointment_id is None:
            raise ValidationError("Appointment id or manage token is required")

        query = db.query(Appointment).filter(Appointment.id == appointment_id)
        if establishment_id is not None:
            query = query.filter(Appointment.establishment_id == establishment_id)
        appointment = query.first()
        if not appointment:
            raise NotFound("Appointment not found", resource="appointment")
        return appointment, None

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    @staticmethod
    def create_appointment(
            db: Session,
            establishment_slug: str,
            service_id: UUID,
            professional_id: UUID,
            start_at: datetime,
            customer_name: str,
            customer_phone: str,
            customer_email: Optional[str] = None,
            customer_notes: Optional[str] = None,
            policy_accepted: bool = False,
            actor_type: str = ActorType.CUSTOMER.value,
            actor_user_id: Optional[UUID] = None,
            now: Optional[datetime] = None,
    ) -> Dict:
        """
        Book an appointment.

        Returns {appointment_id, manage_token, status, start_at, end_at,
        professional_id}. manage_token is None when issuing it failed; the
        appointment stands and staff can re-issue the link.
        """
        now = now or datetime.now(timezone.utc)

        establishment = db.query(Establishment).filter(
            Establishment.slug == establishment_slug
        ).first()
        if not establishment:
            raise NotFound("Establishment not found", resource="establishment")
        if not establishment.booking_enabled:
            raise PolicyViolation("Online booking is disabled for this establishment", reason="booking_disabled")

        # Input validation has no side effects, so it runs before anything else
        normalize_phone(customer_phone)
        clean_name(customer_name)
        customer_email = clean_email(customer_email) if establishment.ask_email else None
        customer_notes = clean_notes(customer_notes) if establishment.ask_notes else None

        if establishment.require_policy_acceptance and not policy_accepted:
            raise PolicyViolation(
                "The cancellation policy must be accepted",
                reason="policy_not_accepted",
            )

        service = db.query(Service).filter(
            Service.id == service_id,
            Service.establishment_id == establishment.id
        ).first()
        if not service:
            raise NotFound("Service not found", resource="service")
        if not service.active:
            raise PolicyViolation("This service is not available", reason="service_inactive")

        professional = AppointmentService._bookable_professional(db, establishment, service, professional_id)

        QuotaService.ensure_can_create_appointment(db, establishment.id, now=now)

        start_at = AppointmentService.to_aware(establishment, start_at)
        end_at = start_at + timedelta(minutes=service.duration_minutes)
        AppointmentService._check_booking_window(establishment, start_at, actor_type, now)

        status = (
            AppointmentStatus.CONFIRMED.value
            if establishment.auto_confirm_bookings
            else AppointmentStatus.BOOKED.value
        )

        try:
            professional = AppointmentService._lock_professionals(db, [professional.id])[0]
            AppointmentService.check_interval(db, establishment, professional, start_at, end_at)

            customer = CustomerService.upsert(
                db, establishment.id, customer_name, customer_phone, customer_email
            )

            appointment = Appointment(
                establishment_id=establishment.id,
                professional_id=professional.id,
                service_id=service.id,
                customer_id=customer.id,
                start_at=start_at.astimezone(timezone.utc),
                end_at=end_at.astimezone(timezone.utc),
                status=status,
                customer_notes=customer_notes,
                created_at=now,
                updated_at=now,
            )
            db.add(appointment)
            db.flush()

            AppointmentService._append_event(
                db, appointment, AppointmentEventType.CREATED, actor_type, actor_user_id,
                None, AppointmentService._snapshot(appointment), now,
            )
            QuotaService.reconcile_monthly_usage(db, establishment, now)
        except BookingError:
            db.rollback()
            raise
        except (IntegrityError, OperationalError) as exc:
            db.rollback()
            if _is_write_conflict(exc):
                raise SlotNoLongerAvailable(reason="concurrent_booking") from exc
            raise

        AppointmentService._commit(db, appointment.id)
        appointment_id = appointment.id

        logger.info(
            f"Appointment {appointment_id} {status} for {establishment.slug} "
            f"({service.name} at {start_at.isoformat()}, customer {mask_phone(customer.phone)})"
        )

        manage_token = None
        try:
            manage_token = ManageTokenService.issue(db, appointment_id, now=now)
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to issue manage token for appointment {appointment_id}: {e}")

        NotificationService.dispatch(appointment_id, AppointmentEventType.CREATED.value)

        return {
            "appointment_id": str(appointment_id),
            "manage_token": manage_token,
            "status": status,
            "start_at": start_at.isoformat(),
            "end_at": end_at.isoformat(),
            "professional_id": str(professional.id),
        }

    # ------------------------------------------------------------------
    # Reschedule
    # ------------------------------------------------------------------

    @staticmethod
    def reschedule_appointment(
            db: Session,
            new_start_at: datetime,
            appointment_id: Optional[UUID] = None,
            manage_token: Optional[str] = None,
            new_professional_id: Optional[UUID] = None,
            establishment_id: Optional[UUID] = None,
            actor_type: str = ActorType.CUSTOMER.value,
            actor_user_id: Optional[UUID] = None,
            now: Optional[datetime] = None,
    ) -> Dict:
        """Move an active appointment in place; duration is kept, id and token survive."""
        now = now or datetime.now(timezone.utc)
        appointment, token = AppointmentService.resolve_appointment(
            db, appointment_id, manage_token, establishment_id, now=now
        )
        establishment = appointment.establishment

        AppointmentService._ensure_active(appointment)
        AppointmentService._check_change_lead_time(establishment, appointment, actor_type, now)

        duration = appointment.end_at - appointment.start_at
        new_start = AppointmentService.to_aware(establishment, new_start_at)
        new_end = new_start + duration
        AppointmentService._check_booking_window(establishment, new_start, actor_type, now)

        old_professional_id = appointment.professional_id
        target_id = new_professional_id or old_professional_id
        if target_id != old_professional_id:
            AppointmentService._bookable_professional(db, establishment, appointment.service, target_id)

        try:
            locked = AppointmentService._lock_professionals(db, [old_professional_id, target_id])
            target = next(p for p in locked if p.id == target_id)
            appointment = AppointmentService._lock_appointment(db, appointment.id)
            AppointmentService._ensure_active(appointment)
            AppointmentService._check_change_lead_time(establishment, appointment, actor_type, now)

            AppointmentService.check_interval(
                db, establishment, target, new_start, new_end, exclude_appointment_id=appointment.id
            )

            before = AppointmentService._snapshot(appointment)
            appointment.start_at = new_start.astimezone(timezone.utc)
            appointment.end_at = new_end.astimezone(timezone.utc)
            appointment.professional_id = target.id
            appointment.updated_at = now
            after = AppointmentService._snapshot(appointment)

            AppointmentService._append_event(
                db, appointment, AppointmentEventType.RESCHEDULED, actor_type, actor_user_id,
                before, after, now,
            )
            if target.id != old_professional_id:
                AppointmentService._append_event(
                    db, appointment, AppointmentEventType.PROFESSIONAL_CHANGED, actor_type, actor_user_id,
                    {"professional_id": str(old_professional_id)},
                    {"professional_id": str(target.id)},
                    now,
                )
            if token is not None:
                ManageTokenService.mark_used(db, token, now)
        except BookingError:
            db.rollback()
            raise
        except (IntegrityError, OperationalError) as exc:
            db.rollback()
            if _is_write_conflict(exc):
                raise SlotNoLongerAvailable(reason="concurrent_booking") from exc
            raise

        AppointmentService._commit(db, appointment.id)
        db.refresh(appointment)

        logger.info(f"Appointment {appointment.id} rescheduled to {new_start.isoformat()} by {actor_type}")
        NotificationService.dispatch(appointment.id, AppointmentEventType.RESCHEDULED.value)

        return serialize_appointment(appointment)

    # ------------------------------------------------------------------
    # Cancel and status transitions
    # ------------------------------------------------------------------

    @staticmethod
    def cancel_appointment(
            db: Session,
            appointment_id: Optional[UUID] = None,
            manage_token: Optional[str] = None,
            establishment_id: Optional[UUID] = None,
            reason: Optional[str] = None,
            actor_type: str = ActorType.CUSTOMER.value,
            actor_user_id: Optional[UUID] = None,
            now: Optional[datetime] = None,
    ) -> Dict:
        """Staff cancel any time; customers are held to the reschedule lead time."""
        now = now or datetime.now(timezone.utc)
        appointment, token = AppointmentService.resolve_appointment(
            db, appointment_id, manage_token, establishment_id, now=now
        )

        AppointmentService._ensure_active(appointment)
        AppointmentService._check_change_lead_time(appointment.establishment, appointment, actor_type, now)

        return AppointmentService._transition(
            db,
            appointment,
            AppointmentStatus.CANCELED,
            ACTIVE_STATUSES,
            AppointmentEventType.CANCELED,
            actor_type,
            actor_user_id,
            now,
            token=token,
            extra={"reason": reason} if reason else None,
            check_lead_time=True,
        )

    @staticmethod
    def confirm_appointment(
            db: Session,
            appointment_id: UUID,
            establishment_id: Optional[UUID] = None,
            actor_type: str = ActorType.STAFF.value,
            actor_user_id: Optional[UUID] = None,
            now: Optional[datetime] = None,
    ) -> Dict:
        now = now or datetime.now(timezone.utc)
        appointment, _ = AppointmentService.resolve_appointment(db, appointment_id, None, establishment_id)
        return AppointmentService._transition(
            db, appointment, AppointmentStatus.CONFIRMED, (AppointmentStatus.BOOKED.value,),
            AppointmentEventType.CONFIRMED, actor_type, actor_user_id, now,
        )

    @staticmethod
    def complete_appointment(
            db: Session,
            appointment_id: UUID,
            establishment_id: Optional[UUID] = None,
            actor_type: str = ActorType.STAFF.value,
            actor_user_id: Optional[UUID] = None,
            now: Optional[datetime] = None,
    ) -> Dict:
        now = now or datetime.now(timezone.utc)
        appointment, _ = AppointmentService.resolve_appointment(db, appointment_id, None, establishment_id)
        return AppointmentService._transition(
            db, appointment, AppointmentStatus.COMPLETED, ACTIVE_STATUSES,
            AppointmentEventType.COMPLETED, actor_type, actor_user_id, now,
        )

    @staticmethod
    def mark_no_show(
            db: Session,
            appointment_id: UUID,
            establishment_id: Optional[UUID] = None,
            actor_type: str = ActorType.STAFF.value,
            actor_user_id: Optional[UUID] = None,
            now: Optional[datetime] = None,
    ) -> Dict:
        now = now or datetime.now(timezone.utc)
        appointment, _ = AppointmentService.resolve_appointment(db, appointment_id, None, establishment_id)
        return AppointmentService._transition(
            db, appointment, AppointmentStatus.NO_SHOW, ACTIVE_STATUSES,
            AppointmentEventType.NO_SHOW_MARKED, actor_type, actor_user_id, now,
        )

    @staticmethod
    def _transition(
            db: Session,
            appointment: Appointment,
            target: AppointmentStatus,
            allowed_from: Tuple[str, ...],
            event_type: AppointmentEventType,
            actor_type: str,
            actor_user_id: Optional[UUID],
            now: datetime,
            token: Optional[AppointmentManageToken] = None,
            extra: Optional[Dict] = None,
            check_lead_time: bool = False,
    ) -> Dict:
        try:
            appointment = AppointmentService._lock_appointment(db, appointment.id)
            if appointment.status not in allowed_from:
                raise InvalidTransition(
                    f"Cannot move appointment from {appointment.status} to {target.value}",
                    status=appointment.status,
                    target=target.value,
                )
            if check_lead_time:
                AppointmentService._check_change_lead_time(
                    appointment.establishment, appointment, actor_type, now
                )

            before = {"status": appointment.status}
            appointment.status = target.value
            appointment.updated_at = now
            after = {"status": appointment.status}
            if extra:
                after.update(extra)

            AppointmentService._append_event(
                db, appointment, event_type, actor_type, actor_user_id, before, after, now
            )
            if token is not None:
                ManageTokenService.mark_used(db, token, now)
        except BookingError:
            db.rollback()
            raise

        AppointmentService._commit(db, appointment.id)
        db.refresh(appointment)

        logger.info(f"Appointment {appointment.id} {before['status']} -> {target.value} by {actor_type}")
        NotificationService.dispatch(appointment.id, event_type.value)

        return serialize_appointment(appointment)

    @staticmethod
    def reissue_manage_token(
            db: Session,
            appointment_id: UUID,
            establishment_id: Optional[UUID] = None,
            now: Optional[datetime] = None,
    ) -> Dict:
        """Staff path to recover self-service when the original link is lost or was never issued"""
        appointment, _ = AppointmentService.resolve_appointment(db, appointment_id, None, establishment_id)
        AppointmentService._ensure_active(appointment)
        raw_token = ManageTokenService.issue(db, appointment.id, now=now)
        return {
            "appointment_id": str(appointment.id),
            "manage_token": raw_token,
        }
