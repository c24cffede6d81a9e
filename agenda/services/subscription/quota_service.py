# ============================================================================
# agenda/services/subscription/quota_service.py
# Plan limits vs. usage counters, counted from the source rows on every call
# ============================================================================
from datetime import datetime, timezone
from typing import Dict, NamedTuple, Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from agenda.config.settings import get_settings
from agenda.core.exceptions import NotFound, QuotaExceeded
from agenda.models.appointment import Appointment
from agenda.models.establishment import Establishment
from agenda.models.plan import EstablishmentMonthlyUsage, Plan, Subscription, SubscriptionStatus
from agenda.models.professional import Professional
from agenda.services.calendar.calendar_rules import get_timezone

logger = logging.getLogger(__name__)


class PlanLimits(NamedTuple):
    code: str
    name: str
    max_professionals: Optional[int]
    max_appointments_month: Optional[int]
    allow_multi_establishments: bool = False


class QuotaDecision(NamedTuple):
    allowed: bool
    reason: str
    limit: Optional[int] = None
    current: int = 0

    def to_dict(self) -> Dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "limit": self.limit,
            "current": self.current,
        }


# Used when the plans table has no row for a code (and as seed data)
DEFAULT_PLANS = {
    "basic": PlanLimits("basic", "Basic", 1, 50, False),
    "essential": PlanLimits("essential", "Essential", 3, 120, False),
    "studio": PlanLimits("studio", "Studio", 10, None, True),
}


class QuotaService:
    """Answers "can this establishment add a professional/appointment" against its plan"""

    @staticmethod
    def get_subscription(db: Session, establishment: Establishment) -> Optional[Subscription]:
        return db.query(Subscription).filter(
            Subscription.owner_user_id == establishment.owner_user_id
        ).first()

    @staticmethod
    def get_active_plan(db: Session, establishment: Establishment) -> PlanLimits:
        """
        Plan in force for the establishment's owner.
        No subscription yet (activation may lag signup) or a canceled one
        falls back to the default plan; past_due keeps its plan.
        """
        subscription = QuotaService.get_subscription(db, establishment)
        default_code = get_settings().DEFAULT_PLAN_CODE

        if subscription is None or subscription.status == SubscriptionStatus.CANCELED.value:
            code = default_code
        else:
            code = subscription.plan_code

        return QuotaService.get_plan_limits(db, code)

    @staticmethod
    def get_plan_limits(db: Session, code: str) -> PlanLimits:
        plan = db.query(Plan).filter(Plan.code == code).first()
        if plan:
            return PlanLimits(
                plan.code,
                plan.name,
                plan.max_professionals,
                plan.max_appointments_month,
                bool(plan.allow_multi_establishments),
            )
        if code in DEFAULT_PLANS:
            return DEFAULT_PLANS[code]

        logger.warning(f"Unknown plan code {code}, using default plan limits")
        return DEFAULT_PLANS.get(get_settings().DEFAULT_PLAN_CODE, DEFAULT_PLANS["basic"])

    @staticmethod
    def count_active_professionals(db: Session, establishment_id: UUID) -> int:
        return db.query(func.count(Professional.id)).filter(
            Professional.establishment_id == establishment_id,
            Professional.active == True
        ).scalar() or 0

    @staticmethod
    def month_bounds(establishment: Establishment, now: datetime) -> Tuple[datetime, datetime]:
        """Current calendar month in the establishment's timezone, as UTC datetimes"""
        tz = get_timezone(establishment.timezone, get_settings().DEFAULT_TIMEZONE)
        local_now = now.astimezone(tz)
        start = local_now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    @staticmethod
    def count_month_appointments(db: Session, establishment: Establishment, now: datetime) -> int:
        """Appointments created this month, whatever their current status"""
        start, end = QuotaService.month_bounds(establishment, now)
        return db.query(func.count(Appointment.id)).filter(
            Appointment.establishment_id == establishment.id,
            Appointment.created_at >= start,
            Appointment.created_at < end
        ).scalar() or 0

    @staticmethod
    def _get_establishment(db: Session, establishment_id: UUID) -> Establishment:
        establishment = db.query(Establishment).filter(Establishment.id == establishment_id).first()
        if not establishment:
            raise NotFound("Establishment not found", resource="establishment")
        return establishment

    @staticmethod
    def can_create_professional(db: Session, establishment_id: UUID) -> QuotaDecision:
        establishment = QuotaService._get_establishment(db, establishment_id)
        plan = QuotaService.get_active_plan(db, establishment)
        current = QuotaService.count_active_professionals(db, establishment.id)

        if plan.max_professionals is None:
            return QuotaDecision(True, "unlimited", None, current)
        if current >= plan.max_professionals:
            return QuotaDecision(
                False,
                f"Plan {plan.name} allows up to {plan.max_professionals} professional(s)",
                plan.max_professionals,
                current,
            )
        return QuotaDecision(True, "ok", plan.max_professionals, current)

    @staticmethod
    def can_create_appointment(
            db: Session,
            establishment_id: UUID,
            now: Optional[datetime] = None
    ) -> QuotaDecision:
        now = now or datetime.now(timezone.utc)
        establishment = QuotaService._get_establishment(db, establishment_id)
        plan = QuotaService.get_active_plan(db, establishment)
        current = QuotaService.count_month_appointments(db, establishment, now)

        if plan.max_appointments_month is None:
            return QuotaDecision(True, "unlimited", None, current)
        if current >= plan.max_appointments_month:
            return QuotaDecision(
                False,
                f"Plan {plan.name} allows up to {plan.max_appointments_month} appointments per month",
                plan.max_appointments_month,
                current,
            )
        return QuotaDecision(True, "ok", plan.max_appointments_month, current)

    @staticmethod
    def ensure_can_create_appointment(db: Session, establishment_id: UUID, now: Optional[datetime] = None):
        decision = QuotaService.can_create_appointment(db, establishment_id, now=now)
        if not decision.allowed:
            logger.warning(
                f"Appointment quota reached for establishment {establishment_id}: "
                f"{decision.current}/{decision.limit}"
            )
            raise QuotaExceeded(decision.reason, limit=decision.limit, current=decision.current)
        return decision

    @staticmethod
    def can_establishment_accept_bookings(
            db: Session,
            establishment_id: UUID,
            now: Optional[datetime] = None
    ) -> QuotaDecision:
        """Booking switch + monthly quota in one answer, for the dashboard status badge"""
        establishment = QuotaService._get_establishment(db, establishment_id)
        if not establishment.booking_enabled:
            return QuotaDecision(False, "Online booking is disabled", None, 0)
        return QuotaService.can_create_appointment(db, establishment_id, now=now)

    @staticmethod
    def get_subscription_usage(
            db: Session,
            establishment_id: UUID,
            now: Optional[datetime] = None
    ) -> Dict:
        """Plan, limits and current usage for the dashboard badge"""
        now = now or datetime.now(timezone.utc)
        establishment = QuotaService._get_establishment(db, establishment_id)
        subscription = QuotaService.get_subscription(db, establishment)
        plan = QuotaService.get_active_plan(db, establishment)

        professionals = QuotaService.count_active_professionals(db, establishment.id)
        appointments = QuotaService.count_month_appointments(db, establishment, now)

        def remaining(limit, used):
            return None if limit is None else max(limit - used, 0)

        return {
            "plan_code": plan.code,
            "plan_name": plan.name,
            "status": subscription.status if subscription else "none",
            "current_period_end": (
                subscription.current_period_end.isoformat() if subscription else None
            ),
            "max_professionals": plan.max_professionals,
            "max_appointments_month": plan.max_appointments_month,
            "allow_multi_establishments": plan.allow_multi_establishments,
            "current_professionals": professionals,
            "current_appointments_month": appointments,
            "can_add_professional": plan.max_professionals is None or professionals < plan.max_professionals,
            "can_add_appointment": (
                plan.max_appointments_month is None or appointments < plan.max_appointments_month
            ),
            "professionals_remaining": remaining(plan.max_professionals, professionals),
            "appointments_remaining": remaining(plan.max_appointments_month, appointments),
        }

    @staticmethod
    def reconcile_monthly_usage(db: Session, establishment: Establishment, now: datetime) -> int:
        """
        Refresh the monthly usage cache from the real count. Runs inside the
        caller's transaction so the cache commits (or rolls back) with the insert.
        """
        tz = get_timezone(establishment.timezone, get_settings().DEFAULT_TIMEZONE)
        local_now = now.astimezone(tz)
        count = QuotaService.count_month_appointments(db, establishment, now)

        usage = db.query(EstablishmentMonthlyUsage).filter(
            EstablishmentMonthlyUsage.establishment_id == establishment.id,
            EstablishmentMonthlyUsage.year == local_now.year,
            EstablishmentMonthlyUsage.month == local_now.month
        ).first()

        if usage is None:
            try:
                with db.begin_nested():
                    usage = EstablishmentMonthlyUsage(
                        establishment_id=establishment.id,
                        year=local_now.year,
                        month=local_now.month,
                        appointments_count=count,
                    )
                    db.add(usage)
            except IntegrityError:
                # Another booking created the row first
                usage = db.query(EstablishmentMonthlyUsage).filter(
                    EstablishmentMonthlyUsage.establishment_id == establishment.id,
                    EstablishmentMonthlyUsage.year == local_now.year,
                    EstablishmentMonthlyUsage.month == local_now.month
                ).one()

        usage.appointments_count = count
        return count
