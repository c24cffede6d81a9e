# agenda/models/__init__.py
from .base import Base
from .establishment import Establishment, BusinessHours
from .professional import Professional, ProfessionalHours, professional_services
from .service import Service
from .time_block import TimeBlock, RecurringTimeBlock
from .customer import Customer
from .appointment import (
    Appointment,
    AppointmentEvent,
    AppointmentStatus,
    AppointmentEventType,
    ActorType,
    ACTIVE_STATUSES,
)
from .manage_token import AppointmentManageToken
from .plan import Plan, Subscription, SubscriptionStatus, BillingWebhookEvent, EstablishmentMonthlyUsage

__all__ = [
    "Base",
    "Establishment",
    "BusinessHours",
    "Professional",
    "ProfessionalHours",
    "professional_services",
    "Service",
    "TimeBlock",
    "RecurringTimeBlock",
    "Customer",
    "Appointment",
    "AppointmentEvent",
    "AppointmentStatus",
    "AppointmentEventType",
    "ActorType",
    "ACTIVE_STATUSES",
    "AppointmentManageToken",
    "Plan",
    "Subscription",
    "SubscriptionStatus",
    "BillingWebhookEvent",
    "EstablishmentMonthlyUsage",
]
