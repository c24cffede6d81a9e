# agenda/schemas/__init__.py
from .booking import (
    CustomerInput,
    SlotSelection,
    CreateAppointmentRequest,
    RescheduleRequest,
    CancelRequest,
    AvailabilityResponse,
    CreateAppointmentResponse,
    ManageTokenResponse,
)

__all__ = [
    "CustomerInput",
    "SlotSelection",
    "CreateAppointmentRequest",
    "RescheduleRequest",
    "CancelRequest",
    "AvailabilityResponse",
    "CreateAppointmentResponse",
    "ManageTokenResponse",
]
