# agenda/services/notification/notification_service.py
"""Appointment event notifications"""
import logging
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from agenda.config.settings import get_settings
from agenda.models.appointment import Appointment
from agenda.utils.my_logging import mask_phone

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Hand-off point for appointment events. Delivery channels are outside this
    service; for now each event is rendered and logged by the worker.
    """

    @staticmethod
    def build_message(db: Session, appointment_id: UUID, event_type: str) -> Optional[Dict]:
        appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appointment:
            logger.warning(f"Notification skipped, appointment {appointment_id} not found")
            return None

        return {
            "appointment_id": str(appointment.id),
            "event_type": event_type,
            "establishment": appointment.establishment.name,
            "professional": appointment.professional.name,
            "service": appointment.service.name,
            "start_at": appointment.start_at.isoformat(),
            "status": appointment.status,
            "customer_phone": mask_phone(appointment.customer.phone),
        }

    @staticmethod
    def deliver(db: Session, appointment_id: UUID, event_type: str) -> Optional[Dict]:
        message = NotificationService.build_message(db, appointment_id, event_type)
        if message:
            logger.info(
                f"Appointment {message['appointment_id']} {event_type} "
                f"({message['service']} with {message['professional']} at {message['start_at']}) "
                f"for customer {message['customer_phone']}"
            )
        return message

    @staticmethod
    def dispatch(appointment_id: UUID, event_type: str) -> bool:
        """
        Queue a notification. Failures are logged and never propagate:
        the appointment change has already been committed.
        """
        if not get_settings().NOTIFICATIONS_ENABLED:
            return False

        try:
            from agenda.tasks.notification_tasks import notify_appointment_event
            notify_appointment_event.delay(str(appointment_id), event_type)
            return True
        except Exception as exc:
            logger.error(f"Failed to queue {event_type} notification for appointment {appointment_id}: {exc}")
            return False
