# ===== agenda/tasks/notification_tasks.py =====
import logging
from uuid import UUID

from agenda.config.celery_config import celery_app
from agenda.config.database import SessionLocal
from agenda.services.notification.notification_service import NotificationService

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def notify_appointment_event(self, appointment_id: str, event_type: str):
    """
    Deliver the notification for an appointment event

    Args:
        appointment_id: Appointment UUID as string
        event_type: created, rescheduled, canceled, ...
    """
    db = SessionLocal()
    try:
        message = NotificationService.deliver(db, UUID(appointment_id), event_type)
        if message is None:
            return {"status": "skipped", "appointment_id": appointment_id}
        return {"status": "success", "appointment_id": appointment_id, "event_type": event_type}

    except Exception as exc:
        logger.error(f"Failed to deliver {event_type} notification for {appointment_id}: {exc}")

        # Retry with exponential backoff: 1min, 2min, 4min
        raise self.retry(
            exc=exc,
            countdown=60 * (2 ** self.request.retries)
        )
    finally:
        db.close()
