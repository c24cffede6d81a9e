# ============================================================================
# agenda/services/subscription/subscription_service.py
# Subscription activation from billing provider webhooks
# ============================================================================
import calendar
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agenda.core.exceptions import ValidationError
from agenda.models.plan import BillingWebhookEvent, Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

EVENT_STATUS = {
    "order_approved": SubscriptionStatus.ACTIVE.value,
    "subscription_renewed": SubscriptionStatus.ACTIVE.value,
    "subscription_past_due": SubscriptionStatus.PAST_DUE.value,
    "subscription_payment_failed": SubscriptionStatus.PAST_DUE.value,
    "order_refunded": SubscriptionStatus.CANCELED.value,
    "order_chargedback": SubscriptionStatus.CANCELED.value,
    "subscription_canceled": SubscriptionStatus.CANCELED.value,
}


def plan_code_for_product(product_name: Optional[str]) -> str:
    name = (product_name or "").lower()
    if "studio" in name:
        return "studio"
    if "essencial" in name or "essential" in name:
        return "essential"
    return "basic"


def status_for_event(event_type: str) -> str:
    status = EVENT_STATUS.get(event_type)
    if status is None:
        logger.warning(f"Unknown billing event type {event_type}, treating as active")
        return SubscriptionStatus.ACTIVE.value
    return status


def add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the month's last day"""
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def parse_provider_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00").replace(" ", "T"))
    except ValueError:
        logger.warning(f"Unparseable provider date {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class SubscriptionService:
    """Applies billing provider events to owner subscriptions"""

    @staticmethod
    def event_id_for(payload: Dict[str, Any], event_type: str) -> str:
        reference = payload.get("order_id") or payload.get("subscription_id")
        if not reference:
            return str(uuid.uuid4())
        # The same order goes through several events (approved, refunded, ...)
        return f"{event_type}:{reference}"

    @staticmethod
    def resolve_owner(db: Session, payload: Dict[str, Any], buyer_email: str) -> Optional[UUID]:
        tracking = payload.get("TrackingParameters") or {}
        user_id = tracking.get("user_id")
        if user_id:
            try:
                return UUID(str(user_id))
            except ValueError:
                logger.warning(f"Invalid user_id in billing tracking parameters: {user_id!r}")

        existing = db.query(Subscription).filter(Subscription.buyer_email == buyer_email).first()
        if existing:
            return existing.owner_user_id
        return None

    @staticmethod
    def process_webhook(
            db: Session,
            payload: Dict[str, Any],
            provider: str = "kiwify",
            now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Record the event once per (provider, event id) and upsert the owner's
        subscription. Processing errors are stored on the event row and
        reported in the result instead of raised, so the provider stops retrying.
        """
        now = now or datetime.now(timezone.utc)
        event_type = payload.get("webhook_event_type") or "unknown"
        event_id = SubscriptionService.event_id_for(payload, event_type)

        event = BillingWebhookEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            received_at=now,
        )
        db.add(event)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(f"Duplicate {provider} event {event_id}, skipping")
            return {"success": True, "duplicate": True, "event_id": event_id}

        processing_error = None
        result: Dict[str, Any] = {}
        try:
            result = SubscriptionService.apply_event(db, payload, event_type, provider, now)
        except ValidationError as e:
            db.rollback()
            processing_error = e.message
            logger.error(f"Failed to process {provider} event {event_id}: {processing_error}")
        except Exception as e:
            db.rollback()
            processing_error = str(e) or type(e).__name__
            result = {}
            logger.error(f"Unexpected error processing {provider} event {event_id}: {e}", exc_info=True)

        event.processed_at = now
        event.processing_error = processing_error
        db.commit()

        response = {"success": processing_error is None, "duplicate": False, "event_id": event_id}
        if processing_error:
            response["error"] = processing_error
        response.update(result)
        return response

    @staticmethod
    def apply_event(
            db: Session,
            payload: Dict[str, Any],
            event_type: str,
            provider: str,
            now: datetime,
    ) -> Dict[str, Any]:
        buyer_email = (payload.get("customer_email") or "").strip().lower()
        if not buyer_email:
            raise ValidationError("No customer email in payload")

        owner_user_id = SubscriptionService.resolve_owner(db, payload, buyer_email)
        plan_code = plan_code_for_product(payload.get("product_name"))
        status = status_for_event(event_type)

        if owner_user_id is None:
            logger.info(f"No owner found for billing event ({event_type}); kept for later matching")
            return {"matched": False, "plan_code": plan_code, "status": status}

        period_start = parse_provider_datetime(payload.get("approved_date")) or now
        period_end = add_one_month(period_start)

        subscription = db.query(Subscription).filter(
            Subscription.owner_user_id == owner_user_id
        ).first()
        if subscription is None:
            subscription = Subscription(owner_user_id=owner_user_id, created_at=now)
            db.add(subscription)

        subscription.plan_code = plan_code
        subscription.status = status
        subscription.provider = provider
        subscription.provider_subscription_id = payload.get("subscription_id")
        subscription.provider_order_id = payload.get("order_id")
        subscription.buyer_email = buyer_email
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.raw_last_event = payload
        subscription.updated_at = now

        logger.info(f"Subscription {status} for owner {owner_user_id} on plan {plan_code}")
        return {
            "matched": True,
            "owner_user_id": str(owner_user_id),
            "plan_code": plan_code,
            "status": status,
        }
