# ============================================================================
# agenda/api/v1/billing.py
# Billing provider webhook
# ============================================================================
import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from agenda.config.database import get_db
from agenda.config.settings import get_settings
from agenda.services.subscription.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def verify_webhook_secret(
        token: Optional[str] = Query(None, description="Shared secret"),
        x_webhook_token: Optional[str] = Header(None),
) -> None:
    expected = get_settings().BILLING_WEBHOOK_SECRET
    if not expected:
        logger.error("BILLING_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook secret not configured"
        )

    presented = token or x_webhook_token or ""
    if not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Billing webhook rejected: invalid token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/webhook", dependencies=[Depends(verify_webhook_secret)])
def billing_webhook(
        payload: Dict[str, Any] = Body(...),
        db: Session = Depends(get_db)
):
    """
    Always answers 200 once the event is stored, even if applying it failed,
    so the provider does not keep retrying. Failures are kept on the event row.
    """
    return SubscriptionService.process_webhook(db, payload)
