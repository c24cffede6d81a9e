# agenda/services/manage_token/manage_token_service.py
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from agenda.config.settings import get_settings
from agenda.core.exceptions import TokenExpired, TokenInvalid
from agenda.models.appointment import Appointment
from agenda.models.manage_token import AppointmentManageToken

logger = logging.getLogger(__name__)


class ManageTokenService:
    """Issues and validates the anonymous links customers use to manage a booking"""

    TOKEN_BYTES = 32

    @staticmethod
    def _hash_token(raw_token: str) -> str:
        return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_raw_token() -> str:
        """64 hex characters of CSPRNG output"""
        return secrets.token_hex(ManageTokenService.TOKEN_BYTES)

    @staticmethod
    def issue(
            db: Session,
            appointment_id: UUID,
            now: Optional[datetime] = None,
    ) -> str:
        """
        Create a token for the appointment and return the raw value.

        The raw token is only returned here, never stored. Issuing again
        replaces the previous token, which stops working.
        """
        now = now or datetime.now(timezone.utc)
        ttl = timedelta(days=get_settings().MANAGE_TOKEN_TTL_DAYS)

        raw_token = ManageTokenService.generate_raw_token()
        token_hash = ManageTokenService._hash_token(raw_token)

        existing = db.query(AppointmentManageToken).filter(
            AppointmentManageToken.appointment_id == appointment_id
        ).first()

        if existing:
            existing.token_hash = token_hash
            existing.expires_at = now + ttl
            existing.used_at = None
            existing.created_at = now
        else:
            db.add(AppointmentManageToken(
                appointment_id=appointment_id,
                token_hash=token_hash,
                expires_at=now + ttl,
                created_at=now,
            ))

        db.commit()

        logger.info(f"Issued manage token for appointment {appointment_id}")
        return raw_token

    @staticmethod
    def validate(
            db: Session,
            raw_token: str,
            now: Optional[datetime] = None,
    ) -> Tuple[AppointmentManageToken, Appointment]:
        """
        Resolve a raw token to its appointment.

        Raises:
            TokenInvalid: unknown token, or its appointment is gone
            TokenExpired: token past its expiry
        """
        now = now or datetime.now(timezone.utc)
        if not raw_token:
            raise TokenInvalid()

        token_hash = ManageTokenService._hash_token(raw_token)
        token = db.query(AppointmentManageToken).filter(
            AppointmentManageToken.token_hash == token_hash
        ).first()

        if not token or not hmac.compare_digest(token.token_hash, token_hash):
            raise TokenInvalid()

        if token.is_expired(now):
            raise TokenExpired(expired_at=token.expires_at.isoformat())

        appointment = db.query(Appointment).filter(Appointment.id == token.appointment_id).first()
        if not appointment:
            raise TokenInvalid()

        return token, appointment

    @staticmethod
    def mark_used(db: Session, token: AppointmentManageToken, now: Optional[datetime] = None):
        """Record the last time the link was used to change the appointment (caller commits)"""
        token.used_at = now or datetime.now(timezone.utc)
