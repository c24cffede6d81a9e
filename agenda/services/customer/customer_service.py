# ============================================================================
# agenda/services/customer/customer_service.py
# ============================================================================
"""Customer lookup and contact validation"""
import logging
import re
from typing import Optional
from uuid import UUID

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agenda.core.exceptions import ValidationError
from agenda.models.customer import Customer
from agenda.utils.my_logging import mask_phone

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^\(\d{2}\)\s?\d{4,5}-?\d{4}$")
NAME_MAX_LENGTH = 100
NOTES_MAX_LENGTH = 500


def phone_digits(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def normalize_phone(phone: str) -> str:
    """
    Accept "(11) 98765-4321" style input or 10-11 bare digits.
    Returns the digits only.
    """
    value = (phone or "").strip()
    digits = phone_digits(value)
    if PHONE_PATTERN.match(value) or (value.isdigit() and len(value) in (10, 11)):
        return digits
    raise ValidationError("Invalid phone number", field="phone")


def clean_name(name: str) -> str:
    value = (name or "").strip()
    if not value:
        raise ValidationError("Name is required", field="name")
    if len(value) > NAME_MAX_LENGTH:
        raise ValidationError(f"Name must be at most {NAME_MAX_LENGTH} characters", field="name")
    return value


def clean_email(email: Optional[str]) -> Optional[str]:
    if not email or not email.strip():
        return None
    try:
        return validate_email(email.strip(), check_deliverability=False).normalized
    except EmailNotValidError:
        raise ValidationError("Invalid email address", field="email")


def clean_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    value = notes.strip()
    if len(value) > NOTES_MAX_LENGTH:
        raise ValidationError(f"Notes must be at most {NOTES_MAX_LENGTH} characters", field="notes")
    return value or None


class CustomerService:
    """Establishment-scoped customers, one per phone number"""

    @staticmethod
    def get_by_phone(db: Session, establishment_id: UUID, phone: str) -> Optional[Customer]:
        return db.query(Customer).filter(
            Customer.establishment_id == establishment_id,
            Customer.phone == phone_digits(phone)
        ).first()

    @staticmethod
    def upsert(
            db: Session,
            establishment_id: UUID,
            name: str,
            phone: str,
            email: Optional[str] = None,
    ) -> Customer:
        """
        Find the customer by (establishment, phone) or create one. Name and
        email are refreshed from the latest booking. Does not commit.
        """
        digits = normalize_phone(phone)
        name = clean_name(name)
        email = clean_email(email)

        customer = CustomerService.get_by_phone(db, establishment_id, digits)
        if customer is None:
            try:
                with db.begin_nested():
                    customer = Customer(
                        establishment_id=establishment_id,
                        name=name,
                        phone=digits,
                        email=email,
                    )
                    db.add(customer)
                logger.info(f"Created customer {mask_phone(digits)} for establishment {establishment_id}")
                return customer
            except IntegrityError:
                # Same phone inserted by a concurrent booking
                customer = CustomerService.get_by_phone(db, establishment_id, digits)
                if customer is None:
                    raise

        customer.name = name
        if email:
            customer.email = email
        return customer
