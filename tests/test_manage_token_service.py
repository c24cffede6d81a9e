import string
from datetime import timedelta
from uuid import UUID

import pytest

from agenda.core.exceptions import TokenExpired, TokenInvalid
from agenda.models import AppointmentManageToken
from agenda.services.manage_token.manage_token_service import ManageTokenService
from conftest import MONDAY, NOW, book, local


@pytest.fixture
def booked(db, establishment, service, professional):
    return book(db, establishment, service, professional, local(MONDAY, "10:00"))


def test_raw_token_is_64_hex_characters():
    raw = ManageTokenService.generate_raw_token()
    assert len(raw) == 64
    assert set(raw) <= set(string.hexdigits.lower())


def test_only_the_hash_is_stored(db, booked):
    stored = db.query(AppointmentManageToken).one()
    assert stored.token_hash != booked["manage_token"]
    assert stored.token_hash == ManageTokenService._hash_token(booked["manage_token"])
    assert stored.expires_at == NOW + timedelta(days=30)


def test_validate_returns_the_appointment(db, booked):
    token, appointment = ManageTokenService.validate(db, booked["manage_token"], now=NOW)
    assert str(appointment.id) == booked["appointment_id"]
    assert token.appointment_id == appointment.id


def test_one_character_off_is_invalid(db, booked):
    raw = booked["manage_token"]
    tampered = raw[:-1] + ("0" if raw[-1] != "0" else "1")
    with pytest.raises(TokenInvalid):
        ManageTokenService.validate(db, tampered, now=NOW)


def test_empty_token_is_invalid(db):
    with pytest.raises(TokenInvalid):
        ManageTokenService.validate(db, "", now=NOW)


def test_token_expires_after_ttl(db, booked):
    ManageTokenService.validate(db, booked["manage_token"], now=NOW + timedelta(days=29))
    with pytest.raises(TokenExpired) as exc:
        ManageTokenService.validate(db, booked["manage_token"], now=NOW + timedelta(days=30))
    assert "expired_at" in exc.value.details


def test_reissue_invalidates_previous_token(db, booked):
    appointment_id = UUID(booked["appointment_id"])
    fresh = ManageTokenService.issue(db, appointment_id, now=NOW)

    assert db.query(AppointmentManageToken).count() == 1
    with pytest.raises(TokenInvalid):
        ManageTokenService.validate(db, booked["manage_token"], now=NOW)
    _, appointment = ManageTokenService.validate(db, fresh, now=NOW)
    assert appointment.id == appointment_id
