import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient

from agenda.api.dependencies import create_access_token
from agenda.config.database import get_db
from agenda.main import app
from agenda.models import Establishment
from agenda.services.appointment.appointment_service import AppointmentService
from agenda.utils.my_logging import RedactAccessLogFilter, redact_url

SAO_PAULO = ZoneInfo("America/Sao_Paulo")
WEBHOOK_SECRET = "test-webhook-secret"


def next_open_monday():
    """A Monday at least two days out, so lead-time rules never interfere"""
    day = datetime.now(timezone.utc).astimezone(SAO_PAULO).date() + timedelta(days=2)
    while day.weekday() != 0:
        day += timedelta(days=1)
    return day


@pytest.fixture
def ids(db, establishment, service, professional):
    captured = {
        "slug": establishment.slug,
        "establishment_id": str(establishment.id),
        "owner_id": str(establishment.owner_user_id),
        "service_id": str(service.id),
        "professional_id": str(professional.id),
    }
    # Requests run in their own sessions
    db.close()
    return captured


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def staff_headers(ids):
    token = create_access_token({
        "sub": ids["owner_id"],
        "establishment_id": ids["establishment_id"],
        "role": "owner",
    })
    return {"Authorization": f"Bearer {token}"}


def create_booking(client, ids, hhmm="10:00", day=None, phone="(11) 98765-4321"):
    day = day or next_open_monday()
    return client.post(f"/api/v1/public/{ids['slug']}/appointments", json={
        "service_id": ids["service_id"],
        "professional_id": ids["professional_id"],
        "date": day.isoformat(),
        "time": hhmm,
        "customer": {"name": "Maria Silva", "phone": phone},
    })


def test_health(client):
    response = client.get("/health/")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_availability_then_book_then_manage(client, ids):
    day = next_open_monday()
    availability = client.get(
        f"/api/v1/public/{ids['slug']}/availability",
        params={"service_id": ids["service_id"], "professional_id": ids["professional_id"],
                "start_date": day.isoformat()},
    )
    assert availability.status_code == 200
    slots = availability.json()["days"][day.isoformat()]
    assert slots[0] == "09:00"

    created = create_booking(client, ids, slots[0])
    assert created.status_code == 201
    body = created.json()
    assert body["manage_url"].endswith(f"/manage/{body['manage_token']}")

    again = client.get(
        f"/api/v1/public/{ids['slug']}/availability",
        params={"service_id": ids["service_id"], "start_date": day.isoformat()},
    )
    assert "09:00" not in again.json()["days"][day.isoformat()]

    managed = client.get(f"/api/v1/manage/{body['manage_token']}")
    assert managed.status_code == 200
    assert managed.json()["time"] == "09:00"
    assert managed.json()["establishment"]["reschedule_min_hours"] == 2


def test_taken_slot_returns_409(client, ids):
    assert create_booking(client, ids).status_code == 201
    conflict = create_booking(client, ids, phone="(11) 91111-2222")
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "slot_no_longer_available"


def test_bad_phone_is_422(client, ids):
    response = create_booking(client, ids, phone="12345")
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


def test_unknown_establishment_is_404(client, ids):
    response = client.get(
        "/api/v1/public/nowhere/availability", params={"service_id": ids["service_id"]}
    )
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_customer_reschedules_and_cancels_with_token(client, ids):
    token = create_booking(client, ids).json()["manage_token"]

    moved = client.post(f"/api/v1/manage/{token}/reschedule", json={
        "date": next_open_monday().isoformat(), "time": "14:00",
    })
    assert moved.status_code == 200
    assert moved.json()["time"] == "14:00"

    canceled = client.post(f"/api/v1/manage/{token}/cancel", json={"reason": "Viagem"})
    assert canceled.status_code == 200
    assert canceled.json()["appointment"]["status"] == "canceled"

    again = client.post(f"/api/v1/manage/{token}/cancel", json={})
    assert again.status_code == 409
    assert again.json()["error"] == "invalid_transition"


def test_bad_manage_token_is_401(client, ids):
    response = client.get(f"/api/v1/manage/{'0' * 64}")
    assert response.status_code == 401
    assert response.json()["error"] == "token_invalid"


def test_dashboard_requires_a_token(client, ids):
    assert client.get("/api/v1/dashboard/appointments").status_code in (401, 403)
    bad = client.get("/api/v1/dashboard/appointments", headers={"Authorization": "Bearer nope"})
    assert bad.status_code == 401


def test_dashboard_lists_and_transitions(client, ids, staff_headers):
    appointment_id = create_booking(client, ids).json()["appointment_id"]

    listing = client.get("/api/v1/dashboard/appointments", headers=staff_headers,
                         params={"customer_phone": "(11) 98765-4321"})
    assert listing.status_code == 200
    assert listing.json()["total_appointments"] == 1

    detail = client.get(f"/api/v1/dashboard/appointments/{appointment_id}", headers=staff_headers)
    assert detail.json()["customer"]["phone"] == "11987654321"
    assert [e["event_type"] for e in detail.json()["events"]] == ["created"]

    confirmed = client.post(f"/api/v1/dashboard/appointments/{appointment_id}/confirm", headers=staff_headers)
    assert confirmed.json()["status"] == "confirmed"

    reissued = client.post(f"/api/v1/dashboard/appointments/{appointment_id}/manage-token", headers=staff_headers)
    assert reissued.status_code == 200
    assert len(reissued.json()["manage_token"]) == 64

    completed = client.post(f"/api/v1/dashboard/appointments/{appointment_id}/complete", headers=staff_headers)
    assert completed.json()["status"] == "completed"

    late = client.post(f"/api/v1/dashboard/appointments/{appointment_id}/no-show", headers=staff_headers)
    assert late.status_code == 409


def test_dashboard_is_scoped_to_the_staff_establishment(client, ids):
    appointment_id = create_booking(client, ids).json()["appointment_id"]
    other = create_access_token({"sub": str(uuid4()), "establishment_id": str(uuid4()), "role": "staff"})

    response = client.post(
        f"/api/v1/dashboard/appointments/{appointment_id}/confirm",
        headers={"Authorization": f"Bearer {other}"},
    )
    assert response.status_code == 404


def test_subscription_usage(client, ids, staff_headers):
    usage = client.get("/api/v1/dashboard/subscription/usage", headers=staff_headers)
    assert usage.status_code == 200
    assert usage.json()["plan_code"] == "basic"

    professional = client.get("/api/v1/dashboard/subscription/can-create-professional", headers=staff_headers)
    assert professional.json() == {"allowed": False, "reason": professional.json()["reason"],
                                   "limit": 1, "current": 1}


def test_billing_webhook_secret(client, ids):
    payload = {
        "webhook_event_type": "order_approved",
        "order_id": "ord_1",
        "product_name": "Agenda Studio",
        "customer_email": "dona@studio.com",
        "TrackingParameters": {"user_id": ids["owner_id"]},
    }

    rejected = client.post("/api/v1/billing/webhook", params={"token": "wrong"}, json=payload)
    assert rejected.status_code == 401

    accepted = client.post("/api/v1/billing/webhook", headers={"x-webhook-token": WEBHOOK_SECRET}, json=payload)
    assert accepted.status_code == 200
    assert accepted.json()["plan_code"] == "studio"
    assert accepted.json()["matched"] is True


def test_logged_urls_hide_credentials():
    assert redact_url("/api/v1/manage/abc123/cancel") == "/api/v1/manage/[redacted]/cancel"
    assert redact_url("/api/v1/billing/webhook", "token=s3cret&x=1") == "/api/v1/billing/webhook?token=[redacted]&x=1"


def test_access_log_lines_hide_the_manage_token():
    token = "deadbeef" * 8
    record = logging.LogRecord(
        "uvicorn.access", logging.INFO, __file__, 0, '%s - "%s %s HTTP/%s" %d',
        ("127.0.0.1:48830", "GET", f"/api/v1/manage/{token}?token=s3cret", "1.1", 401), None,
    )

    assert RedactAccessLogFilter().filter(record)
    assert record.getMessage() == (
        '127.0.0.1:48830 - "GET /api/v1/manage/[redacted]?token=[redacted] HTTP/1.1" 401'
    )


def test_crashing_manage_request_does_not_log_the_token(client, ids, monkeypatch, caplog):
    def broken(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(AppointmentService, "resolve_appointment", broken)
    caplog.set_level(logging.INFO)
    token = "deadbeef" * 8

    response = TestClient(app, raise_server_exceptions=False).get(f"/api/v1/manage/{token}")

    assert response.status_code == 500
    assert response.json()["error"] == "internal_error"
    assert "Unhandled error on GET /api/v1/manage/[redacted]" in caplog.text
    assert token not in caplog.text


def test_rejected_manage_request_does_not_log_the_token(client, ids, caplog):
    caplog.set_level(logging.INFO)
    token = "0" * 64

    assert client.get(f"/api/v1/manage/{token}").status_code == 401

    assert token not in caplog.text
    assert all(token not in str(getattr(record, "path", "")) for record in caplog.records)


def test_slug_named_manage_keeps_its_booking_page(client, ids, session_factory):
    session = session_factory()
    establishment = session.get(Establishment, UUID(ids["establishment_id"]))
    establishment.slug = "manage"
    session.commit()
    session.close()

    response = client.get(
        "/api/v1/public/manage/availability",
        params={"service_id": ids["service_id"], "start_date": next_open_monday().isoformat()},
    )
    assert response.status_code == 200
    assert response.json()["days"][next_open_monday().isoformat()]


def test_can_accept_bookings(client, ids, staff_headers):
    response = client.get("/api/v1/dashboard/subscription/can-accept-bookings", headers=staff_headers)
    assert response.status_code == 200
    assert response.json()["allowed"] is True
