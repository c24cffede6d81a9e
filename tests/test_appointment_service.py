from datetime import timedelta, timezone
from uuid import UUID, uuid4

import pytest
from sqlalchemy import update

from agenda.core.exceptions import (
    InvalidTransition,
    NotFound,
    PolicyViolation,
    SlotNoLongerAvailable,
    TokenInvalid,
    ValidationError,
)
from agenda.models import (
    Appointment,
    AppointmentEvent,
    AppointmentManageToken,
    Customer,
    EstablishmentMonthlyUsage,
    RecurringTimeBlock,
)
from agenda.services.appointment.appointment_service import AppointmentService
from agenda.services.availability.availability_service import AvailabilityService
from agenda.services.manage_token.manage_token_service import ManageTokenService
from conftest import MONDAY, NOW, add_professional, book, local

# One hour before the 09:00 appointment on MONDAY
ONE_HOUR_BEFORE = local(MONDAY, "08:00")


def events_of(db, appointment_id):
    return [
        e.event_type
        for e in db.query(AppointmentEvent)
        .filter(AppointmentEvent.appointment_id == appointment_id)
        .order_by(AppointmentEvent.created_at, AppointmentEvent.event_type)
        .all()
    ]


def test_create_books_the_slot(db, establishment, service, professional):
    result = book(db, establishment, service, professional, local(MONDAY, "10:00"))

    assert result["status"] == "booked"
    assert result["start_at"] == local(MONDAY, "10:00").isoformat()
    assert result["end_at"] == local(MONDAY, "10:30").isoformat()
    assert len(result["manage_token"]) == 64

    appointment = db.query(Appointment).one()
    assert str(appointment.id) == result["appointment_id"]
    assert events_of(db, appointment.id) == ["created"]
    assert db.query(AppointmentManageToken).count() == 1

    usage = db.query(EstablishmentMonthlyUsage).one()
    assert (usage.year, usage.month, usage.appointments_count) == (2024, 1, 1)


def test_auto_confirm(db, establishment, service, professional):
    establishment.auto_confirm_bookings = True
    db.commit()
    assert book(db, establishment, service, professional, local(MONDAY, "10:00"))["status"] == "confirmed"


def test_naive_start_is_local_wall_clock(db, establishment, service, professional):
    naive = local(MONDAY, "14:00").replace(tzinfo=None)
    result = book(db, establishment, service, professional, naive)
    assert result["start_at"] == local(MONDAY, "14:00").isoformat()


def test_every_advertised_slot_can_be_booked(db, establishment, service, professional):
    db.add(RecurringTimeBlock(establishment_id=establishment.id, weekday=1,
                              start_time=local(MONDAY, "12:00").time(),
                              end_time=local(MONDAY, "13:00").time()))
    db.commit()

    result = AvailabilityService.get_availability(
        db, establishment.slug, service.id, professional.id, start_date=MONDAY, now=NOW
    )
    slots = result["days"][MONDAY.isoformat()]
    phone_suffix = 1000
    # Every other slot so earlier bookings do not take later ones
    for label in slots[::2]:
        phone_suffix += 1
        book(db, establishment, service, professional, local(MONDAY, label),
             phone=f"1198765{phone_suffix}")

    assert db.query(Appointment).count() == len(slots[::2])


def test_same_phone_updates_customer_name(db, establishment, service, professional):
    book(db, establishment, service, professional, local(MONDAY, "10:00"), name="Maria")
    book(db, establishment, service, professional, local(MONDAY, "11:00"),
         phone="11987654321", name="Maria Souza")

    customer = db.query(Customer).one()
    assert customer.name == "Maria Souza"
    assert customer.phone == "11987654321"


def test_double_booking_is_rejected(db, establishment, service, professional):
    book(db, establishment, service, professional, local(MONDAY, "10:00"))
    with pytest.raises(SlotNoLongerAvailable) as exc:
        book(db, establishment, service, professional, local(MONDAY, "10:15"), phone="11911112222")
    assert exc.value.details["reason"] == "conflict"
    assert db.query(Appointment).count() == 1


def test_outside_hours_and_off_grid(db, establishment, service, professional):
    with pytest.raises(SlotNoLongerAvailable) as exc:
        book(db, establishment, service, professional, local(MONDAY, "17:45"))
    assert exc.value.details["reason"] == "outside_open_hours"

    with pytest.raises(ValidationError):
        book(db, establishment, service, professional, local(MONDAY, "10:05"))


def test_create_preconditions(db, establishment, service, professional):
    with pytest.raises(ValidationError):
        book(db, establishment, service, professional, local(MONDAY, "10:00"), phone="123")

    with pytest.raises(NotFound):
        AppointmentService.create_appointment(
            db, "missing", service.id, professional.id, local(MONDAY, "10:00"),
            "Maria", "11987654321", now=NOW,
        )

    other = add_professional(db, establishment, service, name="Bia")
    other.active = False
    db.commit()
    with pytest.raises(PolicyViolation):
        book(db, establishment, service, other, local(MONDAY, "10:00"))

    establishment.require_policy_acceptance = True
    db.commit()
    with pytest.raises(PolicyViolation) as exc:
        book(db, establishment, service, professional, local(MONDAY, "10:00"))
    assert exc.value.details["reason"] == "policy_not_accepted"
    book(db, establishment, service, professional, local(MONDAY, "10:00"), policy_accepted=True)


def test_customer_cannot_book_beyond_horizon(db, establishment, service, professional):
    far = MONDAY + timedelta(days=42)
    with pytest.raises(PolicyViolation):
        book(db, establishment, service, professional, local(far, "10:00"))
    result = book(db, establishment, service, professional, local(far, "10:00"), actor_type="staff")
    assert result["status"] == "booked"


def test_email_and_notes_follow_establishment_flags(db, establishment, service, professional):
    book(db, establishment, service, professional, local(MONDAY, "10:00"),
         customer_email="maria@example.com", customer_notes="Franja")
    appointment = db.query(Appointment).one()
    assert appointment.customer_notes == "Franja"
    assert db.query(Customer).one().email is None


def test_reschedule_keeps_row_token_and_duration(db, establishment, service, professional):
    created = book(db, establishment, service, professional, local(MONDAY, "10:00"))

    result = AppointmentService.reschedule_appointment(
        db, local(MONDAY, "15:00"), manage_token=created["manage_token"], now=NOW,
    )

    assert result["id"] == created["appointment_id"]
    assert result["time"] == "15:00"
    assert result["duration_minutes"] == 30
    appointment = db.query(Appointment).one()
    assert events_of(db, appointment.id) == ["created", "rescheduled"]
    assert db.query(AppointmentManageToken).one().used_at is not None


def test_reschedule_can_move_into_own_slot(db, establishment, service, professional):
    created = book(db, establishment, service, professional, local(MONDAY, "10:00"))
    AppointmentService.reschedule_appointment(
        db, local(MONDAY, "10:15"), appointment_id=UUID(created["appointment_id"]), now=NOW,
    )
    assert db.query(Appointment).one().start_at == local(MONDAY, "10:15")


def test_reschedule_to_taken_slot_fails(db, establishment, service, professional):
    first = book(db, establishment, service, professional, local(MONDAY, "10:00"))
    book(db, establishment, service, professional, local(MONDAY, "11:00"), phone="11911112222")

    with pytest.raises(SlotNoLongerAvailable):
        AppointmentService.reschedule_appointment(
            db, local(MONDAY, "11:00"), appointment_id=UUID(first["appointment_id"]), now=NOW,
        )


def test_reschedule_to_other_professional(db, establishment, service, professional):
    bia = add_professional(db, establishment, service, name="Bia")
    created = book(db, establishment, service, professional, local(MONDAY, "10:00"))

    result = AppointmentService.reschedule_appointment(
        db, local(MONDAY, "10:00"), appointment_id=UUID(created["appointment_id"]),
        new_professional_id=bia.id, actor_type="staff", now=NOW,
    )

    assert result["professional"]["id"] == str(bia.id)
    assert "professional_changed" in events_of(db, UUID(created["appointment_id"]))


def test_customer_reschedule_inside_lead_time_fails_owner_succeeds(db, establishment, service, professional):
    created = book(db, establishment, service, professional, local(MONDAY, "09:00"))

    with pytest.raises(PolicyViolation) as exc:
        AppointmentService.reschedule_appointment(
            db, local(MONDAY, "11:00"), manage_token=created["manage_token"], now=ONE_HOUR_BEFORE,
        )
    assert exc.value.details["reason"] == "lead_time"

    result = AppointmentService.reschedule_appointment(
        db, local(MONDAY, "11:00"), appointment_id=UUID(created["appointment_id"]),
        actor_type="staff", actor_user_id=uuid4(), now=ONE_HOUR_BEFORE,
    )
    assert result["time"] == "11:00"


def test_customer_cancel_inside_lead_time_fails_staff_succeeds(db, establishment, service, professional):
    created = book(db, establishment, service, professional, local(MONDAY, "09:00"))

    with pytest.raises(PolicyViolation):
        AppointmentService.cancel_appointment(
            db, manage_token=created["manage_token"], now=ONE_HOUR_BEFORE,
        )

    result = AppointmentService.cancel_appointment(
        db, appointment_id=UUID(created["appointment_id"]), actor_type="staff",
        reason="Cliente ligou", now=ONE_HOUR_BEFORE,
    )
    assert result["status"] == "canceled"


def test_canceled_slot_is_free_again(db, establishment, service, professional):
    created = book(db, establishment, service, professional, local(MONDAY, "10:00"))
    AppointmentService.cancel_appointment(db, manage_token=created["manage_token"], now=NOW)
    book(db, establishment, service, professional, local(MONDAY, "10:00"), phone="11911112222")


def test_status_transitions(db, establishment, service, professional):
    created = book(db, establishment, service, professional, local(MONDAY, "10:00"))
    appointment_id = UUID(created["appointment_id"])

    assert AppointmentService.confirm_appointment(db, appointment_id, now=NOW)["status"] == "confirmed"
    with pytest.raises(InvalidTransition):
        AppointmentService.confirm_appointment(db, appointment_id, now=NOW)
    assert AppointmentService.complete_appointment(db, appointment_id, now=NOW)["status"] == "completed"
    # Same timestamp, so events come back alphabetically
    assert events_of(db, appointment_id) == ["completed", "confirmed", "created"]


@pytest.mark.parametrize("finish", ["cancel", "complete", "no_show"])
def test_terminal_states_are_immutable(db, establishment, service, professional, finish):
    created = book(db, establishment, service, professional, local(MONDAY, "10:00"))
    appointment_id = UUID(created["appointment_id"])

    if finish == "cancel":
        AppointmentService.cancel_appointment(db, appointment_id=appointment_id, actor_type="staff", now=NOW)
    elif finish == "complete":
        AppointmentService.complete_appointment(db, appointment_id, now=NOW)
    else:
        AppointmentService.mark_no_show(db, appointment_id, now=NOW)

    before = db.query(Appointment).one()
    snapshot = (before.status, before.start_at, before.end_at, before.professional_id)
    event_count = db.query(AppointmentEvent).count()

    attempts = [
        lambda: AppointmentService.reschedule_appointment(
            db, local(MONDAY, "15:00"), appointment_id=appointment_id, actor_type="staff", now=NOW),
        lambda: AppointmentService.cancel_appointment(
            db, appointment_id=appointment_id, actor_type="staff", now=NOW),
        lambda: AppointmentService.confirm_appointment(db, appointment_id, now=NOW),
        lambda: AppointmentService.complete_appointment(db, appointment_id, now=NOW),
        lambda: AppointmentService.mark_no_show(db, appointment_id, now=NOW),
    ]
    for attempt in attempts:
        with pytest.raises(InvalidTransition):
            attempt()

    after = db.query(Appointment).one()
    assert (after.status, after.start_at, after.end_at, after.professional_id) == snapshot
    assert db.query(AppointmentEvent).count() == event_count


def test_reissue_manage_token_replaces_old_one(db, establishment, service, professional):
    created = book(db, establishment, service, professional, local(MONDAY, "10:00"))
    reissued = AppointmentService.reissue_manage_token(db, UUID(created["appointment_id"]), now=NOW)

    assert reissued["manage_token"] != created["manage_token"]
    with pytest.raises(TokenInvalid):
        AppointmentService.resolve_appointment(db, manage_token=created["manage_token"], now=NOW)
    appointment, _ = AppointmentService.resolve_appointment(db, manage_token=reissued["manage_token"], now=NOW)
    assert str(appointment.id) == created["appointment_id"]


def test_staff_scope_hides_other_establishments(db, establishment, service, professional):
    created = book(db, establishment, service, professional, local(MONDAY, "10:00"))
    with pytest.raises(NotFound):
        AppointmentService.confirm_appointment(db, UUID(created["appointment_id"]), establishment_id=uuid4(), now=NOW)


def test_buffer_keeps_neighbours_apart(db, establishment, service, professional):
    establishment.buffer_minutes = 15
    db.commit()
    book(db, establishment, service, professional, local(MONDAY, "10:00"))

    with pytest.raises(SlotNoLongerAvailable) as exc:
        book(db, establishment, service, professional, local(MONDAY, "10:30"), phone="11911112222")
    assert exc.value.details["reason"] == "conflict"

    book(db, establishment, service, professional, local(MONDAY, "10:45"), phone="11911112222")
    assert db.query(Appointment).count() == 2


def test_capacity_allows_parallel_bookings_up_to_the_limit(db, establishment, service, professional):
    professional.capacity = 2
    db.commit()

    book(db, establishment, service, professional, local(MONDAY, "10:00"), phone="11911110001")
    book(db, establishment, service, professional, local(MONDAY, "10:00"), phone="11911110002")
    with pytest.raises(SlotNoLongerAvailable):
        book(db, establishment, service, professional, local(MONDAY, "10:15"), phone="11911110003")

    book(db, establishment, service, professional, local(MONDAY, "10:30"), phone="11911110003")
    assert db.query(Appointment).count() == 3


def test_reschedule_respects_the_buffer(db, establishment, service, professional):
    establishment.buffer_minutes = 15
    db.commit()
    book(db, establishment, service, professional, local(MONDAY, "10:00"))
    later = book(db, establishment, service, professional, local(MONDAY, "11:00"), phone="11911112222")
    later_id = UUID(later["appointment_id"])

    with pytest.raises(SlotNoLongerAvailable):
        AppointmentService.reschedule_appointment(db, local(MONDAY, "10:30"), appointment_id=later_id, now=NOW)

    result = AppointmentService.reschedule_appointment(db, local(MONDAY, "10:45"), appointment_id=later_id, now=NOW)
    assert result["time"] == "10:45"


def test_booking_survives_a_failed_manage_token(db, establishment, service, professional, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("token store unavailable")

    monkeypatch.setattr(ManageTokenService, "issue", broken)
    created = book(db, establishment, service, professional, local(MONDAY, "10:00"))

    assert created["manage_token"] is None
    assert db.query(Appointment).one().status == "booked"
    assert db.query(AppointmentManageToken).count() == 0

    monkeypatch.undo()
    reissued = AppointmentService.reissue_manage_token(db, UUID(created["appointment_id"]), now=NOW)
    appointment, _ = AppointmentService.resolve_appointment(db, manage_token=reissued["manage_token"], now=NOW)
    assert str(appointment.id) == created["appointment_id"]


@pytest.mark.parametrize("change", ["reschedule", "cancel"])
def test_lead_time_is_checked_on_the_locked_row(db, establishment, service, professional, monkeypatch, change):
    created = book(db, establishment, service, professional, local(MONDAY, "15:00"))
    original_lock = AppointmentService._lock_appointment

    def moved_before_lock(session, appointment_id):
        # Staff moved it to 09:00 between the customer's read and the lock
        session.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id)
            .values(
                start_at=local(MONDAY, "09:00").astimezone(timezone.utc),
                end_at=local(MONDAY, "09:30").astimezone(timezone.utc),
            )
        )
        return original_lock(session, appointment_id)

    monkeypatch.setattr(AppointmentService, "_lock_appointment", staticmethod(moved_before_lock))

    with pytest.raises(PolicyViolation) as exc:
        if change == "reschedule":
            AppointmentService.reschedule_appointment(
                db, local(MONDAY, "16:00"), manage_token=created["manage_token"], now=ONE_HOUR_BEFORE,
            )
        else:
            AppointmentService.cancel_appointment(db, manage_token=created["manage_token"], now=ONE_HOUR_BEFORE)
    assert exc.value.details["reason"] == "lead_time"

    appointment = db.query(Appointment).one()
    assert appointment.status == "booked"
    assert appointment.start_at == local(MONDAY, "15:00")
