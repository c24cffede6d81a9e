import logging
import os
import uuid

# Settings are read at import time, so the environment goes first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["NOTIFICATIONS_ENABLED"] = "false"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["BILLING_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["BOOKING_MIN_LEAD_MINUTES"] = "0"

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from agenda.models import (
    Base,
    BusinessHours,
    Establishment,
    Plan,
    Professional,
    Service,
)
from agenda.services.appointment.appointment_service import AppointmentService

TZ = ZoneInfo("America/Sao_Paulo")

# Monday 2024-01-01 08:00 in Sao Paulo (UTC-3, no DST since 2019)
NOW = datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)
MONDAY = date(2024, 1, 8)
SUNDAY = date(2024, 1, 7)


@pytest.fixture(autouse=True)
def quiet_test_client_logging():
    # The test client (httpx) logs every request URL at INFO; keep the
    # harness's own lines out of caplog so log assertions see only the app
    client_logger = logging.getLogger("httpx")
    previous = client_logger.level
    client_logger.setLevel(logging.WARNING)
    yield
    client_logger.setLevel(previous)


def local(day: date, hhmm: str) -> datetime:
    hours, minutes = (int(part) for part in hhmm.split(":"))
    return datetime.combine(day, time(hours, minutes), tzinfo=TZ)


def quarter_hours(first: str, last: str):
    start = datetime.combine(MONDAY, time(*map(int, first.split(":"))))
    end = datetime.combine(MONDAY, time(*map(int, last.split(":"))))
    labels = []
    while start <= end:
        labels.append(start.strftime("%H:%M"))
        start += timedelta(minutes=15)
    return labels


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'agenda.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # pysqlite defers BEGIN; take the write lock up front so concurrent
    # writers queue behind each other like row locks would
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def plans(db):
    db.add_all([
        Plan(code="basic", name="Basic", max_professionals=1, max_appointments_month=50),
        Plan(code="essential", name="Essential", max_professionals=3, max_appointments_month=120),
        Plan(code="studio", name="Studio", max_professionals=10, max_appointments_month=None,
             allow_multi_establishments=True),
    ])
    db.commit()


@pytest.fixture
def establishment(db, plans):
    """Open Mon-Sat 09:00-18:00, closed Sunday, 15 minute grid, no buffer"""
    establishment = Establishment(
        owner_user_id=uuid.uuid4(),
        name="Studio Bela",
        slug="studio-bela",
        timezone="America/Sao_Paulo",
        slot_interval_minutes=15,
        buffer_minutes=0,
        max_future_days=30,
        reschedule_min_hours=2,
    )
    db.add(establishment)
    db.flush()

    for weekday in range(7):
        if weekday == 0:
            db.add(BusinessHours(establishment_id=establishment.id, weekday=0, closed=True))
        else:
            db.add(BusinessHours(
                establishment_id=establishment.id,
                weekday=weekday,
                open_time=time(9, 0),
                close_time=time(18, 0),
            ))
    db.commit()
    return establishment


@pytest.fixture
def service(db, establishment):
    service = Service(
        establishment_id=establishment.id,
        name="Corte feminino",
        duration_minutes=30,
        price_cents=8000,
    )
    db.add(service)
    db.commit()
    return service


def add_professional(db, establishment, service, name="Ana", capacity=1):
    professional = Professional(
        establishment_id=establishment.id,
        name=name,
        capacity=capacity,
    )
    professional.services.append(service)
    db.add(professional)
    db.commit()
    return professional


@pytest.fixture
def professional(db, establishment, service):
    return add_professional(db, establishment, service)


def book(db, establishment, service, professional, start, phone="(11) 98765-4321",
         name="Maria Silva", now=NOW, **kwargs):
    return AppointmentService.create_appointment(
        db,
        establishment_slug=establishment.slug,
        service_id=service.id,
        professional_id=professional.id,
        start_at=start,
        customer_name=name,
        customer_phone=phone,
        now=now,
        **kwargs,
    )
