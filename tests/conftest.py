import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
import pytz
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from timeclock.db import Base
from timeclock.models.models import (
    Organization, User, Member, VenueLocation, Shift, ShiftAssignment,
)
from timeclock.services.notifications import NotificationOutbox


SHIFT_START = datetime(2026, 3, 2, 9, 0, tzinfo=pytz.UTC)
SHIFT_END = datetime(2026, 3, 2, 13, 0, tzinfo=pytz.UTC)

VENUE_LAT = 51.5007
VENUE_LNG = -0.1246
# ~33 m and ~1.1 km north of the venue
ON_SITE = (VENUE_LAT + 0.0003, VENUE_LNG)
OFF_SITE = (VENUE_LAT + 0.01, VENUE_LNG)


class RecordingSender:
    """Notification sender that records calls instead of delivering them."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.pushes = []
        self.sms = []
        self.cancelled = []

    def notify(self, recipient_id, title, body, data=None):
        if "push" in self.fail_on:
            raise RuntimeError("push gateway down")
        self.pushes.append({"recipient_id": recipient_id, "title": title, "body": body, "data": data})

    def send_sms(self, phone_number, message):
        if "sms" in self.fail_on:
            raise RuntimeError("sms gateway down")
        self.sms.append({"phone_number": phone_number, "message": message})

    def cancel_by_type(self, shift_id, worker_id, notification_type):
        self.cancelled.append((shift_id, worker_id, notification_type))
        return True


def make_engine(url="sqlite://"):
    if url == "sqlite://":
        engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    else:
        engine = create_engine(url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return engine


def add_user(db, org, name, role="worker", phone=None):
    user = User(name=name, phone_number=phone)
    db.add(user)
    db.flush()
    db.add(Member(organization_id=org.id, user_id=user.id, role=role))
    db.flush()
    return user


def add_shift(db, org, venue, start=SHIFT_START, end=SHIFT_END, status="assigned", price=2500):
    shift = Shift(
        organization_id=org.id,
        location_id=venue.id if venue else None,
        title="Evening Bar Staff",
        start_time=start,
        end_time=end,
        status=status,
        price=price,
    )
    db.add(shift)
    db.flush()
    return shift


def assign(db, shift, worker, rate=2000, **fields):
    assignment = ShiftAssignment(
        shift_id=shift.id,
        worker_id=worker.id,
        status=fields.pop("status", "active"),
        budget_rate_snapshot=rate,
        break_minutes=fields.pop("break_minutes", 0),
        **fields,
    )
    db.add(assignment)
    db.flush()
    return assignment


def seed_world(db):
    org = Organization(name="Hive Events", timezone="Europe/London", early_clock_in_buffer_minutes=60)
    db.add(org)
    db.flush()
    manager = add_user(db, org, "Morgan Manager", role="manager")
    admin = add_user(db, org, "Ada Admin", role="admin")
    worker = add_user(db, org, "Sam Worker", role="worker", phone="+447700900001")
    venue = VenueLocation(
        organization_id=org.id,
        name="Riverside Hall",
        address="1 Riverside Walk, London",
        latitude=VENUE_LAT,
        longitude=VENUE_LNG,
        geofence_radius=100,
    )
    db.add(venue)
    db.flush()
    shift = add_shift(db, org, venue)
    assignment = assign(db, shift, worker)
    db.commit()
    return SimpleNamespace(
        org=org, manager=manager, admin=admin, worker=worker,
        venue=venue, shift=shift, assignment=assignment,
    )


@pytest.fixture()
def engine():
    engine = make_engine()
    yield engine
    engine.dispose()


@pytest.fixture()
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, future=True)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def world(db):
    return seed_world(db)


@pytest.fixture()
def sender():
    return RecordingSender()


@pytest.fixture()
def outbox(sender):
    return NotificationOutbox(sender=sender)


def minutes(n):
    return timedelta(minutes=n)
