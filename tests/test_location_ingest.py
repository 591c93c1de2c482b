from datetime import timedelta

import pytest

from timeclock.errors import Forbidden
from timeclock.models.models import ShiftAssignment, WorkerLocationPing
from timeclock.services.clock import clock_in
from timeclock.services.location_ingest import ingest_ping

from .conftest import SHIFT_START, SHIFT_END, ON_SITE, OFF_SITE, minutes


def ping(db, outbox, world, now, coords):
    return ingest_ping(
        db, outbox,
        worker_id=world.worker.id,
        org_id=world.org.id,
        latitude=coords[0],
        longitude=coords[1],
        accuracy_m=12.0,
        device_timestamp=now,
        now=now,
    )


def stored(db):
    return db.query(WorkerLocationPing).count()


def clocked_in(db, outbox, world, at):
    clock_in(db, outbox, world.shift.id, world.worker.id, world.org.id,
             ON_SITE[0], ON_SITE[1], 5.0, at, now=at)
    outbox.discard()


def test_ping_outside_every_shift_window_is_discarded(db, world, outbox):
    result = ping(db, outbox, world, SHIFT_START - timedelta(hours=2), ON_SITE)
    assert result == {"discarded": True, "reason": "no_active_shift"}
    assert stored(db) == 0

    result = ping(db, outbox, world, SHIFT_END + minutes(61), ON_SITE)
    assert result["discarded"] is True


def test_ping_within_window_before_shift_is_stored(db, world, outbox):
    result = ping(db, outbox, world, SHIFT_START - minutes(60), OFF_SITE)
    assert result["eventType"] == "ping"
    assert result["isOnSite"] is False
    assert result["canClockIn"] is False
    assert stored(db) == 1


def test_non_member_is_forbidden(db, world, outbox):
    with pytest.raises(Forbidden):
        ingest_ping(db, outbox, "nobody", world.org.id, ON_SITE[0], ON_SITE[1], now=SHIFT_START)


def test_arrival_sends_one_clock_in_reminder(db, world, outbox):
    result = ping(db, outbox, world, SHIFT_START - minutes(10), ON_SITE)
    assert result["eventType"] == "arrival"
    assert result["canClockIn"] is True
    assert result["canClockOut"] is False
    sms = outbox.of_kind("sms")
    assert len(sms) == 1
    assert sms[0].params["phone_number"] == "+447700900001"
    assert sms[0].params["message"] == (
        "Hi Sam Worker, you have arrived at Riverside Hall. Please remember to clock in using the app."
    )

    result = ping(db, outbox, world, SHIFT_START - minutes(5), ON_SITE)
    assert result["eventType"] == "ping"
    assert len(outbox.of_kind("sms")) == 1
    assert stored(db) == 2


def test_on_site_clocked_in_pings_are_throttled(db, world, outbox):
    t0 = SHIFT_START
    clocked_in(db, outbox, world, t0)
    assert stored(db) == 1  # clock_in row

    result = ping(db, outbox, world, t0 + minutes(3), ON_SITE)
    assert result["throttled"] is True
    assert result["eventType"] == "ping_throttled"
    assert result["canClockOut"] is True

    result = ping(db, outbox, world, t0 + minutes(7), ON_SITE)
    assert result["throttled"] is True
    assert stored(db) == 1

    result = ping(db, outbox, world, t0 + minutes(11), ON_SITE)
    assert result["throttled"] is False
    assert result["eventType"] == "ping"
    assert stored(db) == 2


def test_off_site_pings_are_never_throttled(db, world, outbox):
    clocked_in(db, outbox, world, SHIFT_START)
    ping(db, outbox, world, SHIFT_START + minutes(1), OFF_SITE)
    ping(db, outbox, world, SHIFT_START + minutes(2), OFF_SITE)
    assert stored(db) == 3


def test_departure_flags_review_and_texts_once_per_episode(db, world, outbox):
    clocked_in(db, outbox, world, SHIFT_START)

    result = ping(db, outbox, world, SHIFT_START + minutes(15), OFF_SITE)
    assert result["eventType"] == "departure"
    a = db.get(ShiftAssignment, world.assignment.id)
    assert a.needs_review is True
    assert a.review_reason == "left_geofence"
    assert a.last_known_lat == pytest.approx(OFF_SITE[0])
    assert a.last_known_at is not None

    # Still away
    assert ping(db, outbox, world, SHIFT_START + minutes(30), OFF_SITE)["eventType"] == "ping"
    # Back on site, then away again while still flagged
    assert ping(db, outbox, world, SHIFT_START + minutes(40), ON_SITE)["eventType"] == "ping"
    assert ping(db, outbox, world, SHIFT_START + minutes(55), OFF_SITE)["eventType"] == "ping"

    departures = [m for m in outbox.of_kind("sms") if m.label == "departure_sms"]
    assert len(departures) == 1
    assert "we detected you left the venue" in departures[0].params["message"]
    assert db.query(WorkerLocationPing).filter(WorkerLocationPing.event_type == "departure").count() == 1


def test_departure_texts_again_after_review_is_cleared(db, world, outbox):
    clocked_in(db, outbox, world, SHIFT_START)
    ping(db, outbox, world, SHIFT_START + minutes(15), OFF_SITE)

    a = db.get(ShiftAssignment, world.assignment.id)
    a.needs_review = False
    a.review_reason = None
    db.commit()

    ping(db, outbox, world, SHIFT_START + minutes(30), ON_SITE)
    result = ping(db, outbox, world, SHIFT_START + minutes(45), OFF_SITE)
    assert result["eventType"] == "departure"
    assert len(outbox.of_kind("sms")) == 2


def test_worker_without_phone_gets_no_sms(db, world, outbox):
    world.worker.phone_number = None
    db.commit()
    result = ping(db, outbox, world, SHIFT_START - minutes(10), ON_SITE)
    assert result["eventType"] == "arrival"
    assert outbox.of_kind("sms") == []
