from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from timeclock.auth.security import create_access_token
from timeclock.db import get_db
from timeclock.main import app
from timeclock.services.notifications import NotificationOutbox, get_outbox
from timeclock.services.time_rules import utcnow

from .conftest import ON_SITE, OFF_SITE


@pytest.fixture()
def live(db, world):
    """World whose shift starts shortly, since routes use the real clock."""
    start = utcnow().replace(microsecond=0) + timedelta(minutes=10)
    world.shift.start_time = start
    world.shift.end_time = start + timedelta(hours=4)
    db.commit()
    return world


@pytest.fixture()
def client(db, sender):
    def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_outbox] = lambda: NotificationOutbox(sender=sender)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth(user, org):
    return {"Authorization": f"Bearer {create_access_token(user.id, org.id)}"}


def clock_payload(world, coords=ON_SITE, **overrides):
    payload = {
        "shift_id": world.shift.id,
        "latitude": coords[0],
        "longitude": coords[1],
        "accuracy_meters": 8,
        "device_timestamp": utcnow().isoformat(),
    }
    payload.update(overrides)
    return payload


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_missing_token_is_unauthorized(client, live):
    r = client.post("/geofence/clock-in", json=clock_payload(live))
    assert r.status_code == 401
    body = r.json()
    assert body["success"] is False
    assert body["error"]["code"] == "UNAUTHORIZED"


def test_bad_token_is_unauthorized(client, live):
    r = client.post("/geofence/clock-in", json=clock_payload(live), headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401


def test_schema_errors_use_envelope(client, live):
    r = client.post(
        "/geofence/clock-in",
        json=clock_payload(live, latitude=123.0),
        headers=auth(live.worker, live.org),
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


def test_clock_in_and_out_over_http(client, live, sender):
    headers = auth(live.worker, live.org)

    r = client.post("/geofence/clock-in", json=clock_payload(live), headers=headers)
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert r.json()["success"] is True
    assert data["assignmentId"] == live.assignment.id
    assert data["wasEarly"] is True
    assert data["distanceMeters"] < 100

    # Flushed after the response
    assert {p["recipient_id"] for p in sender.pushes} == {live.manager.id, live.admin.id}
    assert len(sender.cancelled) == 3

    r = client.post("/geofence/clock-in", json=clock_payload(live), headers=headers)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "ALREADY_CLOCKED_IN"

    r = client.post("/geofence/clock-out", json=clock_payload(live), headers=headers)
    assert r.status_code == 200, r.text
    assert r.json()["data"]["shiftCompleted"] is True


def test_clock_in_outside_geofence(client, live):
    r = client.post(
        "/geofence/clock-in",
        json=clock_payload(live, coords=OFF_SITE),
        headers=auth(live.worker, live.org),
    )
    assert r.status_code == 400
    error = r.json()["error"]
    assert error["code"] == "OUTSIDE_GEOFENCE"
    assert error["details"]["requiredRadius"] == 100


def test_stale_device_timestamp_is_rejected(client, live):
    stale = (utcnow() - timedelta(minutes=10)).isoformat()
    r = client.post(
        "/geofence/clock-in",
        json=clock_payload(live, device_timestamp=stale),
        headers=auth(live.worker, live.org),
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "REPLAY_DETECTED"


def test_location_ping(client, live):
    r = client.post(
        "/geofence/location",
        json={"latitude": ON_SITE[0], "longitude": ON_SITE[1], "accuracy_meters": 10},
        headers=auth(live.worker, live.org),
    )
    assert r.status_code == 200, r.text
    assert r.json()["data"]["eventType"] == "arrival"


def test_correction_flow_and_approval(client, live, db):
    worker = auth(live.worker, live.org)
    manager = auth(live.manager, live.org)
    client.post("/geofence/clock-in", json=clock_payload(live), headers=worker)
    client.post("/geofence/clock-out", json=clock_payload(live), headers=worker)

    r = client.post("/geofence/corrections", json={
        "shift_assignment_id": live.assignment.id,
        "reason": "Forgot to log my 30 minute break",
        "requested_clock_in": live.shift.start_time.isoformat(),
        "requested_clock_out": live.shift.end_time.isoformat(),
        "requested_break_minutes": 30,
    }, headers=worker)
    assert r.status_code == 200, r.text
    request_id = r.json()["data"]["requestId"]

    r = client.get("/geofence/corrections/pending", headers=worker)
    assert r.status_code == 403
    r = client.get("/geofence/corrections/pending", headers=manager)
    assert [c["requestId"] for c in r.json()["data"]] == [request_id]

    r = client.post(f"/geofence/corrections/{request_id}/review",
                    json={"action": "approve", "review_notes": "ok"}, headers=manager)
    assert r.status_code == 200, r.text
    r = client.post(f"/geofence/corrections/{request_id}/review",
                    json={"action": "approve"}, headers=manager)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "ALREADY_REVIEWED"

    r = client.post(f"/shifts/{live.shift.id}/approve", headers=manager)
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["status"] == "approved"
    assert data["assignments"][0]["billableMinutes"] == 210
    assert data["totalCostCents"] == 7000


def test_approve_requires_completed_shift(client, live):
    r = client.post(f"/shifts/{live.shift.id}/approve", headers=auth(live.manager, live.org))
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_TRANSITION"
