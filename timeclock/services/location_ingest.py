"""
Location ping ingestion: arrival/departure detection and throttled storage.
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ValidationFailed
from ..models.models import Shift, ShiftAssignment, User, WorkerLocationPing
from .geofence import check_geofence, is_valid_coordinates
from .notifications import NotificationOutbox
from .permissions import require_member
from .time_rules import ensure_utc, utcnow

logger = structlog.get_logger(__name__)

TRACKED_ASSIGNMENT_STATUSES = ("active", "in-progress")

ARRIVAL_SMS = "Hi {name}, you have arrived at {venue}. Please remember to clock in using the app."
DEPARTURE_SMS = (
    "Hi {name}, we detected you left the venue. "
    "You have been flagged for review. Please clock out or contact your manager."
)


def _is_clocked_in(assignment: ShiftAssignment) -> bool:
    return assignment.actual_clock_in is not None and assignment.actual_clock_out is None


def find_relevant_assignment(
    db: Session,
    worker_id: str,
    org_id: str,
    now: datetime,
    window_minutes: Optional[int] = None,
) -> Optional[ShiftAssignment]:
    """
    The worker's assignment whose scheduled window (widened by window_minutes
    on both sides) contains now. A clocked-in assignment wins over an upcoming one.
    """
    if window_minutes is None:
        window_minutes = settings.ping_window_min
    window = timedelta(minutes=window_minutes)

    candidates: List[ShiftAssignment] = db.query(ShiftAssignment).join(
        Shift, ShiftAssignment.shift_id == Shift.id
    ).filter(
        ShiftAssignment.worker_id == worker_id,
        ShiftAssignment.status.in_(TRACKED_ASSIGNMENT_STATUSES),
        Shift.organization_id == org_id,
        Shift.start_time <= now + window,
        Shift.end_time >= now - window,
    ).order_by(Shift.start_time.asc()).all()

    if not candidates:
        return None
    for assignment in candidates:
        if _is_clocked_in(assignment):
            return assignment
    return candidates[0]


def _response(
    is_on_site: bool,
    distance: Optional[int],
    event_type: str,
    assignment: Optional[ShiftAssignment],
    **extra,
) -> Dict[str, Any]:
    clocked_in = assignment is not None and assignment.actual_clock_in is not None
    clocked_out = assignment is not None and assignment.actual_clock_out is not None
    data = {
        "isOnSite": is_on_site,
        "distanceMeters": distance,
        "eventType": event_type,
        "shiftId": assignment.shift_id if assignment else None,
        # Advisory only; clock_in/clock_out re-validate
        "canClockIn": bool(is_on_site and assignment is not None and not clocked_in),
        "canClockOut": bool(is_on_site and clocked_in and not clocked_out),
    }
    data.update(extra)
    return data


def ingest_ping(
    db: Session,
    outbox: NotificationOutbox,
    worker_id: str,
    org_id: str,
    latitude: float,
    longitude: float,
    accuracy_m: Optional[float] = None,
    device_timestamp: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Process one periodic location ping.

    Pings outside every shift window are acknowledged but not stored.
    While clocked in and on site, pings closer than the throttle interval to
    the last stored one are skipped. Everything else is stored with its
    classification (ping, arrival or departure).
    """
    now = ensure_utc(now) if now else utcnow()
    if not is_valid_coordinates(latitude, longitude):
        raise ValidationFailed(
            "Invalid location data",
            details={"latitude": latitude, "longitude": longitude},
        )

    require_member(db, worker_id, org_id)
    worker = db.query(User).filter(User.id == worker_id).first()

    assignment = find_relevant_assignment(db, worker_id, org_id, now)
    if assignment is None:
        logger.debug("ping_discarded", worker_id=worker_id, reason="no_active_shift")
        return {"discarded": True, "reason": "no_active_shift"}

    shift = assignment.shift
    venue = shift.location
    if venue is None or not venue.is_geocoded:
        logger.warning("ping_discarded", worker_id=worker_id, shift_id=shift.id, reason="venue_not_geocoded")
        return {"discarded": True, "reason": "venue_not_geocoded", "shiftId": shift.id}

    check = check_geofence(latitude, longitude, venue.latitude, venue.longitude, venue.geofence_radius)
    is_on_site = check.is_within
    clocked_in = _is_clocked_in(assignment)

    previous = db.query(WorkerLocationPing).filter(
        WorkerLocationPing.worker_id == worker_id,
        WorkerLocationPing.shift_id == shift.id,
    ).order_by(WorkerLocationPing.recorded_at.desc()).first()

    if is_on_site and clocked_in and previous is not None:
        elapsed = now - ensure_utc(previous.recorded_at)
        if elapsed < timedelta(minutes=settings.ping_throttle_min):
            return _response(is_on_site, check.distance_meters, "ping_throttled", assignment, throttled=True)

    previous_on_site = previous is not None and previous.is_on_site
    event_type = "ping"
    sms_text = None

    try:
        if is_on_site and assignment.actual_clock_in is None and not previous_on_site:
            event_type = "arrival"
            sms_text = ARRIVAL_SMS.format(name=worker.name if worker else "there", venue=venue.name)

        if not is_on_site and clocked_in and previous_on_site and assignment.review_reason != "left_geofence":
            event_type = "departure"
            assignment.needs_review = True
            assignment.review_reason = "left_geofence"
            assignment.last_known_lat = latitude
            assignment.last_known_lng = longitude
            assignment.last_known_at = now
            assignment.updated_at = now
            sms_text = DEPARTURE_SMS.format(name=worker.name if worker else "there")

        db.add(WorkerLocationPing(
            worker_id=worker_id,
            shift_id=shift.id,
            organization_id=org_id,
            latitude=latitude,
            longitude=longitude,
            accuracy_meters=accuracy_m,
            distance_to_venue_meters=check.distance_meters,
            is_on_site=is_on_site,
            event_type=event_type,
            recorded_at=now,
            device_timestamp=ensure_utc(device_timestamp),
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    if event_type != "ping":
        logger.info("location_event", event_type=event_type, worker_id=worker_id, shift_id=shift.id,
                    distance_m=check.distance_meters)

    if sms_text and worker and worker.phone_number:
        outbox.send_sms(worker.phone_number, sms_text, label=f"{event_type}_sms")

    return _response(is_on_site, check.distance_meters, event_type, assignment, throttled=False)
