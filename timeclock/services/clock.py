"""
Clock-in / clock-out lifecycle of a shift assignment.

    unclocked --clock_in--> in-progress --clock_out--> completed

Each operation runs in a single transaction: assignment update, shift status
transition, location row and audit entry commit together. Notifications are
queued on the outbox and only delivered after commit.
"""
from datetime import datetime
from typing import Optional, Dict, Any, Tuple

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import (
    ValidationFailed, ReplayDetected, LowAccuracy, NotFound, Forbidden,
    AlreadyClockedIn, AlreadyClockedOut, NotClockedIn, OutsideGeofence,
    TooEarly, VenueNotConfigured, RaceCondition,
)
from ..models.models import Shift, ShiftAssignment, Organization, WorkerLocationPing
from .audit import record_audit, compute_diff
from .geofence import check_geofence, is_valid_coordinates, GeofenceCheck
from .notifications import NotificationOutbox, notify_managers, CLOCK_IN_CANCELLED_TYPES
from .permissions import require_role
from .shift_state import can_transition, validate_shift_transition
from .time_rules import (
    ensure_utc, utcnow, apply_clock_in_rules, apply_clock_out_rules, earliest_clock_in,
)

logger = structlog.get_logger(__name__)

FINISHED_ASSIGNMENT_STATUSES = ("completed", "no_show")


def _check_device_signal(
    now: datetime,
    device_timestamp: datetime,
    accuracy_m: Optional[float],
) -> None:
    """Anti-spoofing: reject stale/future-dated fixes and weak GPS signals."""
    device_time = ensure_utc(device_timestamp)
    skew_min = abs((now - device_time).total_seconds()) / 60
    if skew_min > settings.max_clock_skew_min:
        raise ReplayDetected(
            "Location data is stale or future-dated",
            details={"serverTime": now.isoformat(), "deviceTime": device_time.isoformat()},
        )
    if accuracy_m is not None and accuracy_m > settings.max_gps_accuracy_m:
        raise LowAccuracy(
            "GPS signal too weak",
            details={"accuracy": accuracy_m, "required": settings.max_gps_accuracy_m},
        )


def _validate_coordinates(latitude: float, longitude: float) -> None:
    if not is_valid_coordinates(latitude, longitude):
        raise ValidationFailed(
            "Invalid coordinates",
            details={"latitude": latitude, "longitude": longitude},
        )


def _load_shift_and_assignment(
    db: Session, shift_id: str, worker_id: str, org_id: str
) -> Tuple[Shift, ShiftAssignment]:
    shift = db.query(Shift).filter(
        Shift.id == shift_id,
        Shift.organization_id == org_id,
    ).first()
    if not shift:
        raise NotFound("Shift not found")

    assignment = db.query(ShiftAssignment).filter(
        ShiftAssignment.shift_id == shift.id,
        ShiftAssignment.worker_id == worker_id,
        ShiftAssignment.status != "cancelled",
    ).first()
    if not assignment:
        raise Forbidden("You are not assigned to this shift")
    return shift, assignment


def _verify_on_site(shift: Shift, latitude: float, longitude: float, action: str) -> GeofenceCheck:
    venue = shift.location
    if venue is None or not venue.is_geocoded:
        raise VenueNotConfigured("Venue location not configured")
    check = check_geofence(latitude, longitude, venue.latitude, venue.longitude, venue.geofence_radius)
    if not check.is_within:
        details = {"distanceMeters": check.distance_meters, "requiredRadius": check.radius_meters}
        if action == "clock out":
            details["hint"] = "If you left early, ask your manager to adjust your timesheet"
        raise OutsideGeofence(f"You must be at the venue to {action}", details=details)
    return check


def _early_buffer_minutes(db: Session, org_id: str) -> int:
    org = db.query(Organization).filter(Organization.id == org_id).first()
    if org and org.early_clock_in_buffer_minutes is not None:
        return org.early_clock_in_buffer_minutes
    return settings.early_clock_in_buffer_min


def _worker_name(assignment: ShiftAssignment) -> str:
    return assignment.worker.name if assignment.worker else "Unknown Worker"


def complete_shift_if_finished(db: Session, shift: Shift, now: datetime) -> bool:
    """
    Move the shift to completed once every live assignment is completed or
    a no-show. Reads statuses straight from the database so updates issued in
    this transaction are visible. Returns True when the shift transitioned.
    """
    statuses = [
        row.status for row in db.query(ShiftAssignment.status).filter(
            ShiftAssignment.shift_id == shift.id,
            ShiftAssignment.status != "cancelled",
        )
    ]
    if not statuses or not all(s in FINISHED_ASSIGNMENT_STATUSES for s in statuses):
        return False
    if not can_transition(shift.status, "completed"):
        logger.warning("shift_completion_skipped", shift_id=shift.id, status=shift.status)
        return False
    shift.status = "completed"
    shift.updated_at = now
    return True


def _after_commit(label: str, fn, *args) -> None:
    # Side effects must never fail a committed clock event
    try:
        fn(*args)
    except Exception as e:
        logger.warning("post_commit_side_effect_failed", step=label, error=str(e))


def clock_in(
    db: Session,
    outbox: NotificationOutbox,
    shift_id: str,
    worker_id: str,
    org_id: str,
    latitude: float,
    longitude: float,
    accuracy_m: Optional[float],
    device_timestamp: datetime,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = ensure_utc(now) if now else utcnow()
    _validate_coordinates(latitude, longitude)
    _check_device_signal(now, device_timestamp, accuracy_m)

    shift, assignment = _load_shift_and_assignment(db, shift_id, worker_id, org_id)

    if assignment.actual_clock_in:
        raise AlreadyClockedIn(
            "Already clocked in",
            details={"clockInTime": ensure_utc(assignment.actual_clock_in).isoformat()},
        )

    check = _verify_on_site(shift, latitude, longitude, "clock in")

    scheduled_start = ensure_utc(shift.start_time)
    buffer_min = _early_buffer_minutes(db, org_id)
    earliest = earliest_clock_in(scheduled_start, buffer_min)
    if now < earliest:
        raise TooEarly(
            f"Cannot clock in more than {buffer_min} minutes before shift",
            details={"shiftStart": scheduled_start.isoformat(), "earliestClockIn": earliest.isoformat()},
        )

    rules = apply_clock_in_rules(now, scheduled_start)

    try:
        updated = db.query(ShiftAssignment).filter(
            ShiftAssignment.id == assignment.id,
            ShiftAssignment.actual_clock_in.is_(None),
        ).update({
            "actual_clock_in": now,
            "effective_clock_in": rules.effective_time,
            "clock_in_verified": True,
            "clock_in_method": "geofence",
            "clock_in_lat": latitude,
            "clock_in_lng": longitude,
            "status": "in-progress",
            "updated_at": now,
        }, synchronize_session=False)
        if updated == 0:
            raise AlreadyClockedIn("Already clocked in")

        if shift.status == "assigned":
            validate_shift_transition(shift.status, "in-progress")
            shift.status = "in-progress"
            shift.updated_at = now

        db.add(WorkerLocationPing(
            worker_id=worker_id,
            shift_id=shift.id,
            organization_id=org_id,
            latitude=latitude,
            longitude=longitude,
            accuracy_meters=accuracy_m,
            distance_to_venue_meters=check.distance_meters,
            is_on_site=True,
            event_type="clock_in",
            recorded_at=now,
            device_timestamp=ensure_utc(device_timestamp),
        ))

        record_audit(
            db,
            action="shift_assignment.clock_in",
            entity_type="shift_assignment",
            entity_id=assignment.id,
            actor_id=worker_id,
            org_id=org_id,
            metadata={
                "latitude": latitude,
                "longitude": longitude,
                "method": "geofence",
                "distanceMeters": check.distance_meters,
                "scheduledStart": scheduled_start.isoformat(),
                "actualClockIn": now.isoformat(),
                "effectiveClockIn": rules.effective_time.isoformat(),
                "wasEarly": rules.is_early,
                "wasLate": rules.is_late,
                "minutesDifference": rules.minutes_difference,
            },
            timestamp=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("clock_in_recorded", shift_id=shift.id, assignment_id=assignment.id, minutes_late=rules.minutes_difference)

    _after_commit("cancel_reminders", outbox.cancel_scheduled, shift.id, worker_id, CLOCK_IN_CANCELLED_TYPES)
    _after_commit("notify_managers", notify_managers, db, outbox, "clock-in", shift, _worker_name(assignment))

    return {
        "assignmentId": assignment.id,
        "clockInTime": now.isoformat(),
        "effectiveClockIn": rules.effective_time.isoformat(),
        "scheduledTime": scheduled_start.isoformat(),
        "distanceMeters": check.distance_meters,
        "wasEarly": rules.is_early,
        "wasLate": rules.is_late,
        "minutesDifference": rules.minutes_difference,
    }


def clock_out(
    db: Session,
    outbox: NotificationOutbox,
    shift_id: str,
    worker_id: str,
    org_id: str,
    latitude: float,
    longitude: float,
    accuracy_m: Optional[float],
    device_timestamp: datetime,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = ensure_utc(now) if now else utcnow()
    _validate_coordinates(latitude, longitude)
    _check_device_signal(now, device_timestamp, accuracy_m)

    shift, assignment = _load_shift_and_assignment(db, shift_id, worker_id, org_id)

    if not assignment.actual_clock_in:
        raise NotClockedIn("You must clock in first")

    if assignment.actual_clock_out:
        raise AlreadyClockedOut(
            "Already clocked out",
            details={"clockOutTime": ensure_utc(assignment.actual_clock_out).isoformat()},
        )

    check = _verify_on_site(shift, latitude, longitude, "clock out")

    scheduled_end = ensure_utc(shift.end_time)
    rules = apply_clock_out_rules(now, scheduled_end)

    try:
        updated = db.query(ShiftAssignment).filter(
            ShiftAssignment.id == assignment.id,
            ShiftAssignment.actual_clock_out.is_(None),
        ).update({
            "actual_clock_out": now,
            "effective_clock_out": rules.effective_time,
            "clock_out_verified": True,
            "clock_out_method": "geofence",
            "clock_out_lat": latitude,
            "clock_out_lng": longitude,
            "status": "completed",
            "updated_at": now,
        }, synchronize_session=False)
        if updated == 0:
            raise RaceCondition(
                "Already clocked out (concurrent request)",
                details={"assignmentId": assignment.id},
            )

        shift_completed = complete_shift_if_finished(db, shift, now)

        db.add(WorkerLocationPing(
            worker_id=worker_id,
            shift_id=shift.id,
            organization_id=org_id,
            latitude=latitude,
            longitude=longitude,
            accuracy_meters=accuracy_m,
            distance_to_venue_meters=check.distance_meters,
            is_on_site=True,
            event_type="clock_out",
            recorded_at=now,
            device_timestamp=ensure_utc(device_timestamp),
        ))

        record_audit(
            db,
            action="shift_assignment.clock_out",
            entity_type="shift_assignment",
            entity_id=assignment.id,
            actor_id=worker_id,
            org_id=org_id,
            metadata={
                "latitude": latitude,
                "longitude": longitude,
                "method": "geofence",
                "distanceMeters": check.distance_meters,
                "scheduledEnd": scheduled_end.isoformat(),
                "actualClockOut": now.isoformat(),
                "wasEarly": rules.is_early,
                "wasLate": rules.is_late,
                "minutesDifference": rules.minutes_difference,
                "shiftCompleted": shift_completed,
            },
            timestamp=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("clock_out_recorded", shift_id=shift.id, assignment_id=assignment.id, shift_completed=shift_completed)

    _after_commit("notify_managers", notify_managers, db, outbox, "clock-out", shift, _worker_name(assignment))

    return {
        "assignmentId": assignment.id,
        "clockOutTime": now.isoformat(),
        "effectiveClockOut": rules.effective_time.isoformat(),
        "scheduledTime": scheduled_end.isoformat(),
        "distanceMeters": check.distance_meters,
        "wasEarly": rules.is_early,
        "wasLate": rules.is_late,
        "minutesDifference": rules.minutes_difference,
        "shiftCompleted": shift_completed,
    }


def _assignment_snapshot(assignment: ShiftAssignment) -> Dict[str, Any]:
    def iso(value):
        return ensure_utc(value).isoformat() if value else None

    return {
        "actual_clock_in": iso(assignment.actual_clock_in),
        "actual_clock_out": iso(assignment.actual_clock_out),
        "effective_clock_in": iso(assignment.effective_clock_in),
        "effective_clock_out": iso(assignment.effective_clock_out),
        "break_minutes": assignment.break_minutes,
        "status": assignment.status,
        "needs_review": assignment.needs_review,
        "review_reason": assignment.review_reason,
    }


def manager_override(
    db: Session,
    actor_id: str,
    org_id: str,
    assignment_id: str,
    clock_in_time: Optional[datetime] = None,
    clock_out_time: Optional[datetime] = None,
    break_minutes: Optional[int] = None,
    notes: Optional[str] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Manager adjustment of a worker's timesheet.

    This is the only path that accepts times recorded away from the venue.
    A manager's own coordinates, when given, are checked and recorded in the
    audit entry but never block the override.
    """
    now = ensure_utc(now) if now else utcnow()
    require_role(db, actor_id, org_id)

    assignment = db.query(ShiftAssignment).filter(ShiftAssignment.id == assignment_id).first()
    if not assignment:
        raise NotFound("Assignment not found")
    shift = assignment.shift
    if shift.organization_id != org_id:
        raise Forbidden("Access denied")

    if clock_in_time is None and clock_out_time is None and break_minutes is None:
        raise ValidationFailed("Nothing to update")
    if break_minutes is not None and break_minutes < 0:
        raise ValidationFailed("break_minutes must be >= 0")

    new_in = ensure_utc(clock_in_time) if clock_in_time else ensure_utc(assignment.actual_clock_in)
    new_out = ensure_utc(clock_out_time) if clock_out_time else ensure_utc(assignment.actual_clock_out)
    if new_in and new_out and new_out < new_in:
        raise ValidationFailed(
            "Clock-out cannot be before clock-in",
            details={"clockIn": new_in.isoformat(), "clockOut": new_out.isoformat()},
        )
    if clock_out_time and not new_in:
        raise ValidationFailed("Cannot set clock-out without a clock-in")

    manager_check = None
    if latitude is not None and longitude is not None and shift.location and shift.location.is_geocoded:
        venue = shift.location
        manager_check = check_geofence(latitude, longitude, venue.latitude, venue.longitude, venue.geofence_radius)

    before = _assignment_snapshot(assignment)
    try:
        if clock_in_time:
            assignment.actual_clock_in = new_in
            assignment.effective_clock_in = apply_clock_in_rules(new_in, shift.start_time).effective_time
            assignment.clock_in_method = "manual_override"
            assignment.clock_in_verified = False
            if assignment.status == "active":
                assignment.status = "in-progress"
            if shift.status == "assigned":
                validate_shift_transition(shift.status, "in-progress")
                shift.status = "in-progress"
                shift.updated_at = now
        if clock_out_time:
            assignment.actual_clock_out = new_out
            assignment.effective_clock_out = new_out
            assignment.clock_out_method = "manual_override"
            assignment.clock_out_verified = False
            assignment.status = "completed"
        if break_minutes is not None:
            assignment.break_minutes = break_minutes

        assignment.needs_review = False
        assignment.review_reason = None
        assignment.adjusted_by = actor_id
        assignment.adjusted_at = now
        assignment.adjustment_notes = notes or "Manager adjustment"
        assignment.updated_at = now
        db.flush()

        if clock_out_time:
            complete_shift_if_finished(db, shift, now)

        metadata = {"notes": notes}
        if manager_check is not None:
            metadata["managerDistanceMeters"] = manager_check.distance_meters
            metadata["managerOnSite"] = manager_check.is_within
        record_audit(
            db,
            action="shift_assignment.manager_override",
            entity_type="shift_assignment",
            entity_id=assignment.id,
            actor_id=actor_id,
            org_id=org_id,
            changes=compute_diff(before, _assignment_snapshot(assignment)),
            metadata=metadata,
            timestamp=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("manager_override_applied", assignment_id=assignment.id, actor_id=actor_id)
    return {
        "assignmentId": assignment.id,
        "adjustedBy": actor_id,
        "adjustedAt": now.isoformat(),
        "managerOnSite": manager_check.is_within if manager_check else None,
    }
