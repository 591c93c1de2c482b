"""
Periodic background sweeps.

Each sweep is a function of (session, now) that selects only rows still in
its triggering state, so running it twice, or on overlapping schedules,
never processes a row twice. Callers decide the schedule (cron, worker loop,
scripts/run_sweeps.py).
"""
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional, Dict

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ValidationFailed
from ..models.models import (
    Shift, ShiftAssignment, TimeCorrectionRequest, WorkerLocationPing, Notification,
)
from .audit import record_audit
from .corrections import apply_correction, SYSTEM_REVIEWER
from .notifications import NotificationOutbox, notify_org_managers, cleanup_scheduled_notifications
from .shift_state import can_transition
from .time_rules import ensure_utc, utcnow

logger = structlog.get_logger(__name__)

ESCALATION_REASON = "72-hour auto-escalation: Manager did not review"
AUTO_APPROVAL_NOTES = "48-hour auto-approval: Admin did not review after escalation"
AUTO_REJECTION_NOTES = "Auto-approval skipped: requested times conflict with the recorded timesheet"
PRUNABLE_PING_EVENTS = ("ping", "arrival", "departure")


def _now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now else utcnow()


def escalate_stale_corrections(db: Session, now: Optional[datetime] = None) -> int:
    """Pending requests at least 72h old become escalated."""
    now = _now(now)
    cutoff = now - timedelta(hours=settings.correction_escalate_after_hours)
    stale = db.query(TimeCorrectionRequest).filter(
        TimeCorrectionRequest.status == "pending",
        TimeCorrectionRequest.escalated_at.is_(None),
        TimeCorrectionRequest.created_at <= cutoff,
    ).all()

    try:
        for request in stale:
            request.status = "escalated"
            request.escalated_at = now
            request.escalation_reason = ESCALATION_REASON
            request.updated_at = now
            record_audit(
                db,
                action="correction_request.escalated",
                entity_type="correction_request",
                entity_id=request.id,
                actor_id=SYSTEM_REVIEWER,
                org_id=request.organization_id,
                metadata={"reason": ESCALATION_REASON},
                timestamp=now,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if stale:
        logger.info("corrections_escalated", count=len(stale))
    return len(stale)


def auto_approve_escalated_corrections(db: Session, now: Optional[datetime] = None) -> int:
    """
    Requests escalated at least 48h ago are approved by the system reviewer and
    their requested values applied exactly as a manual approval would.
    A request whose times no longer fit the recorded timesheet is rejected
    instead and the assignment is flagged for review.
    """
    now = _now(now)
    cutoff = now - timedelta(hours=settings.correction_auto_approve_after_hours)
    overdue = db.query(TimeCorrectionRequest).filter(
        TimeCorrectionRequest.status == "escalated",
        TimeCorrectionRequest.escalated_at <= cutoff,
    ).all()

    try:
        for request in overdue:
            try:
                changes = apply_correction(db, request, SYSTEM_REVIEWER, AUTO_APPROVAL_NOTES, now)
                request.status = "approved"
                request.review_notes = AUTO_APPROVAL_NOTES
            except ValidationFailed as e:
                # Timesheet changed since submission; flag it for a human
                logger.warning("correction_auto_rejected", request_id=request.id, reason=e.message)
                changes = {}
                request.status = "rejected"
                request.review_notes = AUTO_REJECTION_NOTES
                assignment = request.shift_assignment
                assignment.needs_review = True
                assignment.review_reason = "disputed"
                assignment.updated_at = now
            request.reviewed_by = SYSTEM_REVIEWER
            request.reviewed_at = now
            request.updated_at = now
            record_audit(
                db,
                action=f"correction_request.{request.status}",
                entity_type="correction_request",
                entity_id=request.id,
                actor_id=SYSTEM_REVIEWER,
                org_id=request.organization_id,
                changes=changes or None,
                metadata={"assignmentId": request.shift_assignment_id, "notes": request.review_notes},
                timestamp=now,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if overdue:
        logger.warning("corrections_auto_approved", count=len(overdue))
    return len(overdue)


def remind_pending_corrections(db: Session, outbox: NotificationOutbox, now: Optional[datetime] = None) -> int:
    """One digest per organization for pending requests 48-72h old that were not reminded yet."""
    now = _now(now)
    remind_cutoff = now - timedelta(hours=settings.correction_remind_after_hours)
    escalate_cutoff = now - timedelta(hours=settings.correction_escalate_after_hours)
    due = db.query(TimeCorrectionRequest).filter(
        TimeCorrectionRequest.status == "pending",
        TimeCorrectionRequest.reminded_at.is_(None),
        TimeCorrectionRequest.created_at <= remind_cutoff,
        TimeCorrectionRequest.created_at > escalate_cutoff,
    ).all()
    if not due:
        return 0

    by_org = defaultdict(list)
    for request in due:
        by_org[request.organization_id].append(request)

    try:
        for org_id, requests in by_org.items():
            notify_org_managers(
                db,
                outbox,
                org_id,
                "Time Corrections Awaiting Review",
                f"{len(requests)} correction request(s) will be escalated soon if not reviewed.",
                data={"type": "correction_reminder", "request_ids": [r.id for r in requests]},
            )
            for request in requests:
                request.reminded_at = now
        db.commit()
    except Exception:
        db.rollback()
        outbox.discard()
        raise
    return len(due)


def close_ended_shifts(db: Session, now: Optional[datetime] = None) -> int:
    """In-progress shifts that ended long ago move to completed so they can be approved."""
    now = _now(now)
    cutoff = now - timedelta(hours=settings.shift_close_after_hours)
    shifts = db.query(Shift).filter(
        Shift.status == "in-progress",
        Shift.end_time <= cutoff,
    ).all()

    closed = 0
    try:
        for shift in shifts:
            if not can_transition(shift.status, "completed"):
                continue
            shift.status = "completed"
            shift.updated_at = now
            record_audit(
                db,
                action="shift.auto_completed",
                entity_type="shift",
                entity_id=shift.id,
                actor_id=SYSTEM_REVIEWER,
                org_id=shift.organization_id,
                metadata={"scheduledEnd": ensure_utc(shift.end_time).isoformat()},
                timestamp=now,
            )
            closed += 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    if closed:
        logger.info("shifts_auto_completed", count=closed)
    return closed


def flag_missing_clock_outs(db: Session, now: Optional[datetime] = None) -> int:
    now = _now(now)
    cutoff = now - timedelta(hours=settings.shift_close_after_hours)
    assignments = db.query(ShiftAssignment).join(
        Shift, ShiftAssignment.shift_id == Shift.id
    ).filter(
        ShiftAssignment.actual_clock_in.is_not(None),
        ShiftAssignment.actual_clock_out.is_(None),
        ShiftAssignment.needs_review.is_(False),
        ShiftAssignment.status != "cancelled",
        Shift.end_time <= cutoff,
    ).all()

    try:
        for assignment in assignments:
            assignment.needs_review = True
            assignment.review_reason = "missing_clock_out"
            assignment.updated_at = now
        db.commit()
    except Exception:
        db.rollback()
        raise

    if assignments:
        logger.info("missing_clock_outs_flagged", count=len(assignments))
    return len(assignments)


def cleanup_location_pings(db: Session, now: Optional[datetime] = None) -> int:
    """Drop tracking pings past retention. Clock-in/out rows are kept as evidence."""
    now = _now(now)
    cutoff = now - timedelta(days=settings.location_retention_days)
    try:
        deleted = db.query(WorkerLocationPing).filter(
            WorkerLocationPing.event_type.in_(PRUNABLE_PING_EVENTS),
            WorkerLocationPing.recorded_at < cutoff,
        ).delete(synchronize_session=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    if deleted:
        logger.info("location_pings_pruned", count=deleted)
    return deleted


def cleanup_notifications(db: Session, now: Optional[datetime] = None) -> int:
    now = _now(now)
    cutoff = now - timedelta(days=settings.notification_retention_days)
    try:
        deleted = cleanup_scheduled_notifications(db, cutoff)
        deleted += db.query(Notification).filter(
            Notification.status.in_(("sent", "failed")),
            Notification.created_at < cutoff,
        ).delete(synchronize_session=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    if deleted:
        logger.info("notifications_pruned", count=deleted)
    return deleted


def run_all_sweeps(db: Session, outbox: NotificationOutbox, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Run every sweep once. A failing sweep is logged and reported as -1;
    the others still run.
    """
    now = _now(now)
    sweeps = [
        ("escalated", lambda: escalate_stale_corrections(db, now)),
        ("auto_approved", lambda: auto_approve_escalated_corrections(db, now)),
        ("reminded", lambda: remind_pending_corrections(db, outbox, now)),
        ("missing_clock_outs", lambda: flag_missing_clock_outs(db, now)),
        ("shifts_closed", lambda: close_ended_shifts(db, now)),
        ("pings_pruned", lambda: cleanup_location_pings(db, now)),
        ("notifications_pruned", lambda: cleanup_notifications(db, now)),
    ]
    results: Dict[str, int] = {}
    for name, sweep in sweeps:
        try:
            results[name] = sweep()
        except Exception as e:
            logger.error("sweep_failed", sweep=name, error=str(e), exc_info=True)
            results[name] = -1
    return results
