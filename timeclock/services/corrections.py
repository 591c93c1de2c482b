"""
Worker time-correction requests and their manager review.

A request moves pending -> approved|rejected by manager review, or
pending -> escalated -> approved by the background sweeps (see sweeps.py).
An escalated request is still open: an admin or owner may review it.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ValidationFailed, NotFound, Forbidden, DuplicateRequest, AlreadyReviewed
from ..models.models import ShiftAssignment, Shift, TimeCorrectionRequest
from .audit import record_audit, compute_diff
from .clock import complete_shift_if_finished
from .notifications import NotificationOutbox
from .permissions import require_role, MANAGER_ROLES
from .shift_state import validate_shift_transition
from .time_rules import ensure_utc, utcnow, isoformat_utc, apply_clock_in_rules

logger = structlog.get_logger(__name__)

OPEN_STATUSES = ("pending", "escalated")
ESCALATED_REVIEW_ROLES = ("admin", "owner")
REVIEW_ACTIONS = ("approve", "reject")
SYSTEM_REVIEWER = "system"


def submit_correction(
    db: Session,
    worker_id: str,
    org_id: str,
    assignment_id: str,
    reason: str,
    requested_clock_in: Optional[datetime] = None,
    requested_clock_out: Optional[datetime] = None,
    requested_break_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = ensure_utc(now) if now else utcnow()

    reason = (reason or "").strip()
    if len(reason) < settings.correction_reason_min_chars:
        raise ValidationFailed(
            "Please provide a detailed reason",
            details={"min_length": settings.correction_reason_min_chars},
        )
    if requested_clock_in is None and requested_clock_out is None and requested_break_minutes is None:
        raise ValidationFailed("Request at least one change")
    if requested_break_minutes is not None and requested_break_minutes < 0:
        raise ValidationFailed("requested_break_minutes must be >= 0")
    requested_clock_in = ensure_utc(requested_clock_in)
    requested_clock_out = ensure_utc(requested_clock_out)

    assignment = db.query(ShiftAssignment).filter(
        ShiftAssignment.id == assignment_id,
        ShiftAssignment.worker_id == worker_id,
    ).first()
    if not assignment:
        raise NotFound("Assignment not found")
    if assignment.shift.organization_id != org_id:
        raise Forbidden("Access denied")
    _resolve_corrected_times(assignment, requested_clock_in, requested_clock_out)

    existing = db.query(TimeCorrectionRequest).filter(
        TimeCorrectionRequest.shift_assignment_id == assignment.id,
        TimeCorrectionRequest.status.in_(OPEN_STATUSES),
    ).first()
    if existing:
        raise DuplicateRequest(
            "You already have a pending correction request for this shift",
            details={"existingRequestId": existing.id},
        )

    try:
        request = TimeCorrectionRequest(
            shift_assignment_id=assignment.id,
            worker_id=worker_id,
            organization_id=org_id,
            requested_clock_in=requested_clock_in,
            requested_clock_out=requested_clock_out,
            requested_break_minutes=requested_break_minutes,
            original_clock_in=assignment.actual_clock_in,
            original_clock_out=assignment.actual_clock_out,
            original_break_minutes=assignment.break_minutes,
            reason=reason,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        db.add(request)

        if not assignment.needs_review:
            assignment.needs_review = True
            assignment.review_reason = "disputed"
            assignment.updated_at = now
        db.flush()

        record_audit(
            db,
            action="correction_request.submitted",
            entity_type="correction_request",
            entity_id=request.id,
            actor_id=worker_id,
            org_id=org_id,
            metadata={
                "assignmentId": assignment.id,
                "requestedClockIn": isoformat_utc(requested_clock_in),
                "requestedClockOut": isoformat_utc(requested_clock_out),
                "requestedBreakMinutes": requested_break_minutes,
            },
            timestamp=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("correction_submitted", request_id=request.id, assignment_id=assignment.id)
    return {
        "requestId": request.id,
        "status": "pending",
        "message": "Your correction request has been submitted for manager review",
    }


def apply_correction(
    db: Session,
    request: TimeCorrectionRequest,
    reviewer_id: str,
    notes: Optional[str],
    now: datetime,
) -> Dict[str, Any]:
    """
    Copy the requested values (only those provided) onto the assignment.
    Shared by manual approval and the auto-approval sweep. Does not commit.
    Returns the before/after diff of the assignment.
    """
    assignment = request.shift_assignment
    shift = assignment.shift
    # The timesheet may have moved since submission
    new_in, new_out = _resolve_corrected_times(
        assignment, ensure_utc(request.requested_clock_in), ensure_utc(request.requested_clock_out)
    )
    before = _timesheet_values(assignment)

    if request.requested_clock_in is not None:
        assignment.actual_clock_in = new_in
        assignment.effective_clock_in = apply_clock_in_rules(new_in, shift.start_time).effective_time
        assignment.clock_in_method = "correction"
        assignment.clock_in_verified = False
        if assignment.status == "active":
            assignment.status = "in-progress"
        if shift.status == "assigned":
            validate_shift_transition(shift.status, "in-progress")
            shift.status = "in-progress"
            shift.updated_at = now
    if request.requested_clock_out is not None:
        assignment.actual_clock_out = new_out
        assignment.effective_clock_out = new_out
        assignment.clock_out_method = "correction"
        assignment.clock_out_verified = False
        if assignment.status in ("active", "in-progress"):
            assignment.status = "completed"
    if request.requested_break_minutes is not None:
        assignment.break_minutes = request.requested_break_minutes

    assignment.needs_review = False
    assignment.review_reason = None
    assignment.adjusted_by = reviewer_id
    assignment.adjusted_at = now
    assignment.adjustment_notes = notes or "Approved worker correction request"
    assignment.updated_at = now

    if request.requested_clock_out is not None:
        db.flush()
        complete_shift_if_finished(db, shift, now)

    return compute_diff(before, _timesheet_values(assignment))


def _resolve_corrected_times(
    assignment: ShiftAssignment,
    requested_clock_in: Optional[datetime],
    requested_clock_out: Optional[datetime],
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    Merge the requested times over the recorded ones and reject a result
    that would leave the timesheet inverted or with a clock-out but no clock-in.
    """
    new_in = requested_clock_in or ensure_utc(assignment.actual_clock_in)
    new_out = requested_clock_out or ensure_utc(assignment.actual_clock_out)
    if new_in and new_out and new_out < new_in:
        raise ValidationFailed(
            "Clock-out cannot be before clock-in",
            details={"clockIn": new_in.isoformat(), "clockOut": new_out.isoformat()},
        )
    if new_out and not new_in:
        raise ValidationFailed("Cannot set clock-out without a clock-in")
    return new_in, new_out


def _timesheet_values(assignment: ShiftAssignment) -> Dict[str, Any]:
    return {
        "actual_clock_in": isoformat_utc(assignment.actual_clock_in),
        "actual_clock_out": isoformat_utc(assignment.actual_clock_out),
        "effective_clock_in": isoformat_utc(assignment.effective_clock_in),
        "effective_clock_out": isoformat_utc(assignment.effective_clock_out),
        "break_minutes": assignment.break_minutes,
        "status": assignment.status,
        "needs_review": assignment.needs_review,
    }


def review_correction(
    db: Session,
    outbox: NotificationOutbox,
    actor_id: str,
    org_id: str,
    request_id: str,
    action: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = ensure_utc(now) if now else utcnow()
    if action not in REVIEW_ACTIONS:
        raise ValidationFailed("action must be approve or reject", details={"action": action})

    membership = require_role(db, actor_id, org_id, message="Only managers can review corrections")

    request = db.query(TimeCorrectionRequest).filter(
        TimeCorrectionRequest.id == request_id,
        TimeCorrectionRequest.organization_id == org_id,
    ).first()
    if not request:
        raise NotFound("Correction request not found")
    if request.status not in OPEN_STATUSES:
        raise AlreadyReviewed(
            "This request has already been reviewed",
            details={"status": request.status},
        )
    if request.status == "escalated" and membership.role not in ESCALATED_REVIEW_ROLES:
        raise Forbidden(
            "Escalated requests require an admin",
            details={"allowed_roles": list(ESCALATED_REVIEW_ROLES)},
        )

    assignment = request.shift_assignment
    previous_status = request.status
    try:
        if action == "approve":
            changes = apply_correction(db, request, actor_id, notes, now)
            request.status = "approved"
        else:
            changes = {}
            assignment.needs_review = False
            assignment.review_reason = None
            assignment.updated_at = now
            request.status = "rejected"

        request.reviewed_by = actor_id
        request.reviewed_at = now
        request.review_notes = notes
        request.updated_at = now

        record_audit(
            db,
            action=f"correction_request.{request.status}",
            entity_type="correction_request",
            entity_id=request.id,
            actor_id=actor_id,
            org_id=org_id,
            changes=changes or None,
            metadata={"assignmentId": assignment.id, "previousStatus": previous_status, "notes": notes},
            timestamp=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("correction_reviewed", request_id=request.id, action=action, reviewer_id=actor_id)

    verdict = "approved" if action == "approve" else "rejected"
    outbox.notify(
        request.worker_id,
        f"Time Correction {verdict.capitalize()}",
        f"Your time correction request was {verdict}.",
        data={"type": "correction_reviewed", "request_id": request.id},
        label="correction_reviewed",
    )

    return {
        "requestId": request.id,
        "status": request.status,
        "message": f"Correction request {verdict}",
    }


def _correction_row(request: TimeCorrectionRequest) -> Dict[str, Any]:
    assignment = request.shift_assignment
    shift = assignment.shift if assignment else None
    return {
        "requestId": request.id,
        "assignmentId": request.shift_assignment_id,
        "shiftTitle": shift.title if shift else "Unknown Shift",
        "shiftDate": isoformat_utc(shift.start_time) if shift else None,
        "workerId": request.worker_id,
        "workerName": request.worker.name if request.worker else None,
        "reason": request.reason,
        "requestedClockIn": isoformat_utc(request.requested_clock_in),
        "requestedClockOut": isoformat_utc(request.requested_clock_out),
        "requestedBreakMinutes": request.requested_break_minutes,
        "originalClockIn": isoformat_utc(request.original_clock_in),
        "originalClockOut": isoformat_utc(request.original_clock_out),
        "status": request.status,
        "escalatedAt": isoformat_utc(request.escalated_at),
        "reviewedAt": isoformat_utc(request.reviewed_at),
        "reviewNotes": request.review_notes,
        "createdAt": isoformat_utc(request.created_at),
    }


def list_pending_corrections(db: Session, actor_id: str, org_id: str) -> List[Dict[str, Any]]:
    """Open (pending or escalated) requests of the organization, newest first."""
    require_role(db, actor_id, org_id)
    requests = db.query(TimeCorrectionRequest).filter(
        TimeCorrectionRequest.organization_id == org_id,
        TimeCorrectionRequest.status.in_(OPEN_STATUSES),
    ).order_by(TimeCorrectionRequest.created_at.desc()).all()
    return [_correction_row(r) for r in requests]


def list_worker_corrections(db: Session, worker_id: str, org_id: str) -> List[Dict[str, Any]]:
    requests = db.query(TimeCorrectionRequest).filter(
        TimeCorrectionRequest.worker_id == worker_id,
        TimeCorrectionRequest.organization_id == org_id,
    ).order_by(TimeCorrectionRequest.created_at.desc()).all()
    return [_correction_row(r) for r in requests]


def get_flagged_timesheets(db: Session, actor_id: str, org_id: str) -> Dict[str, Any]:
    """Assignments flagged for review plus open correction requests, for the manager dashboard."""
    require_role(db, actor_id, org_id, allowed_roles=MANAGER_ROLES)

    flagged = db.query(ShiftAssignment).join(
        Shift, ShiftAssignment.shift_id == Shift.id
    ).filter(
        Shift.organization_id == org_id,
        ShiftAssignment.needs_review.is_(True),
    ).order_by(ShiftAssignment.updated_at.desc()).all()

    pending = list_pending_corrections(db, actor_id, org_id)

    flagged_rows = []
    for a in flagged:
        shift = a.shift
        flagged_rows.append({
            "assignmentId": a.id,
            "shiftId": shift.id,
            "shiftTitle": shift.title,
            "shiftDate": isoformat_utc(shift.start_time),
            "locationName": shift.location.name if shift.location else None,
            "workerId": a.worker_id,
            "workerName": a.worker.name if a.worker else None,
            "clockIn": isoformat_utc(a.actual_clock_in),
            "clockOut": isoformat_utc(a.actual_clock_out),
            "reviewReason": a.review_reason,
            "lastKnownAt": isoformat_utc(a.last_known_at),
        })

    return {
        "flaggedTimesheets": flagged_rows,
        "pendingCorrections": pending,
        "summary": {
            "totalFlagged": len(flagged_rows),
            "totalPendingCorrections": len(pending),
        },
    }
