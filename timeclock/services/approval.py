"""
Shift approval: reconcile every assignment of a completed shift into
effective times and rate-locked pay, then move the shift to approved.

The whole shift is one batch. Any dirty assignment aborts the batch before
anything is written.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import NotFound, DirtyData, RaceCondition
from ..models.models import Shift, ShiftAssignment
from .audit import record_audit
from .permissions import require_role
from .shift_state import validate_shift_transition
from .time_rules import (
    ensure_utc, utcnow, isoformat_utc, minutes_between, snap_effective_start, snap_effective_end,
)

logger = structlog.get_logger(__name__)


def calculate_shift_pay(minutes: int, rate_cents: int) -> int:
    """
    Pay in cents for billable minutes at an hourly rate in cents, rounded up
    to the next cent. Integer arithmetic only.
    """
    if minutes is None or rate_cents is None or minutes <= 0 or rate_cents <= 0:
        return 0
    return -(-(minutes * rate_cents) // 60)


@dataclass
class AssignmentSettlement:
    assignment: ShiftAssignment
    status: str  # completed|no_show
    effective_clock_in: Optional[datetime] = None
    effective_clock_out: Optional[datetime] = None
    total_minutes: int = 0
    billable_minutes: int = 0
    cost_cents: int = 0
    auto_finalized: bool = False
    overtime_flag: bool = False


def _resolve_rate(assignment: ShiftAssignment, shift: Shift) -> int:
    if assignment.budget_rate_snapshot is not None:
        return assignment.budget_rate_snapshot
    logger.warning(
        "rate_snapshot_missing",
        assignment_id=assignment.id,
        shift_id=shift.id,
        fallback_rate=shift.price,
    )
    return shift.price or 0


def settle_assignment(assignment: ShiftAssignment, shift: Shift) -> Optional[AssignmentSettlement]:
    """
    Classify one assignment. Returns None when its recorded times are dirty.
    """
    actual_in = ensure_utc(assignment.actual_clock_in)
    actual_out = ensure_utc(assignment.actual_clock_out)
    scheduled_start = ensure_utc(shift.start_time)
    scheduled_end = ensure_utc(shift.end_time)
    break_minutes = assignment.break_minutes or 0

    if actual_in is None and actual_out is None:
        return AssignmentSettlement(assignment=assignment, status="no_show")

    if actual_in is None:
        # Clock-out without clock-in cannot be reconciled
        return None

    if actual_out is None:
        total = minutes_between(actual_in, scheduled_end)
        if total < 0:
            return None
        billable = max(0, total - break_minutes)
        return AssignmentSettlement(
            assignment=assignment,
            status="completed",
            effective_clock_in=actual_in,
            effective_clock_out=scheduled_end,
            total_minutes=total,
            billable_minutes=billable,
            cost_cents=calculate_shift_pay(billable, _resolve_rate(assignment, shift)),
            auto_finalized=True,
        )

    if actual_out < actual_in:
        return None

    effective_start = snap_effective_start(actual_in, scheduled_start)
    effective_end = snap_effective_end(actual_out, scheduled_end)
    total = minutes_between(effective_start, effective_end)
    if total < 0 or break_minutes < 0 or break_minutes >= total:
        return None

    billable = max(0, total - break_minutes)
    return AssignmentSettlement(
        assignment=assignment,
        status="completed",
        effective_clock_in=effective_start,
        effective_clock_out=effective_end,
        total_minutes=total,
        billable_minutes=billable,
        cost_cents=calculate_shift_pay(billable, _resolve_rate(assignment, shift)),
        overtime_flag=actual_out - scheduled_end > timedelta(minutes=settings.overtime_flag_min),
    )


def approve_shift(
    db: Session,
    actor_id: str,
    org_id: str,
    shift_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = ensure_utc(now) if now else utcnow()
    require_role(db, actor_id, org_id, message="Insufficient permissions to approve shifts")

    shift = db.query(Shift).filter(
        Shift.id == shift_id,
        Shift.organization_id == org_id,
    ).first()
    if not shift:
        raise NotFound("Shift not found")

    validate_shift_transition(shift.status, "approved")

    settlements: List[AssignmentSettlement] = []
    dirty_workers: List[str] = []
    for assignment in shift.assignments:
        if assignment.status == "cancelled":
            continue
        settlement = settle_assignment(assignment, shift)
        if settlement is None:
            dirty_workers.append(assignment.worker_id)
        else:
            settlements.append(settlement)

    if dirty_workers:
        raise DirtyData(
            "Cannot approve: Workers have invalid or missing clock times.",
            details={"workerIds": dirty_workers},
        )

    try:
        for s in settlements:
            a = s.assignment
            a.status = s.status
            a.estimated_cost_cents = s.cost_cents
            a.updated_at = now
            if s.status == "completed":
                a.effective_clock_in = s.effective_clock_in
                a.effective_clock_out = s.effective_clock_out
                if s.auto_finalized:
                    a.clock_out_method = "system_auto_finalized"
        db.flush()

        updated = db.query(Shift).filter(
            Shift.id == shift.id,
            Shift.status == "completed",
        ).update({
            "status": "approved",
            "approved_at": now,
            "approved_by": actor_id,
            "updated_at": now,
        }, synchronize_session=False)
        if updated == 0:
            raise RaceCondition(
                "Race condition: Shift was modified or approved by another request.",
                details={"shiftId": shift.id},
            )

        total_cost = sum(s.cost_cents for s in settlements)
        no_shows = [s for s in settlements if s.status == "no_show"]

        record_audit(
            db,
            action="shift.approved",
            entity_type="shift",
            entity_id=shift.id,
            actor_id=actor_id,
            org_id=org_id,
            metadata={
                "approvedAssignmentsCount": len(settlements),
                "totalCostCents": total_cost,
                "noShowCount": len(no_shows),
                "assignments": [
                    {
                        "assignmentId": s.assignment.id,
                        "workerId": s.assignment.worker_id,
                        "status": s.status,
                        "billableMinutes": s.billable_minutes,
                        "costCents": s.cost_cents,
                        "autoFinalized": s.auto_finalized,
                        "overtimeFlag": s.overtime_flag,
                    }
                    for s in settlements
                ],
            },
            timestamp=now,
        )
        for s in no_shows:
            record_audit(
                db,
                action="assignment.no_show",
                entity_type="shift_assignment",
                entity_id=s.assignment.id,
                actor_id=actor_id,
                org_id=org_id,
                metadata={
                    "shiftId": shift.id,
                    "workerId": s.assignment.worker_id,
                    "reason": "No clock-in/out recorded at approval",
                },
                timestamp=now,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("shift_approved", shift_id=shift_id, assignments=len(settlements), total_cost_cents=total_cost)

    return {
        "shiftId": shift_id,
        "status": "approved",
        "approvedAt": isoformat_utc(now),
        "totalCostCents": total_cost,
        "assignments": [
            {
                "assignmentId": s.assignment.id,
                "workerId": s.assignment.worker_id,
                "status": s.status,
                "effectiveClockIn": isoformat_utc(s.effective_clock_in),
                "effectiveClockOut": isoformat_utc(s.effective_clock_out),
                "totalMinutes": s.total_minutes,
                "billableMinutes": s.billable_minutes,
                "costCents": s.cost_cents,
                "overtimeFlag": s.overtime_flag,
            }
            for s in settlements
        ],
    }
