from datetime import timedelta

import pytest

from timeclock.errors import (
    AlreadyReviewed, DuplicateRequest, Forbidden, NotFound, ValidationFailed,
)
from timeclock.models.models import AuditLog, Shift, ShiftAssignment, TimeCorrectionRequest
from timeclock.services.approval import approve_shift
from timeclock.services.clock import manager_override
from timeclock.services.corrections import (
    submit_correction, review_correction, list_pending_corrections,
    list_worker_corrections, get_flagged_timesheets,
)
from timeclock.services.sweeps import (
    escalate_stale_corrections, auto_approve_escalated_corrections, remind_pending_corrections,
)
from timeclock.services.time_rules import ensure_utc

from .conftest import SHIFT_START, SHIFT_END, add_user, minutes

SUBMITTED_AT = SHIFT_END + timedelta(hours=2)
REASON = "I clocked in on time but the app crashed"


@pytest.fixture()
def clocked(db, world):
    """Assignment with recorded times the worker wants to dispute."""
    a = world.assignment
    a.actual_clock_in = SHIFT_START + minutes(20)
    a.effective_clock_in = SHIFT_START + minutes(20)
    a.actual_clock_out = SHIFT_END
    a.effective_clock_out = SHIFT_END
    a.status = "completed"
    db.commit()
    return world


def submit(db, world, now=SUBMITTED_AT, **fields):
    fields.setdefault("requested_clock_in", SHIFT_START)
    return submit_correction(
        db, world.worker.id, world.org.id, world.assignment.id, REASON, now=now, **fields
    )


class TestSubmit:
    def test_submit_snapshots_originals_and_flags_assignment(self, db, clocked):
        result = submit(db, clocked)
        assert result["status"] == "pending"

        request = db.get(TimeCorrectionRequest, result["requestId"])
        assert ensure_utc(request.original_clock_in) == SHIFT_START + minutes(20)
        assert ensure_utc(request.original_clock_out) == SHIFT_END
        assert request.original_break_minutes == 0
        assert ensure_utc(request.requested_clock_in) == SHIFT_START
        assert request.requested_clock_out is None

        a = db.get(ShiftAssignment, clocked.assignment.id)
        assert a.needs_review is True
        assert a.review_reason == "disputed"

    def test_existing_flag_is_kept(self, db, clocked):
        clocked.assignment.needs_review = True
        clocked.assignment.review_reason = "left_geofence"
        db.commit()
        submit(db, clocked)
        assert db.get(ShiftAssignment, clocked.assignment.id).review_reason == "left_geofence"

    def test_one_pending_request_per_assignment(self, db, clocked):
        first = submit(db, clocked)
        with pytest.raises(DuplicateRequest) as exc:
            submit(db, clocked, requested_break_minutes=15)
        assert exc.value.details == {"existingRequestId": first["requestId"]}

    def test_reason_must_be_detailed(self, db, clocked):
        with pytest.raises(ValidationFailed):
            submit_correction(db, clocked.worker.id, clocked.org.id, clocked.assignment.id,
                              "too short", requested_clock_in=SHIFT_START)

    def test_requires_a_change(self, db, clocked):
        with pytest.raises(ValidationFailed):
            submit_correction(db, clocked.worker.id, clocked.org.id, clocked.assignment.id, REASON)

    def test_other_workers_assignment_is_not_found(self, db, clocked):
        other = add_user(db, clocked.org, "Other Worker")
        db.commit()
        with pytest.raises(NotFound):
            submit_correction(db, other.id, clocked.org.id, clocked.assignment.id, REASON,
                              requested_clock_in=SHIFT_START)


class TestReview:
    def test_approve_applies_only_requested_fields(self, db, clocked, outbox):
        request_id = submit(db, clocked)["requestId"]
        result = review_correction(db, outbox, clocked.manager.id, clocked.org.id, request_id, "approve",
                                   notes="Confirmed with supervisor", now=SUBMITTED_AT + timedelta(hours=1))
        assert result["status"] == "approved"

        a = db.get(ShiftAssignment, clocked.assignment.id)
        assert ensure_utc(a.actual_clock_in) == SHIFT_START
        assert ensure_utc(a.effective_clock_in) == SHIFT_START
        assert a.clock_in_method == "correction"
        assert a.clock_in_verified is False
        # Clock-out untouched
        assert ensure_utc(a.actual_clock_out) == SHIFT_END
        assert a.clock_out_method is None
        assert a.needs_review is False
        assert a.adjusted_by == clocked.manager.id

        request = db.get(TimeCorrectionRequest, request_id)
        assert request.reviewed_by == clocked.manager.id
        assert request.reviewed_at is not None
        assert request.review_notes == "Confirmed with supervisor"

        assert outbox.of_kind("push")[0].params["recipient_id"] == clocked.worker.id
        assert db.query(AuditLog).filter(AuditLog.action == "correction_request.approved").count() == 1

    def test_reject_only_clears_review_flag(self, db, clocked, outbox):
        request_id = submit(db, clocked)["requestId"]
        review_correction(db, outbox, clocked.manager.id, clocked.org.id, request_id, "reject")

        a = db.get(ShiftAssignment, clocked.assignment.id)
        assert ensure_utc(a.actual_clock_in) == SHIFT_START + minutes(20)
        assert a.needs_review is False
        assert db.get(TimeCorrectionRequest, request_id).status == "rejected"

    def test_reviewing_twice_fails(self, db, clocked, outbox):
        request_id = submit(db, clocked)["requestId"]
        review_correction(db, outbox, clocked.manager.id, clocked.org.id, request_id, "reject")
        with pytest.raises(AlreadyReviewed) as exc:
            review_correction(db, outbox, clocked.manager.id, clocked.org.id, request_id, "approve")
        assert exc.value.details == {"status": "rejected"}

    def test_worker_cannot_review(self, db, clocked, outbox):
        request_id = submit(db, clocked)["requestId"]
        with pytest.raises(Forbidden):
            review_correction(db, outbox, clocked.worker.id, clocked.org.id, request_id, "approve")

    def test_unknown_action(self, db, clocked, outbox):
        request_id = submit(db, clocked)["requestId"]
        with pytest.raises(ValidationFailed):
            review_correction(db, outbox, clocked.manager.id, clocked.org.id, request_id, "maybe")

    def test_escalated_request_needs_admin(self, db, clocked, outbox):
        request_id = submit(db, clocked)["requestId"]
        escalate_stale_corrections(db, now=SUBMITTED_AT + timedelta(hours=72))

        with pytest.raises(Forbidden):
            review_correction(db, outbox, clocked.manager.id, clocked.org.id, request_id, "approve")
        result = review_correction(db, outbox, clocked.admin.id, clocked.org.id, request_id, "reject")
        assert result["status"] == "rejected"


class TestSlaSweeps:
    def test_escalates_at_exactly_72_hours(self, db, clocked):
        request_id = submit(db, clocked)["requestId"]

        assert escalate_stale_corrections(db, now=SUBMITTED_AT + timedelta(hours=72) - timedelta(seconds=1)) == 0
        assert db.get(TimeCorrectionRequest, request_id).status == "pending"

        assert escalate_stale_corrections(db, now=SUBMITTED_AT + timedelta(hours=72)) == 1
        request = db.get(TimeCorrectionRequest, request_id)
        assert request.status == "escalated"
        assert ensure_utc(request.escalated_at) == SUBMITTED_AT + timedelta(hours=72)
        assert request.escalation_reason == "72-hour auto-escalation: Manager did not review"

        # Idempotent
        assert escalate_stale_corrections(db, now=SUBMITTED_AT + timedelta(hours=80)) == 0

    def test_auto_approves_48_hours_after_escalation(self, db, clocked):
        request_id = submit(db, clocked)["requestId"]
        escalated_at = SUBMITTED_AT + timedelta(hours=72)
        escalate_stale_corrections(db, now=escalated_at)

        assert auto_approve_escalated_corrections(db, now=escalated_at + timedelta(hours=48) - timedelta(seconds=1)) == 0
        assert db.get(TimeCorrectionRequest, request_id).status == "escalated"
        a = db.get(ShiftAssignment, clocked.assignment.id)
        assert ensure_utc(a.actual_clock_in) == SHIFT_START + minutes(20)

        assert auto_approve_escalated_corrections(db, now=escalated_at + timedelta(hours=48)) == 1
        request = db.get(TimeCorrectionRequest, request_id)
        assert request.status == "approved"
        assert request.reviewed_by == "system"
        assert request.review_notes == "48-hour auto-approval: Admin did not review after escalation"

        a = db.get(ShiftAssignment, clocked.assignment.id)
        assert ensure_utc(a.actual_clock_in) == SHIFT_START
        assert a.clock_in_method == "correction"
        assert a.needs_review is False

        assert auto_approve_escalated_corrections(db, now=escalated_at + timedelta(hours=100)) == 0

    def test_pending_request_is_never_auto_approved(self, db, clocked):
        submit(db, clocked)
        assert auto_approve_escalated_corrections(db, now=SUBMITTED_AT + timedelta(days=30)) == 0

    def test_reminder_digest_for_requests_nearing_escalation(self, db, clocked, outbox):
        submit(db, clocked)
        assert remind_pending_corrections(db, outbox, now=SUBMITTED_AT + timedelta(hours=47)) == 0
        assert remind_pending_corrections(db, outbox, now=SUBMITTED_AT + timedelta(hours=50)) == 1
        recipients = {m.params["recipient_id"] for m in outbox.of_kind("push")}
        assert recipients == {clocked.manager.id, clocked.admin.id}
        # Reminded once only
        assert remind_pending_corrections(db, outbox, now=SUBMITTED_AT + timedelta(hours=60)) == 0


class TestListings:
    def test_manager_listings(self, db, clocked):
        submit(db, clocked)
        pending = list_pending_corrections(db, clocked.manager.id, clocked.org.id)
        assert len(pending) == 1
        assert pending[0]["workerName"] == "Sam Worker"
        assert pending[0]["shiftTitle"] == "Evening Bar Staff"

        flagged = get_flagged_timesheets(db, clocked.manager.id, clocked.org.id)
        assert flagged["summary"] == {"totalFlagged": 1, "totalPendingCorrections": 1}
        assert flagged["flaggedTimesheets"][0]["reviewReason"] == "disputed"
        assert flagged["flaggedTimesheets"][0]["locationName"] == "Riverside Hall"

    def test_workers_cannot_list_pending(self, db, clocked):
        with pytest.raises(Forbidden):
            list_pending_corrections(db, clocked.worker.id, clocked.org.id)
        with pytest.raises(Forbidden):
            get_flagged_timesheets(db, clocked.worker.id, clocked.org.id)

    def test_worker_sees_own_history(self, db, clocked, outbox):
        request_id = submit(db, clocked)["requestId"]
        review_correction(db, outbox, clocked.manager.id, clocked.org.id, request_id, "reject", notes="No evidence")
        mine = list_worker_corrections(db, clocked.worker.id, clocked.org.id)
        assert [(r["requestId"], r["status"], r["reviewNotes"]) for r in mine] == [
            (request_id, "rejected", "No evidence")
        ]


class TestCorrectedTimesStayOrdered:
    def test_clock_in_after_recorded_clock_out_is_refused(self, db, clocked):
        with pytest.raises(ValidationFailed) as exc:
            submit(db, clocked, requested_clock_in=SHIFT_END + minutes(30))
        assert exc.value.details["clockOut"] == SHIFT_END.isoformat()
        assert db.query(TimeCorrectionRequest).count() == 0

    def test_clock_out_without_any_clock_in_is_refused(self, db, world):
        with pytest.raises(ValidationFailed):
            submit_correction(db, world.worker.id, world.org.id, world.assignment.id, REASON,
                              requested_clock_out=SHIFT_END, now=SUBMITTED_AT)

    def test_review_refuses_times_that_no_longer_fit(self, db, clocked, outbox):
        request_id = submit(db, clocked, requested_clock_in=SHIFT_START + minutes(30))["requestId"]
        manager_override(db, clocked.manager.id, clocked.org.id, clocked.assignment.id,
                         clock_out_time=SHIFT_START + minutes(25), now=SUBMITTED_AT)

        with pytest.raises(ValidationFailed):
            review_correction(db, outbox, clocked.manager.id, clocked.org.id, request_id, "approve")
        db.expire_all()
        assert db.get(TimeCorrectionRequest, request_id).status == "pending"
        a = db.get(ShiftAssignment, clocked.assignment.id)
        assert ensure_utc(a.actual_clock_in) == SHIFT_START + minutes(20)

    def test_auto_approval_rejects_conflicting_request(self, db, clocked):
        request_id = submit(db, clocked, requested_clock_in=SHIFT_START + minutes(30))["requestId"]
        manager_override(db, clocked.manager.id, clocked.org.id, clocked.assignment.id,
                         clock_out_time=SHIFT_START + minutes(25), now=SUBMITTED_AT)
        escalated_at = SUBMITTED_AT + timedelta(hours=72)
        escalate_stale_corrections(db, now=escalated_at)

        assert auto_approve_escalated_corrections(db, now=escalated_at + timedelta(hours=48)) == 1
        request = db.get(TimeCorrectionRequest, request_id)
        assert request.status == "rejected"
        assert request.reviewed_by == "system"

        a = db.get(ShiftAssignment, clocked.assignment.id)
        assert ensure_utc(a.actual_clock_in) == SHIFT_START + minutes(20)
        assert ensure_utc(a.actual_clock_out) >= ensure_utc(a.actual_clock_in)
        assert a.needs_review is True
        assert db.query(AuditLog).filter(AuditLog.action == "correction_request.rejected").count() == 1


def test_approved_clock_out_completes_shift(db, world, outbox):
    world.shift.status = "in-progress"
    a = world.assignment
    a.status = "in-progress"
    a.actual_clock_in = SHIFT_START
    a.effective_clock_in = SHIFT_START
    db.commit()

    request_id = submit_correction(db, world.worker.id, world.org.id, a.id, REASON,
                                   requested_clock_out=SHIFT_END, now=SUBMITTED_AT)["requestId"]
    review_correction(db, outbox, world.manager.id, world.org.id, request_id, "approve",
                      now=SUBMITTED_AT + timedelta(hours=1))

    assert db.get(Shift, world.shift.id).status == "completed"
    result = approve_shift(db, world.manager.id, world.org.id, world.shift.id, now=SUBMITTED_AT + timedelta(hours=2))
    assert result["assignments"][0]["billableMinutes"] == 240
