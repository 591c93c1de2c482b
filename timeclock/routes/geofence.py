"""
Geofence time-clock API routes.
Clock-in/out, location pings, manager overrides and time corrections.
"""
from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import ActorContext, get_actor
from ..schemas.clock import ClockEventIn, LocationPingIn, ManagerOverrideIn, GeocodeIn
from ..schemas.corrections import CorrectionRequestIn, CorrectionReviewIn
from ..services import clock, corrections, location_ingest, geocoding
from ..services.notifications import NotificationOutbox, get_outbox

router = APIRouter(prefix="/geofence", tags=["geofence"])


def ok(data) -> dict:
    return {"success": True, "data": data}


@router.post("/clock-in")
def clock_in(
    payload: ClockEventIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    result = clock.clock_in(
        db,
        outbox,
        shift_id=payload.shift_id,
        worker_id=actor.actor_id,
        org_id=actor.org_id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        accuracy_m=payload.accuracy_meters,
        device_timestamp=payload.device_timestamp,
    )
    background_tasks.add_task(outbox.flush)
    return ok(result)


@router.post("/clock-out")
def clock_out(
    payload: ClockEventIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    result = clock.clock_out(
        db,
        outbox,
        shift_id=payload.shift_id,
        worker_id=actor.actor_id,
        org_id=actor.org_id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        accuracy_m=payload.accuracy_meters,
        device_timestamp=payload.device_timestamp,
    )
    background_tasks.add_task(outbox.flush)
    return ok(result)


@router.post("/location")
def ingest_location(
    payload: LocationPingIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    result = location_ingest.ingest_ping(
        db,
        outbox,
        worker_id=actor.actor_id,
        org_id=actor.org_id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        accuracy_m=payload.accuracy_meters,
        device_timestamp=payload.device_timestamp,
    )
    background_tasks.add_task(outbox.flush)
    return ok(result)


@router.post("/override")
def manager_override(
    payload: ManagerOverrideIn,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
):
    result = clock.manager_override(
        db,
        actor_id=actor.actor_id,
        org_id=actor.org_id,
        assignment_id=payload.assignment_id,
        clock_in_time=payload.clock_in_time,
        clock_out_time=payload.clock_out_time,
        break_minutes=payload.break_minutes,
        notes=payload.notes,
        latitude=payload.latitude,
        longitude=payload.longitude,
    )
    return ok(result)


@router.post("/corrections")
def request_correction(
    payload: CorrectionRequestIn,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
):
    result = corrections.submit_correction(
        db,
        worker_id=actor.actor_id,
        org_id=actor.org_id,
        assignment_id=payload.shift_assignment_id,
        reason=payload.reason,
        requested_clock_in=payload.requested_clock_in,
        requested_clock_out=payload.requested_clock_out,
        requested_break_minutes=payload.requested_break_minutes,
    )
    return ok(result)


@router.get("/corrections/mine")
def my_corrections(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
):
    return ok(corrections.list_worker_corrections(db, actor.actor_id, actor.org_id))


@router.get("/corrections/pending")
def pending_corrections(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
):
    return ok(corrections.list_pending_corrections(db, actor.actor_id, actor.org_id))


@router.post("/corrections/{request_id}/review")
def review_correction(
    request_id: str,
    payload: CorrectionReviewIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    result = corrections.review_correction(
        db,
        outbox,
        actor_id=actor.actor_id,
        org_id=actor.org_id,
        request_id=request_id,
        action=payload.action.value,
        notes=payload.review_notes,
    )
    background_tasks.add_task(outbox.flush)
    return ok(result)


@router.get("/flagged")
def flagged_timesheets(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
):
    return ok(corrections.get_flagged_timesheets(db, actor.actor_id, actor.org_id))


@router.post("/locations/{location_id}/geocode")
def geocode_location(
    location_id: str,
    payload: GeocodeIn,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
):
    result = geocoding.geocode_location(
        db,
        actor_id=actor.actor_id,
        org_id=actor.org_id,
        location_id=location_id,
        force_refresh=payload.force_refresh,
    )
    return ok(result)
