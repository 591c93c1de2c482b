"""
Shift approval route.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import ActorContext, get_actor
from ..services.approval import approve_shift

router = APIRouter(prefix="/shifts", tags=["shifts"])


@router.post("/{shift_id}/approve")
def approve(
    shift_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
):
    result = approve_shift(db, actor_id=actor.actor_id, org_id=actor.org_id, shift_id=shift_id)
    return {"success": True, "data": result}
