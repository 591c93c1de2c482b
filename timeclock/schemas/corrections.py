from datetime import datetime
from typing import Optional
from enum import Enum

from pydantic import BaseModel, Field


class ReviewAction(str, Enum):
    approve = "approve"
    reject = "reject"


class CorrectionRequestIn(BaseModel):
    shift_assignment_id: str
    reason: str
    requested_clock_in: Optional[datetime] = None
    requested_clock_out: Optional[datetime] = None
    requested_break_minutes: Optional[int] = Field(default=None, ge=0)


class CorrectionReviewIn(BaseModel):
    action: ReviewAction
    review_notes: Optional[str] = None
