"""
Time rules service.
Classifies clock events against the schedule and holds the grace-period
and snapping helpers shared by the clock path and shift approval.
All timestamps are handled as timezone-aware UTC.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
import pytz

from ..config import settings


@dataclass(frozen=True)
class ClockRuleResult:
    actual_time: datetime
    scheduled_time: datetime
    effective_time: datetime
    is_early: bool
    is_late: bool
    minutes_difference: int  # Positive = late, negative = early


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.
    Naive values are stored as UTC, so they are tagged rather than converted.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def utcnow() -> datetime:
    return datetime.now(tz=pytz.UTC)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    return ensure_utc(dt).isoformat() if dt else None


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, truncated toward zero."""
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
    return int(seconds / 60)


def _rounded_minutes_difference(actual: datetime, scheduled: datetime) -> int:
    seconds = (actual - scheduled).total_seconds()
    return int(round(seconds / 60))


def apply_clock_in_rules(actual_time: datetime, scheduled_start: datetime) -> ClockRuleResult:
    """
    Classify a clock-in.
    Early arrival earns no credit: the effective time is never before the scheduled start.
    """
    actual_time = ensure_utc(actual_time)
    scheduled_start = ensure_utc(scheduled_start)
    diff = _rounded_minutes_difference(actual_time, scheduled_start)
    return ClockRuleResult(
        actual_time=actual_time,
        scheduled_time=scheduled_start,
        effective_time=max(actual_time, scheduled_start),
        is_early=diff < 0,
        is_late=diff > 0,
        minutes_difference=diff,
    )


def apply_clock_out_rules(actual_time: datetime, scheduled_end: datetime) -> ClockRuleResult:
    """
    Classify a clock-out.
    No snapping happens at clock-out time; the effective time is the actual one.
    """
    actual_time = ensure_utc(actual_time)
    scheduled_end = ensure_utc(scheduled_end)
    diff = _rounded_minutes_difference(actual_time, scheduled_end)
    return ClockRuleResult(
        actual_time=actual_time,
        scheduled_time=scheduled_end,
        effective_time=actual_time,
        is_early=diff < 0,
        is_late=diff > 0,
        minutes_difference=diff,
    )


def is_within_grace_period(
    actual_time: datetime,
    target_time: datetime,
    grace_minutes: Optional[int] = None
) -> bool:
    """Check if actual time is within grace_minutes (either side) of target time."""
    if grace_minutes is None:
        grace_minutes = settings.grace_period_min
    diff = abs((ensure_utc(actual_time) - ensure_utc(target_time)).total_seconds() / 60)
    return diff <= grace_minutes


def earliest_clock_in(scheduled_start: datetime, buffer_minutes: int) -> datetime:
    return ensure_utc(scheduled_start) - timedelta(minutes=buffer_minutes)


def snap_effective_start(
    actual_clock_in: datetime,
    scheduled_start: datetime,
    grace_minutes: Optional[int] = None
) -> datetime:
    """
    Clock-ins up to grace_minutes after the scheduled start snap down to it.
    Early clock-ins also resolve to the scheduled start (no early credit).
    """
    actual_clock_in = ensure_utc(actual_clock_in)
    scheduled_start = ensure_utc(scheduled_start)
    if actual_clock_in <= scheduled_start or is_within_grace_period(actual_clock_in, scheduled_start, grace_minutes):
        return scheduled_start
    return actual_clock_in


def snap_effective_end(
    actual_clock_out: datetime,
    scheduled_end: datetime,
    grace_minutes: Optional[int] = None
) -> datetime:
    """
    Clock-outs up to grace_minutes before the scheduled end snap up to it.
    Late clock-outs are never snapped down, overtime is kept.
    """
    actual_clock_out = ensure_utc(actual_clock_out)
    scheduled_end = ensure_utc(scheduled_end)
    if actual_clock_out < scheduled_end and is_within_grace_period(actual_clock_out, scheduled_end, grace_minutes):
        return scheduled_end
    return actual_clock_out
