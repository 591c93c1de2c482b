import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[str]:
    return mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(64))
    early_clock_in_buffer_minutes: Mapped[Optional[int]] = mapped_column(Integer)  # NULL -> settings default
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class Member(Base):
    """Organization membership and role (owner|admin|manager|worker)"""
    __tablename__ = "members"

    id: Mapped[str] = uuid_pk()
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="worker")

    user: Mapped["User"] = relationship("User")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_member_org_user"),
    )


class VenueLocation(Base):
    """Venue with a geocoded position and a geofence radius"""
    __tablename__ = "locations"

    id: Mapped[str] = uuid_pk()
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text)
    latitude: Mapped[Optional[float]] = mapped_column(Float)  # NULL until geocoded
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    geofence_radius: Mapped[Optional[int]] = mapped_column(Integer)  # meters
    geocoded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    geocode_source: Mapped[Optional[str]] = mapped_column(String(20))  # google|nominatim
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    @property
    def is_geocoded(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class Shift(Base):
    """Scheduled shift at a venue; owns 1..N assignments"""
    __tablename__ = "shifts"

    id: Mapped[str] = uuid_pk()
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    location_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("locations.id", ondelete="SET NULL"))
    contact_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id", ondelete="SET NULL"))  # On-site contact
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)  # UTC
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)  # UTC
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft|published|assigned|in-progress|completed|approved|cancelled
    price: Mapped[Optional[int]] = mapped_column(Integer)  # Hourly rate in cents
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[Optional[str]] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    location: Mapped[Optional["VenueLocation"]] = relationship("VenueLocation")
    assignments: Mapped[List["ShiftAssignment"]] = relationship("ShiftAssignment", back_populates="shift")

    __table_args__ = (
        Index('idx_shifts_org_status', 'organization_id', 'status'),
    )


class ShiftAssignment(Base):
    """Worker <-> shift pairing. Never deleted, only transitioned."""
    __tablename__ = "shift_assignments"

    id: Mapped[str] = uuid_pk()
    shift_id: Mapped[str] = mapped_column(String(36), ForeignKey("shifts.id", ondelete="CASCADE"), nullable=False, index=True)
    worker_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active|in-progress|completed|no_show|cancelled

    # Audit truth: set once by the clock path
    actual_clock_in: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    actual_clock_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # Payroll truth: actual + snapping rules
    effective_clock_in: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    effective_clock_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    clock_in_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    clock_out_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    clock_in_method: Mapped[Optional[str]] = mapped_column(String(30))  # geofence|manual_override|correction|system_auto_finalized
    clock_out_method: Mapped[Optional[str]] = mapped_column(String(30))
    clock_in_lat: Mapped[Optional[float]] = mapped_column(Float)
    clock_in_lng: Mapped[Optional[float]] = mapped_column(Float)
    clock_out_lat: Mapped[Optional[float]] = mapped_column(Float)
    clock_out_lng: Mapped[Optional[float]] = mapped_column(Float)

    break_minutes: Mapped[int] = mapped_column(Integer, default=0)
    budget_rate_snapshot: Mapped[Optional[int]] = mapped_column(Integer)  # Cents/hour locked at assignment time
    estimated_cost_cents: Mapped[Optional[int]] = mapped_column(Integer)  # Set at approval only

    needs_review: Mapped[bool] = mapped_column(Boolean, default=False)
    review_reason: Mapped[Optional[str]] = mapped_column(String(50))  # left_geofence|disputed|missing_clock_out
    last_known_lat: Mapped[Optional[float]] = mapped_column(Float)
    last_known_lng: Mapped[Optional[float]] = mapped_column(Float)
    last_known_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    adjusted_by: Mapped[Optional[str]] = mapped_column(String(36))
    adjusted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    adjustment_notes: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    shift: Mapped["Shift"] = relationship("Shift", back_populates="assignments")
    worker: Mapped["User"] = relationship("User")

    __table_args__ = (
        UniqueConstraint("shift_id", "worker_id", name="uq_assignment_shift_worker"),
        Index('idx_assignments_worker_status', 'worker_id', 'status'),
        Index('idx_assignments_needs_review', 'needs_review'),
    )


class WorkerLocationPing(Base):
    """Append-only location log"""
    __tablename__ = "worker_locations"

    id: Mapped[str] = uuid_pk()
    worker_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    shift_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("shifts.id", ondelete="CASCADE"))
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy_meters: Mapped[Optional[float]] = mapped_column(Float)
    distance_to_venue_meters: Mapped[Optional[int]] = mapped_column(Integer)
    is_on_site: Mapped[bool] = mapped_column(Boolean, default=False)
    event_type: Mapped[str] = mapped_column(String(20), default="ping")  # ping|arrival|departure|clock_in|clock_out
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    device_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_locations_worker_shift_time', 'worker_id', 'shift_id', 'recorded_at'),
    )


class TimeCorrectionRequest(Base):
    """Worker dispute of recorded clock values"""
    __tablename__ = "correction_requests"

    id: Mapped[str] = uuid_pk()
    shift_assignment_id: Mapped[str] = mapped_column(String(36), ForeignKey("shift_assignments.id", ondelete="CASCADE"), nullable=False, index=True)
    worker_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    requested_clock_in: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    requested_clock_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    requested_break_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    original_clock_in: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    original_clock_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    original_break_minutes: Mapped[Optional[int]] = mapped_column(Integer)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|approved|rejected|escalated
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(36))  # user id or "system"
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    review_notes: Mapped[Optional[str]] = mapped_column(Text)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    escalation_reason: Mapped[Optional[str]] = mapped_column(Text)
    reminded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    shift_assignment: Mapped["ShiftAssignment"] = relationship("ShiftAssignment")
    worker: Mapped["User"] = relationship("User")

    __table_args__ = (
        Index('idx_corrections_status_created', 'status', 'created_at'),
    )


class AuditLog(Base):
    """Append-only audit log for all time-clock actions"""
    __tablename__ = "audit_logs"

    id: Mapped[str] = uuid_pk()
    organization_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # shift|shift_assignment|correction_request|location
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)  # shift_assignment.clock_in|shift.approved|...
    actor_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)  # user id or "system"
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON)
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )


class ScheduledNotification(Base):
    """Pending reminders (shift start, late warning) that clock-in cancels"""
    __tablename__ = "scheduled_notifications"

    id: Mapped[str] = uuid_pk()
    shift_id: Mapped[str] = mapped_column(String(36), ForeignKey("shifts.id", ondelete="CASCADE"), nullable=False, index=True)
    worker_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)  # shift_start|late_warning|15_min|...
    send_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed|cancelled
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Notification(Base):
    """Outbound notification queue (push and SMS)"""
    __tablename__ = "notifications"

    id: Mapped[str] = uuid_pk()
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # push|sms
    recipient: Mapped[str] = mapped_column(String(64), nullable=False)  # user id (push) or phone number (sms)
    title: Mapped[Optional[str]] = mapped_column(String(255))
    body: Mapped[str] = mapped_column(Text, nullable=False)
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index('idx_notifications_status_created', 'status', 'created_at'),
    )


class ManagerNotificationPreference(Base):
    __tablename__ = "manager_notification_preferences"

    id: Mapped[str] = uuid_pk()
    manager_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    clock_in_alerts_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    clock_out_alerts_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
