"""
Outbound notifications (push, SMS, scheduled-reminder cancellation).

Services never talk to a delivery channel directly. They enqueue onto a
NotificationOutbox while doing their work and the outbox is flushed only after
the database transaction has committed. Delivery failures are logged and
reported by flush(); they never fail the primary operation.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Iterable

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal
from ..models.models import (
    Notification, ScheduledNotification, Member, ManagerNotificationPreference, Shift
)
from .permissions import MANAGER_ROLES
from .time_rules import utcnow

logger = structlog.get_logger(__name__)

CLOCK_IN_CANCELLED_TYPES = ("shift_start", "late_warning", "15_min")


class DatabaseNotificationSender:
    """
    Default sender: writes rows to the notifications queue table, which the
    delivery worker drains. Scheduled reminders are cancelled in place.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def notify(self, recipient_id: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> None:
        if not settings.enable_push:
            return
        self._enqueue("push", recipient_id, title, body, data)

    def send_sms(self, phone_number: str, message: str) -> None:
        if not settings.enable_sms:
            return
        self._enqueue("sms", phone_number, None, message, None)

    def cancel_by_type(self, shift_id: str, worker_id: str, notification_type: str) -> bool:
        db = self.session_factory()
        try:
            updated = db.query(ScheduledNotification).filter(
                ScheduledNotification.shift_id == shift_id,
                ScheduledNotification.worker_id == worker_id,
                ScheduledNotification.type == notification_type,
                ScheduledNotification.status == "pending",
            ).update({"status": "cancelled", "updated_at": utcnow()}, synchronize_session=False)
            db.commit()
            return updated > 0
        finally:
            db.close()

    def _enqueue(self, channel: str, recipient: str, title: Optional[str], body: str, data: Optional[Dict[str, Any]]) -> None:
        db = self.session_factory()
        try:
            db.add(Notification(
                channel=channel,
                recipient=recipient,
                title=title,
                body=body,
                payload_json=data,
                status="pending",
            ))
            db.commit()
        finally:
            db.close()


@dataclass
class OutboundMessage:
    kind: str  # push|sms|cancel
    params: Dict[str, Any]
    label: str


@dataclass
class DeliveryReport:
    sent: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)


class NotificationOutbox:
    """Collects side effects of one unit of work; flush() after commit."""

    def __init__(self, sender=None):
        self.sender = sender or DatabaseNotificationSender()
        self.messages: List[OutboundMessage] = []

    def notify(self, recipient_id: str, title: str, body: str, data: Optional[Dict[str, Any]] = None, label: str = "notify") -> None:
        self.messages.append(OutboundMessage(
            "push", {"recipient_id": recipient_id, "title": title, "body": body, "data": data}, label
        ))

    def send_sms(self, phone_number: str, message: str, label: str = "sms") -> None:
        self.messages.append(OutboundMessage(
            "sms", {"phone_number": phone_number, "message": message}, label
        ))

    def cancel_scheduled(self, shift_id: str, worker_id: str, types: Iterable[str]) -> None:
        for notification_type in types:
            self.messages.append(OutboundMessage(
                "cancel",
                {"shift_id": shift_id, "worker_id": worker_id, "notification_type": notification_type},
                f"cancel_{notification_type}",
            ))

    def discard(self) -> None:
        self.messages = []

    def of_kind(self, kind: str) -> List[OutboundMessage]:
        return [m for m in self.messages if m.kind == kind]

    def flush(self) -> DeliveryReport:
        report = DeliveryReport()
        messages, self.messages = self.messages, []
        for message in messages:
            try:
                if message.kind == "push":
                    self.sender.notify(**message.params)
                elif message.kind == "sms":
                    self.sender.send_sms(**message.params)
                elif message.kind == "cancel":
                    self.sender.cancel_by_type(**message.params)
                report.sent += 1
            except Exception as e:
                logger.warning("notification_failed", kind=message.kind, label=message.label, error=str(e))
                report.failed.append({"kind": message.kind, "label": message.label, "error": str(e)})
        if report.failed:
            logger.info("outbox_flushed", sent=report.sent, failed=len(report.failed))
        return report


def notify_managers(
    db: Session,
    outbox: NotificationOutbox,
    event_type: str,  # "clock-in"|"clock-out"
    shift: Shift,
    worker_name: str,
) -> int:
    """
    Queue a push alert to every manager of the shift's organization who has
    the matching alert enabled (no stored preference means enabled).
    Returns the number of alerts queued.
    """
    managers = db.query(Member).filter(
        Member.organization_id == shift.organization_id,
        Member.role.in_(MANAGER_ROLES),
    ).all()
    if not managers:
        return 0

    prefs = db.query(ManagerNotificationPreference).filter(
        ManagerNotificationPreference.manager_id.in_([m.user_id for m in managers])
    ).all()
    pref_map = {p.manager_id: p for p in prefs}

    title = "Worker Clocked In" if event_type == "clock-in" else "Worker Clocked Out"
    verb = "clocked in" if event_type == "clock-in" else "clocked out"
    queued = 0
    for member in managers:
        pref = pref_map.get(member.user_id)
        if pref is not None:
            if event_type == "clock-in" and not pref.clock_in_alerts_enabled:
                continue
            if event_type == "clock-out" and not pref.clock_out_alerts_enabled:
                continue
        outbox.notify(
            member.user_id,
            title,
            f"{worker_name} has {verb} for {shift.title}.",
            data={"shift_id": shift.id, "type": "manager_alert"},
            label=f"manager_alert_{event_type}",
        )
        queued += 1
    return queued


def notify_org_managers(
    db: Session,
    outbox: NotificationOutbox,
    org_id: str,
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
) -> int:
    managers = db.query(Member).filter(
        Member.organization_id == org_id,
        Member.role.in_(MANAGER_ROLES),
    ).all()
    for member in managers:
        outbox.notify(member.user_id, title, body, data=data, label="manager_digest")
    return len(managers)


def cleanup_scheduled_notifications(db: Session, older_than: datetime) -> int:
    """Delete sent/failed/cancelled reminders last touched before older_than."""
    deleted = db.query(ScheduledNotification).filter(
        ScheduledNotification.status.in_(("sent", "failed", "cancelled")),
        func.coalesce(ScheduledNotification.updated_at, ScheduledNotification.created_at) < older_than,
    ).delete(synchronize_session=False)
    return deleted


def get_outbox() -> NotificationOutbox:
    """FastAPI dependency: one outbox per request, flushed as a background task."""
    return NotificationOutbox()
