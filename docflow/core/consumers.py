from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..capabilities.interfaces import NotificationChannel, OutboundNotification
from ..common.logger import get_logger
from ..events.models import EventType, InboundMessage
from ..storage.audit import AuditRecord, AuditTrailStore
from ..storage.notifications import NotificationLedger

logger = get_logger(__name__)

AUDIT_CONSUMER = "audit"
NOTIFICATION_CONSUMER = "notification"


class AuditEffect:
    """Audit consumer: every envelope becomes one immutable audit_log row."""

    def __init__(self, audit: AuditTrailStore) -> None:
        self.audit = audit

    def prepare(self, message: InboundMessage) -> AuditRecord:
        env = message.envelope
        return AuditRecord(
            event_id=env.event_id,
            event_type=env.event_type.value,
            aggregate_id=env.aggregate_id,
            aggregate_type=env.aggregate_type,
            timestamp=env.timestamp,
            received_at=message.received_at,
            payload=env.payload_dict(),
            routing_key=message.routing_key,
            message_id=message.message_id,
            correlation_id=message.correlation_id,
        )

    def apply(self, conn: sqlite3.Connection, message: InboundMessage, prepared: AuditRecord) -> None:
        self.audit.append(prepared, conn=conn)


# -------------------------
# Notification content
# -------------------------

def _rejection_reason(payload: Mapping[str, Any]) -> str:
    return str(
        payload.get("rejectionReason")
        or payload.get("reason")
        or "Document did not meet validation requirements"
    )


def render_notification(event_type: EventType, aggregate_id: str, payload: Mapping[str, Any]) -> Optional[tuple[str, str]]:
    """(subject, message) for the event types users hear about; None otherwise."""
    if event_type is EventType.DOCUMENT_VALIDATED:
        return (
            "Document Validated Successfully",
            f"Good news! Your document (ID: {aggregate_id}) has been validated successfully "
            "and is now being processed.",
        )
    if event_type is EventType.DOCUMENT_REJECTED:
        return (
            "Document Rejected",
            f"Unfortunately, your document (ID: {aggregate_id}) was rejected. "
            f"Reason: {_rejection_reason(payload)}. Please correct the issues and submit again.",
        )
    if event_type is EventType.DOCUMENT_ENRICHED:
        return (
            "Document Processing Complete!",
            f"Great news! Your document (ID: {aggregate_id}) has been fully processed and enriched. "
            "It is now ready for use.",
        )
    return None


@dataclass(frozen=True)
class PreparedNotification:
    notification: Optional[OutboundNotification]
    # False when an earlier attempt already sent and recorded it
    sent_now: bool


class NotificationEffect:
    """Notification consumer: send once per triggering event, then record it.

    The send cannot join the database transaction, so it happens in prepare()
    and is skipped when notification_history already holds the event.
    """

    def __init__(
        self,
        notifications: NotificationLedger,
        channel: NotificationChannel,
        *,
        default_recipient: str = "user@example.com",
    ) -> None:
        self.notifications = notifications
        self.channel = channel
        self.default_recipient = default_recipient

    def _recipient(self, payload: Mapping[str, Any]) -> str:
        """uploadedBy from the upload; uploaded_by / recipient are accepted for
        producers that publish snake_case or an explicit address. Else the default."""
        for key in ("uploadedBy", "uploaded_by", "recipient"):
            value = payload.get(key)
            if value:
                return str(value)
        return self.default_recipient

    def prepare(self, message: InboundMessage) -> PreparedNotification:
        env = message.envelope
        content = render_notification(env.event_type, env.aggregate_id, env.payload)
        if content is None:
            logger.debug("notification_not_applicable")
            return PreparedNotification(notification=None, sent_now=False)

        subject, body = content
        notification = OutboundNotification(
            event_id=env.event_id,
            event_type=env.event_type.value,
            aggregate_id=env.aggregate_id,
            recipient=self._recipient(env.payload),
            subject=subject,
            message=body,
            correlation_id=message.correlation_id,
        )
        if self.notifications.has_notified(env.event_id):
            logger.info("notification_already_sent")
            return PreparedNotification(notification=notification, sent_now=False)

        self.channel.send(notification)
        return PreparedNotification(notification=notification, sent_now=True)

    def apply(self, conn: sqlite3.Connection, message: InboundMessage, prepared: PreparedNotification) -> None:
        n = prepared.notification
        if n is None:
            return
        written = self.notifications.record(
            n.event_id,
            n.aggregate_id,
            n.event_type,
            n.recipient,
            channel=self.channel.name,
            subject=n.subject,
            message=n.message,
            routing_key=message.routing_key,
            conn=conn,
        )
        if written and prepared.sent_now:
            logger.info("notification_sent", recipient=n.recipient, channel=self.channel.name)
        elif written:
            logger.info("notification_recorded", recipient=n.recipient)
