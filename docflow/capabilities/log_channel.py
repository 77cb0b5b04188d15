from __future__ import annotations

from ..common.logger import get_logger
from .interfaces import NotificationChannel, OutboundNotification

logger = get_logger(__name__)


class LogNotificationChannel(NotificationChannel):
    """Simulated e-mail: the notification is written to the log instead of sent.

    Records what it "sent" so tests can count deliveries.
    """

    name = "EMAIL"

    def __init__(self) -> None:
        self.sent: list[OutboundNotification] = []

    def send(self, notification: OutboundNotification) -> None:
        logger.info(
            "simulated_email_sent",
            to=notification.recipient,
            subject=notification.subject,
            body=notification.message,
            event_type=notification.event_type,
            document_id=notification.aggregate_id,
        )
        self.sent.append(notification)
