from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class OutboundNotification:
    """A rendered notification, ready for a channel.

    We keep this small and stable; channels map it to their own wire format.
    """

    event_id: str
    event_type: str
    aggregate_id: str
    recipient: str
    subject: str
    message: str
    correlation_id: Optional[str] = None


class NotificationChannel(Protocol):
    """Notification channel interface (consumers depend on interface, not implementation)."""

    name: str

    def send(self, notification: OutboundNotification) -> None:
        """Deliver or raise NotificationDeliveryError."""
        ...
