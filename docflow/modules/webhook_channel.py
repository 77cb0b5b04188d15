from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Optional

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..capabilities.interfaces import NotificationChannel, OutboundNotification
from ..common.errors import NotificationDeliveryError
from ..common.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class WebhookChannelConfig:
    url: str
    token: Optional[str] = None
    timeout_s: float = 10.0
    max_attempts: int = 3
    min_wait_s: float = 1.0
    max_wait_s: float = 10.0


class _RetryableStatus(Exception):
    """5xx / 429 from the receiver: worth another attempt."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"webhook returned HTTP {status_code}")
        self.status_code = status_code


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "webhook_retry",
        attempt=state.attempt_number,
        error=str(exc) if exc else None,
        sleep_s=state.next_action.sleep if state.next_action else None,
    )


class WebhookNotificationChannel(NotificationChannel):
    """POST each notification as JSON to an HTTP endpoint.

    Contract:
    - connection errors, timeouts, 429 and 5xx are retried with exponential backoff
    - other 4xx fail at once
    - any final failure surfaces as NotificationDeliveryError (the message is
      then redelivered by the transport)
    """

    name = "WEBHOOK"

    def __init__(self, cfg: WebhookChannelConfig, client: Optional[httpx.Client] = None) -> None:
        self.cfg = cfg
        self._client = client or httpx.Client(timeout=httpx.Timeout(cfg.timeout_s))

    def close(self) -> None:
        self._client.close()

    def _post(self, body: dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self.cfg.token:
            headers["Authorization"] = f"Bearer {self.cfg.token}"
        if body.get("correlation_id"):
            headers["X-Correlation-Id"] = body["correlation_id"]
        resp = self._client.post(self.cfg.url, json=body, headers=headers)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise _RetryableStatus(resp.status_code)
        resp.raise_for_status()

    def send(self, notification: OutboundNotification) -> None:
        body = asdict(notification)
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.cfg.max_attempts)),
            wait=wait_exponential(multiplier=1, min=self.cfg.min_wait_s, max=self.cfg.max_wait_s),
            retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self._post(body)
        except (httpx.HTTPError, _RetryableStatus) as e:
            raise NotificationDeliveryError(f"webhook delivery failed: {e}") from e
        logger.info("webhook_notification_sent", to=notification.recipient, url=self.cfg.url)
