from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..capabilities.interfaces import NotificationChannel
from ..capabilities.log_channel import LogNotificationChannel
from ..common.logger import get_logger
from ..events.bus import InMemoryTransport, RedeliveryPolicy
from ..modules.webhook_channel import WebhookChannelConfig, WebhookNotificationChannel
from ..storage.audit import AUDIT_SCHEMA, AuditTrailStore
from ..storage.db import SqliteStore
from ..storage.ledger import IdempotencyLedger
from ..storage.notifications import NOTIFICATION_SCHEMA, NotificationLedger
from .config import ConfigManager, ServiceConfig
from .consumers import AUDIT_CONSUMER, NOTIFICATION_CONSUMER, AuditEffect, NotificationEffect
from .processor import EventProcessor
from .workers import ConsumerWorkerPool

logger = get_logger(__name__)


def build_channel(cfg: ServiceConfig) -> NotificationChannel:
    """Select a notification channel based on config.

    Fallback rules:
    - webhook mode without a url -> simulated e-mail (log channel)
    """
    if cfg.channel.mode == "webhook":
        if not cfg.channel.webhook_url:
            logger.warning("webhook_url_missing_using_log_channel")
            return LogNotificationChannel()
        return WebhookNotificationChannel(
            WebhookChannelConfig(
                url=cfg.channel.webhook_url,
                token=cfg.channel.webhook_token,
                timeout_s=cfg.channel.timeout_s,
                max_attempts=cfg.channel.max_attempts,
            )
        )
    return LogNotificationChannel()


@dataclass
class ServiceRuntime:
    """Everything one process needs to run both consumers.

    Each consumer owns its database (ledger + derived store); the two never
    share a store.
    """

    config: ServiceConfig
    transport: InMemoryTransport
    audit_store: SqliteStore
    notification_store: SqliteStore
    audit_ledger: IdempotencyLedger
    notification_ledger: IdempotencyLedger
    audit: AuditTrailStore
    notifications: NotificationLedger
    channel: NotificationChannel
    audit_pool: ConsumerWorkerPool
    notification_pool: ConsumerWorkerPool

    @property
    def pools(self) -> list[ConsumerWorkerPool]:
        return [self.audit_pool, self.notification_pool]

    async def start(self) -> None:
        for pool in self.pools:
            await pool.start()

    async def stop(self) -> None:
        for pool in self.pools:
            await pool.stop()

    def close(self) -> None:
        close_channel = getattr(self.channel, "close", None)
        if callable(close_channel):
            close_channel()
        self.audit_store.close()
        self.notification_store.close()


def build_runtime(
    cfg: ServiceConfig,
    *,
    config_manager: Optional[ConfigManager] = None,
    transport: Optional[InMemoryTransport] = None,
    channel: Optional[NotificationChannel] = None,
) -> ServiceRuntime:
    cm = config_manager or ConfigManager()
    if transport is None:
        transport = InMemoryTransport(
            RedeliveryPolicy(
                max_attempts=cfg.transport.max_delivery_attempts,
                initial_backoff_s=cfg.transport.initial_backoff_s,
                multiplier=cfg.transport.backoff_multiplier,
                max_backoff_s=cfg.transport.max_backoff_s,
            )
        )
    channel = channel or build_channel(cfg)

    audit_store = SqliteStore(str(cm.resolve_db_path(cfg.audit.db_path)), schema=AUDIT_SCHEMA)
    notification_store = SqliteStore(
        str(cm.resolve_db_path(cfg.notification.db_path)), schema=NOTIFICATION_SCHEMA
    )
    audit_ledger = IdempotencyLedger(audit_store)
    notification_ledger = IdempotencyLedger(notification_store)
    audit = AuditTrailStore(audit_store)
    notifications = NotificationLedger(notification_store)

    audit_pool = ConsumerWorkerPool(
        processor=EventProcessor(
            consumer=AUDIT_CONSUMER,
            store=audit_store,
            ledger=audit_ledger,
            effect=AuditEffect(audit),
        ),
        transport=transport,
        concurrency=cfg.audit.concurrency,
        deadline_s=cfg.audit.processing_deadline_s,
    )
    notification_pool = ConsumerWorkerPool(
        processor=EventProcessor(
            consumer=NOTIFICATION_CONSUMER,
            store=notification_store,
            ledger=notification_ledger,
            effect=NotificationEffect(
                notifications,
                channel,
                default_recipient=cfg.channel.default_recipient,
            ),
        ),
        transport=transport,
        concurrency=cfg.notification.concurrency,
        deadline_s=cfg.notification.processing_deadline_s,
    )

    logger.info(
        "runtime_built",
        audit_db=audit_store.db_path,
        notification_db=notification_store.db_path,
        channel=channel.name,
    )
    return ServiceRuntime(
        config=cfg,
        transport=transport,
        audit_store=audit_store,
        notification_store=notification_store,
        audit_ledger=audit_ledger,
        notification_ledger=notification_ledger,
        audit=audit,
        notifications=notifications,
        channel=channel,
        audit_pool=audit_pool,
        notification_pool=notification_pool,
    )
