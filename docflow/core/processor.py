from __future__ import annotations

import sqlite3
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from ..common.errors import MalformedEnvelopeError
from ..common.logger import get_logger, message_context
from ..common.time_util import utc_now_iso
from ..events.codec import TransportMessage, decode_message
from ..events.models import InboundMessage
from ..storage.db import SqliteStore
from ..storage.ledger import ClaimOutcome, IdempotencyLedger

logger = get_logger(__name__)


class ProcessingState(str, Enum):
    RECEIVED = "received"
    CLAIMED = "claimed"
    DEDUPLICATED = "deduplicated"
    APPLIED = "applied"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"

    @property
    def terminal(self) -> bool:
        return self not in (ProcessingState.RECEIVED, ProcessingState.CLAIMED)

    @property
    def acknowledge(self) -> bool:
        """Only these two end states may be acked to the transport."""
        return self in (ProcessingState.DEDUPLICATED, ProcessingState.APPLIED)


@dataclass(frozen=True)
class ProcessingResult:
    state: ProcessingState
    event_id: Optional[str] = None
    error: Optional[str] = None


class Effect(Protocol):
    """Service-specific side effect of one consumer.

    prepare() runs before the unit of work and may touch the outside world
    (e.g. send a notification); it must tolerate being repeated for the same
    event. apply() runs inside the transaction that also holds the claim, so
    its writes commit or roll back together with the ledger entry.
    """

    def prepare(self, message: InboundMessage) -> Any:
        ...

    def apply(self, conn: sqlite3.Connection, message: InboundMessage, prepared: Any) -> None:
        ...


class EventProcessor:
    """Idempotent consumer: Received -> Deduplicated | Claimed -> Applied | Failed.

    Per message:
    1) decode; malformed input is dead-lettered (permanent, never retried)
    2) ledger lookup; a processed id short-circuits to DEDUPLICATED
    3) effect.prepare() outside the transaction
    4) one transaction: claim + effect.apply(); ALREADY_CLAIMED means another
       worker won the race -> DEDUPLICATED, nothing of ours is written
    5) any failure -> FAILED: no claim is left behind, the transport redelivers
    """

    def __init__(
        self,
        *,
        consumer: str,
        store: SqliteStore,
        ledger: IdempotencyLedger,
        effect: Effect,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.consumer = consumer
        self.store = store
        self.ledger = ledger
        self.effect = effect
        self.clock = clock

    def process(self, raw: TransportMessage) -> ProcessingResult:
        received_at = self.clock()
        with message_context(
            consumer=self.consumer,
            correlation_id=raw.correlation_id,
            message_id=raw.message_id,
            routing_key=raw.routing_key,
            attempt=raw.attempt,
        ) as correlation_id:
            try:
                message = decode_message(raw, received_at=received_at)
            except MalformedEnvelopeError as e:
                logger.error("event_parse_failed", field=e.field, error=str(e))
                return ProcessingResult(state=ProcessingState.DEAD_LETTERED, error=str(e))

            if message.correlation_id is None:
                # keep the generated id on the audit record as well
                message = replace(message, correlation_id=correlation_id)
            with message_context(
                consumer=self.consumer,
                correlation_id=message.correlation_id,
                event_id=message.event_id,
                event_type=message.event_type.value,
                aggregate_id=message.aggregate_id,
            ):
                return self._process(message)

    def _process(self, message: InboundMessage) -> ProcessingResult:
        logger.info("event_received")
        event_id = message.event_id
        try:
            if self.ledger.has_processed(event_id):
                logger.info("event_skipped_idempotent")
                return ProcessingResult(state=ProcessingState.DEDUPLICATED, event_id=event_id)

            prepared = self.effect.prepare(message)

            with self.store.transaction() as conn:
                outcome = self.ledger.claim(
                    event_id,
                    message.event_type.value,
                    message.aggregate_id,
                    conn=conn,
                )
                if outcome is ClaimOutcome.ALREADY_CLAIMED:
                    state = ProcessingState.DEDUPLICATED
                else:
                    logger.debug("event_claimed")
                    self.effect.apply(conn, message, prepared)
                    state = ProcessingState.APPLIED
        except MalformedEnvelopeError as e:
            logger.error("event_parse_failed", field=e.field, error=str(e))
            return ProcessingResult(state=ProcessingState.DEAD_LETTERED, event_id=event_id, error=str(e))
        except Exception as e:
            logger.exception("technical_failure", attempt=message.attempt)
            return ProcessingResult(state=ProcessingState.FAILED, event_id=event_id, error=str(e))

        if state is ProcessingState.DEDUPLICATED:
            logger.info("event_skipped_idempotent", race=True)
        else:
            logger.info("event_processed")
        return ProcessingResult(state=state, event_id=event_id)
