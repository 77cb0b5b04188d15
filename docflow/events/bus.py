from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import DefaultDict, Dict, List, Optional

from ..common.logger import get_logger
from ..common.time_util import utc_now_iso
from .codec import TransportMessage, encode_envelope
from .models import EventEnvelope

logger = get_logger(__name__)


@dataclass(frozen=True)
class RedeliveryPolicy:
    """Bounded redelivery with exponential backoff (1s, 2s, 4s, 8s, 10s by default)."""

    max_attempts: int = 5
    initial_backoff_s: float = 1.0
    multiplier: float = 2.0
    max_backoff_s: float = 10.0

    def delay_for(self, attempt: int) -> float:
        delay = self.initial_backoff_s * (self.multiplier ** max(0, attempt - 1))
        return max(0.0, min(self.max_backoff_s, delay))


@dataclass(frozen=True)
class DeadLetter:
    consumer: str
    message: TransportMessage
    reason: str
    # True: malformed input, needs a code/data fix. False: retries exhausted.
    permanent: bool
    dead_lettered_at: str


class InMemoryTransport:
    """In-process stand-in for the broker: one queue per bound consumer.

    - publish() fans a message out to every bound consumer (topic-exchange style)
    - delivery is at-least-once: a message leaves the queue for good only via ack()
      or the dead-letter list; nack() redelivers it with attempt + 1
    """

    def __init__(self, policy: Optional[RedeliveryPolicy] = None) -> None:
        self.policy = policy or RedeliveryPolicy()
        self._queues: Dict[str, asyncio.Queue] = {}
        self._dead: DefaultDict[str, List[DeadLetter]] = defaultdict(list)
        self._acked: DefaultDict[str, int] = defaultdict(int)

    def bind(self, consumer: str) -> None:
        self._queues.setdefault(consumer, asyncio.Queue())

    def consumers(self) -> list[str]:
        return list(self._queues)

    def publish(self, message: TransportMessage) -> None:
        for q in self._queues.values():
            q.put_nowait(message)

    def publish_envelope(self, env: EventEnvelope, *, correlation_id: Optional[str] = None) -> TransportMessage:
        message = encode_envelope(env, correlation_id=correlation_id)
        self.publish(message)
        return message

    async def get(self, consumer: str) -> TransportMessage:
        return await self._queues[consumer].get()

    def ack(self, consumer: str, message: TransportMessage) -> None:
        self._acked[consumer] += 1
        self._queues[consumer].task_done()

    def nack(self, consumer: str, message: TransportMessage, *, error: str) -> None:
        """Hand the message back for redelivery, or dead-letter it once attempts run out.

        The backoff runs on the event loop timer, not in the caller; the message
        counts as unfinished for join() until it is back in the queue.
        """
        q = self._queues[consumer]
        if message.attempt >= self.policy.max_attempts:
            try:
                self._dead_letter(consumer, message, reason=f"retries exhausted: {error}", permanent=False)
            finally:
                q.task_done()
            return
        redelivery = replace(message, attempt=message.attempt + 1)
        delay = self.policy.delay_for(message.attempt)
        if delay > 0:
            asyncio.get_running_loop().call_later(delay, self._requeue, consumer, redelivery)
        else:
            self._requeue(consumer, redelivery)

    def release(self, consumer: str, message: TransportMessage) -> None:
        """Put an unsettled message back as-is (worker stopped mid-attempt)."""
        self._requeue(consumer, message)

    def _requeue(self, consumer: str, message: TransportMessage) -> None:
        q = self._queues[consumer]
        q.put_nowait(message)
        q.task_done()

    def reject(self, consumer: str, message: TransportMessage, *, reason: str) -> None:
        """Dead-letter without redelivery (permanent failure)."""
        try:
            self._dead_letter(consumer, message, reason=reason, permanent=True)
        finally:
            self._queues[consumer].task_done()

    def _dead_letter(self, consumer: str, message: TransportMessage, *, reason: str, permanent: bool) -> None:
        self._dead[consumer].append(
            DeadLetter(
                consumer=consumer,
                message=message,
                reason=reason,
                permanent=permanent,
                dead_lettered_at=utc_now_iso(),
            )
        )
        logger.error(
            "message_dead_lettered",
            consumer=consumer,
            message_id=message.message_id,
            attempt=message.attempt,
            permanent=permanent,
            reason=reason,
        )

    def dead_letters(self, consumer: str) -> list[DeadLetter]:
        return list(self._dead.get(consumer, []))

    def acked_count(self, consumer: str) -> int:
        return self._acked.get(consumer, 0)

    def pending(self, consumer: str) -> int:
        return self._queues[consumer].qsize()

    async def join(self, consumer: str) -> None:
        """Wait until every message handed to `consumer` reached ack or dead-letter."""
        await self._queues[consumer].join()
