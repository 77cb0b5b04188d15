from __future__ import annotations

import asyncio

from ..common.logger import get_logger
from ..events.bus import InMemoryTransport
from ..events.codec import TransportMessage
from .processor import EventProcessor, ProcessingState

logger = get_logger(__name__)


class ConsumerWorkerPool:
    """N workers for one consumer, each pulling one message at a time.

    The processor is synchronous (SQLite + blocking channel I/O), so each
    attempt runs in a thread under a deadline. On timeout the delivery is not
    acked; it is nacked once the late attempt has finished, so the redelivery
    either finds the claim committed or starts over alone. A stopped worker
    puts its unsettled message back.
    """

    def __init__(
        self,
        *,
        processor: EventProcessor,
        transport: InMemoryTransport,
        concurrency: int = 4,
        deadline_s: float = 30.0,
    ) -> None:
        self.processor = processor
        self.transport = transport
        self.consumer = processor.consumer
        self.concurrency = max(1, int(concurrency))
        self.deadline_s = float(deadline_s)
        self._tasks: list[asyncio.Task] = []
        self.transport.bind(self.consumer)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"{self.consumer}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("worker_pool_started", consumer=self.consumer, concurrency=self.concurrency)

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("worker_pool_stopped", consumer=self.consumer)

    async def _worker(self, index: int) -> None:
        while True:
            message = await self.transport.get(self.consumer)
            try:
                await self.handle(message)
            except Exception:
                # settling failed; keep the worker alive for the next message
                logger.exception("worker_settle_failed", consumer=self.consumer, worker=index)

    async def handle(self, message: TransportMessage) -> ProcessingState:
        """Process one delivery and settle it with the transport."""
        attempt = asyncio.ensure_future(asyncio.to_thread(self.processor.process, message))
        try:
            try:
                result = await asyncio.wait_for(asyncio.shield(attempt), timeout=self.deadline_s)
            except asyncio.TimeoutError:
                logger.warning(
                    "processing_deadline_exceeded",
                    consumer=self.consumer,
                    message_id=message.message_id,
                    deadline_s=self.deadline_s,
                )
                # the thread cannot be interrupted: redeliver only after it has
                # finished, so the redelivery never overlaps the late attempt
                await attempt
                self.transport.nack(self.consumer, message, error="processing deadline exceeded")
                return ProcessingState.FAILED
        except asyncio.CancelledError:
            self.transport.release(self.consumer, message)
            raise
        except Exception as e:
            logger.exception("processing_crashed", consumer=self.consumer, message_id=message.message_id)
            self.transport.nack(self.consumer, message, error=str(e) or type(e).__name__)
            return ProcessingState.FAILED

        if result.state.acknowledge:
            self.transport.ack(self.consumer, message)
        elif result.state is ProcessingState.DEAD_LETTERED:
            self.transport.reject(self.consumer, message, reason=f"malformed envelope: {result.error}")
        else:
            self.transport.nack(self.consumer, message, error=result.error or "processing failed")
        return result.state
