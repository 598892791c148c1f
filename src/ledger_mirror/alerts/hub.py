"""In-process fan-out of price updates and winner announcements."""
import asyncio
import time
from typing import Any, Optional, Protocol

import structlog

from ledger_mirror.models import WinnerSelectedEvent

logger = structlog.get_logger()


class BroadcastSink(Protocol):
    async def notify_price_update(self, pool_id: int, price: float) -> bool: ...

    async def notify_new_winner(self, event: WinnerSelectedEvent) -> bool: ...


class BroadcastHub:
    """Pushes messages to subscriber queues and optional sinks without blocking the caller.

    Subscribers get bounded queues; when a queue is full the oldest message
    is dropped so a slow reader never stalls the price loop.
    """

    def __init__(self, sinks: Optional[list[BroadcastSink]] = None, queue_size: int = 100):
        self.sinks = list(sinks or [])
        self.queue_size = queue_size
        self._subscribers: list[asyncio.Queue] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def broadcast_price_update(self, pool_id: int, price: float) -> None:
        self._publish({
            "type": "price_update",
            "pool_id": pool_id,
            "price": price,
            "timestamp": time.time(),
        })
        for sink in self.sinks:
            self._spawn(sink.notify_price_update(pool_id, price), "price_update")

    def broadcast_new_winner(self, event: WinnerSelectedEvent) -> None:
        self._publish({
            "type": "new_winner",
            "pool": event.pool,
            "winner": event.winner,
            "total_amount": event.total_amount,
            "participant_count": event.participant_count,
            "timestamp": event.timestamp,
        })
        for sink in self.sinks:
            self._spawn(sink.notify_new_winner(event), "new_winner")
        logger.info("winner_broadcast", pool=event.pool, winner=event.winner)

    async def drain(self) -> None:
        """Wait for in-flight sink deliveries."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _publish(self, message: dict[str, Any]) -> None:
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(message)

    def _spawn(self, coro, kind: str) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(lambda t: self._finished(t, kind))

    def _finished(self, task: asyncio.Task, kind: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("broadcast_sink_failed", kind=kind, error=str(error))
