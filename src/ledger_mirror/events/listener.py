"""Live and historical ingestion of program events."""
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from ledger_mirror.api.solana_rpc import SolanaRpcClient
from ledger_mirror.events.codec import AnchorEventParser
from ledger_mirror.events.mapper import map_event
from ledger_mirror.models import DomainEvent, LogBatch

logger = structlog.get_logger()

EventCallback = Callable[[DomainEvent], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[Exception], Any]


class EventListener:
    """Delivers typed events from one program, live or backfilled.

    Live batches and historical transactions are decoded by the same
    ``_events_from_logs`` path, so both produce identical events for
    identical logs.
    """

    def __init__(self, ledger: SolanaRpcClient, program_id: str, history_limit: int = 100):
        self.ledger = ledger
        self.program_id = program_id
        self.history_limit = history_limit
        self.parser = AnchorEventParser(program_id)
        self.subscription_id: Optional[int] = None
        self._on_event: Optional[EventCallback] = None

    @property
    def is_subscribed(self) -> bool:
        return self.subscription_id is not None

    async def subscribe(self, on_event: EventCallback, on_error: Optional[ErrorCallback] = None) -> int:
        """Subscribe to live program events. Returns the subscription handle."""
        if self.subscription_id is not None:
            logger.warning("listener_already_subscribed", subscription=self.subscription_id)
            return self.subscription_id

        logger.info("listener_subscribing", program=self.program_id)
        self._on_event = on_event
        try:
            self.subscription_id = await self.ledger.on_logs(self.program_id, self._handle_batch, on_error)
        except Exception as e:
            logger.error("listener_subscribe_failed", error=str(e))
            self._on_event = None
            if on_error is not None:
                on_error(e)
            raise

        logger.info("listener_subscribed", subscription=self.subscription_id)
        return self.subscription_id

    async def unsubscribe(self, handle: Optional[int] = None) -> None:
        """Stop the live subscription. Safe to call when not subscribed."""
        if self.subscription_id is None:
            return
        if handle is not None and handle != self.subscription_id:
            logger.warning("listener_unknown_handle", handle=handle, subscription=self.subscription_id)
            return

        subscription_id, self.subscription_id = self.subscription_id, None
        self._on_event = None
        logger.info("listener_unsubscribing", subscription=subscription_id)
        await self.ledger.remove_logs_listener(subscription_id)

    async def fetch_historical_events(self, object_id: str, limit: Optional[int] = None) -> list[DomainEvent]:
        """Decode events from the most recent transactions touching ``object_id``."""
        limit = limit or self.history_limit
        logger.info("historical_events_fetch", object_id=object_id, limit=limit)

        signatures = await self.ledger.get_signatures_for_address(object_id, limit=limit)

        events: list[DomainEvent] = []
        for sig in signatures:
            try:
                logs = await self.ledger.get_transaction_logs(sig.signature)
            except Exception as e:
                logger.warning("historical_transaction_failed", signature=sig.signature, error=str(e))
                continue
            if logs:
                events.extend(self._events_from_logs(logs, sig.signature))

        logger.info("historical_events_found", object_id=object_id, count=len(events))
        return events

    async def _handle_batch(self, batch: LogBatch) -> None:
        on_event = self._on_event
        if on_event is None:
            return

        for event in self._events_from_logs(batch.logs, batch.signature):
            try:
                result = on_event(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("event_callback_failed", kind=event.kind, signature=batch.signature, error=str(e))

    def _events_from_logs(self, logs: list[str], signature: str = "") -> list[DomainEvent]:
        """Decode every event in one transaction's logs, skipping bad records."""
        events = []
        for record in self.parser.parse_logs(logs):
            try:
                event = map_event(record)
            except Exception as e:
                logger.error("event_record_skipped", event_name=record.name, signature=signature, error=str(e))
                continue
            if event is not None:
                events.append(event)
        return events
