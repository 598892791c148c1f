"""Main entry point for the ledger mirror."""
import asyncio
import logging
import os
import signal
import sys
from contextlib import AsyncExitStack
from typing import Optional

import structlog
from dotenv import load_dotenv

from ledger_mirror import config as settings
from ledger_mirror.alerts.hub import BroadcastHub
from ledger_mirror.alerts.telegram import TelegramNotifier
from ledger_mirror.api.metadata import MetadataClient
from ledger_mirror.api.prices import PriceClient
from ledger_mirror.api.solana_rpc import SolanaRpcClient
from ledger_mirror.discovery.classifier import TokenClassifier
from ledger_mirror.discovery.service import TokenDiscoveryService
from ledger_mirror.events.listener import EventListener
from ledger_mirror.models import DomainEvent, PoolStateEvent, WinnerSelectedEvent
from ledger_mirror.pricing.tracker import PriceTrackingService
from ledger_mirror.storage.database import DB_PATH, Database

logger = structlog.get_logger()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structured logging on top of stdlib logging."""
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level_name, logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class LedgerMirror:
    """Builds every component once and owns their start/stop lifecycle."""

    def __init__(self, config: dict):
        self.config = config

        rpc_config = config.get("rpc", {})
        self.rpc = SolanaRpcClient(
            settings.rpc_url(),
            ws_url=settings.ws_url(),
            timeout=rpc_config.get("timeout_seconds", 30),
            commitment=rpc_config.get("commitment", "confirmed"),
        )

        pricing_config = config.get("pricing", {})
        self.prices = PriceClient(timeout=pricing_config.get("timeout_seconds", 10))

        storage_config = config.get("storage", {})
        self.db = Database(os.getenv("LEDGER_MIRROR_DB") or storage_config.get("path", DB_PATH))

        alert_config = config.get("alerts", {})
        sinks = []
        if alert_config.get("telegram_enabled", False):
            sinks.append(TelegramNotifier(min_price_move_pct=alert_config.get("min_price_move_pct", 10)))
        self.hub = BroadcastHub(sinks)

        events_config = config.get("events", {})
        self.program_id = os.getenv("PROGRAM_ID") or events_config.get("program_id")
        self.listener = EventListener(self.rpc, self.program_id, events_config.get("history_limit", 100))

        self.discovery = TokenDiscoveryService(
            self.rpc,
            MetadataClient(self.rpc),
            config,
            classifier=TokenClassifier(config),
        )
        self.tracker = PriceTrackingService(self.db, self.hub, self.prices, config)

        self._clients = AsyncExitStack()
        self._stopped: Optional[asyncio.Event] = None

    async def start(self):
        """Connect storage and clients, resume pricing, start discovery and the event stream."""
        logger.info("mirror_starting", program=self.program_id)

        await self.db.connect()
        await self._clients.enter_async_context(self.rpc)
        await self._clients.enter_async_context(self.prices)

        await self.tracker.resume_tracking_for_active_pools()
        self.discovery.start_background_refresh()
        await self.listener.subscribe(self.handle_event, self._on_stream_error)

        logger.info("mirror_started", trackers=self.tracker.get_active_trackers_count())

    async def run_forever(self):
        self._stopped = asyncio.Event()
        await self.start()
        await self._stopped.wait()

    def stop(self):
        if self._stopped is not None:
            self._stopped.set()

    async def handle_event(self, event: DomainEvent):
        """Apply one live event to storage, pricing and broadcast."""
        if isinstance(event, PoolStateEvent):
            await self._on_pool_state(event)
        elif isinstance(event, WinnerSelectedEvent):
            self.hub.broadcast_new_winner(event)
        else:
            logger.debug("event_received", kind=event.kind, pool=event.pool)

    async def _on_pool_state(self, event: PoolStateEvent):
        pool = await self.db.get_pool_by_address(event.pool)
        if pool is None:
            pool_id = await self.db.upsert_pool(event.pool, status=event.new_status)
            pool = await self.db.get_pool_by_address(event.pool)
        else:
            pool_id = pool.id
            await self.db.update_pool_status(pool_id, event.new_status)

        logger.info(
            "pool_status_changed",
            pool=event.pool,
            old_status=event.old_status.value,
            new_status=event.new_status.value,
        )

        if event.new_status.is_terminal and self.tracker.is_tracking(pool_id):
            await self.tracker.stop_tracking(pool_id)
        elif event.new_status.is_price_tracked and pool.token_mint:
            if not self.tracker.is_tracking(pool_id):
                await self.tracker.start_tracking(pool_id, pool.token_mint)

    def _on_stream_error(self, error: Exception):
        logger.error("event_stream_error", error=str(error))

    async def shutdown(self):
        """Graceful shutdown, in reverse start order."""
        logger.info("mirror_shutting_down")
        await self.listener.unsubscribe()
        await self.discovery.stop()
        await self.tracker.stop_all()
        await self.hub.drain()
        await self._clients.aclose()
        await self.db.close()


async def main():
    """Main entry point."""
    load_dotenv()
    configure_logging()

    mirror = LedgerMirror(settings.load_config())
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, mirror.stop)
    except NotImplementedError:
        # Not available on Windows event loops
        pass

    try:
        await mirror.run_forever()
    finally:
        await mirror.shutdown()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")


if __name__ == "__main__":
    run()
