"""Per-pool price polling."""
import asyncio
import time
from typing import Callable, Optional, Protocol

import structlog

from ledger_mirror.api.prices import PriceClient
from ledger_mirror.models import PoolTracker, TrackedPool
from ledger_mirror.pricing.cache import PriceCache

logger = structlog.get_logger()


class PriceStore(Protocol):
    async def update_pool_price(self, pool_id: int, price: float) -> None: ...

    async def get_active_pools_for_price_tracking(self) -> list[TrackedPool]: ...


class PriceBroadcaster(Protocol):
    def broadcast_price_update(self, pool_id: int, price: float) -> None: ...


class PriceTrackingService:
    """Runs one polling task per tracked pool and publishes each price."""

    def __init__(
        self,
        storage: PriceStore,
        broadcaster: PriceBroadcaster,
        price_client: PriceClient,
        config: dict,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage = storage
        self.broadcaster = broadcaster
        self.price_client = price_client
        self.clock = clock

        pricing = config.get("pricing", {})
        self.poll_interval = pricing.get("poll_interval_seconds", 2.5)
        self.cache = PriceCache(pricing.get("cache_ttl_seconds", 2.5), clock=clock)

        self._trackers: dict[int, PoolTracker] = {}

    def get_active_trackers_count(self) -> int:
        return len(self._trackers)

    def is_tracking(self, pool_id: int) -> bool:
        return pool_id in self._trackers

    async def start_tracking(self, pool_id: int, token_mint: str) -> None:
        """Start polling prices for a pool. A second start for the same pool is a no-op."""
        if pool_id in self._trackers:
            logger.warning("tracker_already_running", pool_id=pool_id)
            return

        # Registered before the first await so concurrent starts see it
        tracker = PoolTracker(pool_id=pool_id, token_mint=token_mint, started_at=self.clock())
        self._trackers[pool_id] = tracker
        logger.info("tracker_started", pool_id=pool_id, mint=token_mint, interval=self.poll_interval)

        await self._tick(pool_id, token_mint)

        # Stopped while the initial fetch was in flight
        if self._trackers.get(pool_id) is not tracker:
            return

        tracker.task = asyncio.create_task(self._poll_loop(pool_id, token_mint), name=f"price-tracker-{pool_id}")

    async def stop_tracking(self, pool_id: int) -> None:
        tracker = self._trackers.pop(pool_id, None)
        if tracker is None:
            logger.warning("tracker_not_found", pool_id=pool_id)
            return

        await self._cancel(tracker)
        logger.info("tracker_stopped", pool_id=pool_id)

    async def stop_all(self) -> None:
        trackers = list(self._trackers.values())
        self._trackers.clear()
        for tracker in trackers:
            await self._cancel(tracker)
        self.cache.clear()
        logger.info("all_trackers_stopped", count=len(trackers))

    async def resume_tracking_for_active_pools(self) -> int:
        """Start trackers for every stored pool still in a priced state."""
        try:
            pools = await self.storage.get_active_pools_for_price_tracking()
        except Exception as e:
            logger.error("trackers_resume_failed", error=str(e))
            return 0

        resumed = 0
        for pool in pools:
            if not pool.token_mint:
                logger.debug("tracker_resume_skipped", pool_id=pool.id, reason="no_token_mint")
                continue
            if pool.id in self._trackers:
                continue
            await self.start_tracking(pool.id, pool.token_mint)
            resumed += 1

        logger.info("trackers_resumed", count=resumed, candidates=len(pools))
        return resumed

    async def _poll_loop(self, pool_id: int, token_mint: str) -> None:
        # The initial tick already ran in start_tracking
        delay = self.poll_interval
        while True:
            await asyncio.sleep(delay)
            if pool_id not in self._trackers:
                return
            started = self.clock()
            await self._tick(pool_id, token_mint)
            delay = max(0.0, self.poll_interval - (self.clock() - started))

    async def _tick(self, pool_id: int, token_mint: str) -> Optional[float]:
        """Fetch, persist and broadcast one price. Failures are logged and absorbed."""
        try:
            price = await self.cache.get_or_fetch(token_mint, self.price_client.fetch_token_price_usd)
        except Exception as e:
            logger.warning("price_fetch_failed", pool_id=pool_id, mint=token_mint, error=str(e))
            return None

        if price is None:
            return None

        try:
            await self.storage.update_pool_price(pool_id, price)
        except Exception as e:
            logger.error("price_persist_failed", pool_id=pool_id, error=str(e))
            return price

        try:
            self.broadcaster.broadcast_price_update(pool_id, price)
        except Exception as e:
            logger.error("price_broadcast_failed", pool_id=pool_id, error=str(e))

        logger.debug("price_updated", pool_id=pool_id, price=price)
        return price

    async def _cancel(self, tracker: PoolTracker) -> None:
        task = tracker.task
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
