"""Short-lived price cache shared by every tracker."""
import time
from typing import Awaitable, Callable, Optional

import structlog

from ledger_mirror.errors import PriceFetchError
from ledger_mirror.models import PriceCacheEntry

logger = structlog.get_logger()


class PriceCache:
    """Per-mint TTL cache. Stale values are served only when a live fetch raises."""

    def __init__(self, ttl_seconds: float = 2.5, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self.clock = clock
        self._entries: dict[str, PriceCacheEntry] = {}

    def get_fresh(self, mint: str) -> Optional[float]:
        entry = self._entries.get(mint)
        if entry is not None and self.clock() - entry.fetched_at < self.ttl:
            return entry.price
        return None

    async def get_or_fetch(self, mint: str, fetch: Callable[[str], Awaitable[Optional[float]]]) -> Optional[float]:
        fresh = self.get_fresh(mint)
        if fresh is not None:
            return fresh

        try:
            price = await fetch(mint)
        except PriceFetchError as e:
            entry = self._entries.get(mint)
            if entry is None:
                raise
            # Timestamp left as is so the next call retries upstream
            logger.warning("price_cache_stale_fallback", mint=mint, price=entry.price, error=str(e))
            return entry.price

        if price is not None:
            self._entries[mint] = PriceCacheEntry(price=price, fetched_at=self.clock())
        return price

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
