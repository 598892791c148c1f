"""USD price lookups for SPL tokens with source fallback."""
import os
from typing import Optional

import httpx
import structlog

from ledger_mirror.errors import PriceFetchError

logger = structlog.get_logger()

# API Base URLs
DEXSCREENER_API_URL = "https://api.dexscreener.com/latest/dex/tokens"
JUPITER_API_URL = "https://api.jup.ag/price/v2"
BIRDEYE_API_URL = "https://public-api.birdeye.so/defi/price"


class PriceClient:
    """Fetches a token's USD price, trying several public sources in turn."""

    def __init__(
        self,
        timeout: float = 10.0,
        helius_url: Optional[str] = None,
        birdeye_api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.helius_url = helius_url or os.getenv("HELIUS_RPC_URL")
        self.birdeye_api_key = birdeye_api_key or os.getenv("BIRDEYE_API_KEY")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    async def fetch_token_price_usd(self, mint: str) -> Optional[float]:
        """Return the first positive price any source reports.

        Returns None when the sources answered but none had a price, and
        raises PriceFetchError when every source failed to answer at all.
        """
        # Pump-style mints are priced more accurately by DexScreener
        if "pump" in mint.lower():
            sources = [self._from_dexscreener, self._from_jupiter]
        else:
            sources = [self._from_jupiter, self._from_dexscreener]
        if self.helius_url:
            sources.append(self._from_helius)
        if self.birdeye_api_key:
            sources.append(self._from_birdeye)

        failures = 0
        for source in sources:
            try:
                price = await source(mint)
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
                failures += 1
                logger.debug("price_source_failed", source=source.__name__, mint=mint, error=str(e))
                continue
            if price and price > 0:
                logger.debug("price_fetched", source=source.__name__, mint=mint, price=price)
                return price

        if failures == len(sources):
            raise PriceFetchError(f"all {failures} price sources failed for {mint}")

        logger.warning("price_not_found", mint=mint)
        return None

    async def _from_dexscreener(self, mint: str) -> Optional[float]:
        response = await self.client.get(f"{DEXSCREENER_API_URL}/{mint}")
        response.raise_for_status()
        pairs = response.json().get("pairs") or []
        if not pairs:
            return None

        best = max(pairs, key=lambda p: (p.get("liquidity") or {}).get("usd") or 0)
        price = best.get("priceUsd")
        return float(price) if price else None

    async def _from_jupiter(self, mint: str) -> Optional[float]:
        response = await self.client.get(JUPITER_API_URL, params={"ids": mint})
        response.raise_for_status()
        entry = (response.json().get("data") or {}).get(mint) or {}
        price = entry.get("price")
        return float(price) if price else None

    async def _from_helius(self, mint: str) -> Optional[float]:
        response = await self.client.post(self.helius_url, json={
            "jsonrpc": "2.0",
            "id": "price-fetch",
            "method": "getAsset",
            "params": {"id": mint},
        })
        response.raise_for_status()
        result = response.json().get("result") or {}
        price = ((result.get("token_info") or {}).get("price_info") or {}).get("price_per_token")
        return float(price) if price else None

    async def _from_birdeye(self, mint: str) -> Optional[float]:
        response = await self.client.get(
            BIRDEYE_API_URL,
            params={"address": mint},
            headers={"X-API-KEY": self.birdeye_api_key},
        )
        response.raise_for_status()
        price = (response.json().get("data") or {}).get("value")
        return float(price) if price else None
