"""Discovery of newly active token mints from recent ledger activity."""
import asyncio
import dataclasses
import re
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Callable, Optional

import structlog

from ledger_mirror.api.metadata import MetadataClient
from ledger_mirror.api.solana_rpc import SolanaRpcClient
from ledger_mirror.discovery.classifier import TokenClassifier
from ledger_mirror.models import (
    DiscoveredToken,
    MintActivitySample,
    ParsedTransaction,
    SignatureInfo,
    TokenCategory,
    TokenMetadata,
)

logger = structlog.get_logger()

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
MINT_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

DEFAULT_DEX_PROGRAMS = [
    "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8",
    "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK",
    "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo",
    "Eo7WjKq67rjJQSZxS6z3YkapzY3eMj6Xy8X5EQVn5UaB",
    "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4",
    "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",
    "9W959DqEETiGZocYWCQPaJ6sBmUzgfxXfqGeTEdp3aQP",
    "srmqPvymJeFKQ4zGQed1GFppgkRHL9kaELCbyksJtPX",
]
DEFAULT_LIQUIDITY_POOL_PROGRAMS = [
    "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8",
    "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo",
    "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",
]


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


class SingleFlight:
    """Admits one refresh at a time; latecomers are turned away, not queued."""

    def __init__(self):
        self.state = RefreshState.IDLE

    @property
    def busy(self) -> bool:
        return self.state is RefreshState.REFRESHING

    @asynccontextmanager
    async def attempt(self) -> AsyncIterator[bool]:
        # Check and set happen without an await in between, so this is atomic on the loop
        if self.state is RefreshState.REFRESHING:
            yield False
            return

        self.state = RefreshState.REFRESHING
        try:
            yield True
        finally:
            self.state = RefreshState.IDLE


class TokenDiscoveryService:
    """Keeps an in-memory, periodically refreshed index of active mints."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        metadata: MetadataClient,
        config: dict,
        classifier: Optional[TokenClassifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.rpc = rpc
        self.metadata = metadata
        self.classifier = classifier or TokenClassifier(config)
        self.clock = clock

        discovery = config.get("discovery", {})
        self.scan_program = discovery.get("scan_program", TOKEN_PROGRAM_ID)
        self.scan_window = discovery.get("scan_window", 50)
        self.tx_window = discovery.get("tx_window", 20)
        self.batch_size = max(1, discovery.get("batch_size", 5))
        self.top_k = discovery.get("top_k", 30)
        self.cache_ttl = discovery.get("cache_ttl_seconds", 15)
        self.refresh_interval = discovery.get("refresh_interval_seconds", 10)
        self.max_tokens = discovery.get("max_tokens", 0)
        self.dex_programs = set(discovery.get("dex_programs", DEFAULT_DEX_PROGRAMS))
        self.liquidity_pool_programs = set(
            discovery.get("liquidity_pool_programs", DEFAULT_LIQUIDITY_POOL_PROGRAMS)
        )

        self._tokens: dict[str, DiscoveredToken] = {}
        self._last_refresh = 0.0
        self._guard = SingleFlight()
        self._refresh_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_tokens(self) -> list[DiscoveredToken]:
        """Cached tokens, refreshing first when the cache is empty or stale."""
        if not self._tokens or self.clock() - self._last_refresh > self.cache_ttl:
            await self.refresh()
        return self.get_tokens_sync()

    def get_tokens_sync(self) -> list[DiscoveredToken]:
        """Cached tokens with ages recomputed; never touches the ledger."""
        now = self.clock()
        return [self._snapshot(token, now) for token in self._tokens.values()]

    async def search_token(self, mint: str) -> Optional[DiscoveredToken]:
        """Look up one mint, from the cache if known, otherwise from metadata."""
        if not MINT_ADDRESS_RE.match(mint or ""):
            return None

        now = self.clock()
        if mint in self._tokens:
            return self._snapshot(self._tokens[mint], now)

        metadata = await self._fetch_metadata(mint)
        return DiscoveredToken(
            mint=mint,
            name=metadata.name,
            symbol=metadata.symbol,
            decimals=metadata.decimals,
            logo_url=metadata.logo_url,
            supply=metadata.supply,
            category=TokenCategory.NEW_PAIRS,
            detected_at=now,
            age_seconds=0,
            last_seen_at=now,
        )

    def get_last_refresh_time(self) -> float:
        return self._last_refresh

    def get_cache_stats(self) -> dict:
        return {
            "token_count": len(self._tokens),
            "last_refresh": self._last_refresh,
            "is_refreshing": self._guard.busy,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_background_refresh(self, interval_seconds: Optional[float] = None) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            logger.warning("discovery_refresh_already_running")
            return

        interval = interval_seconds or self.refresh_interval
        logger.info("discovery_background_refresh_started", interval=interval)
        self._refresh_task = asyncio.create_task(self._refresh_loop(interval), name="token-discovery")

    async def stop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("discovery_background_refresh_stopped")

    async def _refresh_loop(self, interval: float) -> None:
        while True:
            try:
                await self.refresh()
            except Exception as e:
                logger.error("discovery_refresh_loop_error", error=str(e))
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Discovery pass
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        """Run one discovery pass. Returns False if skipped or aborted."""
        async with self._guard.attempt() as acquired:
            if not acquired:
                logger.debug("discovery_refresh_in_progress")
                return False

            logger.info("discovery_refresh_start")
            try:
                await self._discovery_pass()
            except Exception as e:
                logger.error("discovery_refresh_failed", error=str(e))
                return False

            logger.info("discovery_refresh_complete", total_tokens=len(self._tokens))
            return True

    async def _discovery_pass(self) -> None:
        # 1. Connectivity check; failures abort the whole pass
        await self.rpc.get_latest_blockhash()

        # 2. Recent signatures for the scanned program
        signatures = await self.rpc.get_signatures_for_address(self.scan_program, limit=self.scan_window)

        # 3. Parsed transactions for the newest sub-window, in small batches
        samples: dict[str, MintActivitySample] = {}
        window = signatures[:self.tx_window]
        for i in range(0, len(window), self.batch_size):
            batch = window[i:i + self.batch_size]
            transactions = await asyncio.gather(*(self._fetch_transaction(sig) for sig in batch))
            for sig, tx in zip(batch, transactions):
                if tx is not None:
                    self._observe(sig, tx, samples)

        # 4. Most active mints first
        ranked = sorted(samples.values(), key=lambda s: s.tx_count, reverse=True)[:self.top_k]

        # 5. Metadata for mints not cached yet
        new_mints = [s.mint for s in ranked if s.mint not in self._tokens]
        metadata: dict[str, TokenMetadata] = {}
        for i in range(0, len(new_mints), self.batch_size):
            batch = new_mints[i:i + self.batch_size]
            results = await asyncio.gather(*(self._fetch_metadata(mint) for mint in batch))
            metadata.update(zip(batch, results))

        # 6. Apply the whole pass synchronously; readers see the old cache or the new one
        now = self.clock()
        for sample in ranked:
            if sample.mint in self._tokens:
                self._merge(self._tokens[sample.mint], sample, now)
            else:
                self._tokens[sample.mint] = self._create(sample, metadata[sample.mint], now)

        self._evict()
        self._last_refresh = now

    async def _fetch_transaction(self, sig: SignatureInfo) -> Optional[ParsedTransaction]:
        try:
            return await self.rpc.get_parsed_transaction(sig.signature)
        except Exception as e:
            logger.debug("discovery_transaction_skipped", signature=sig.signature, error=str(e))
            return None

    def _observe(self, sig: SignatureInfo, tx: ParsedTransaction, samples: dict[str, MintActivitySample]) -> None:
        """Fold one transaction into the per-pass mint samples."""
        keys = set(tx.account_keys)
        has_liquidity_pool = bool(keys & self.liquidity_pool_programs)
        has_dex_interaction = has_liquidity_pool or bool(keys & self.dex_programs)

        slot = sig.slot or tx.slot
        seen_at = sig.block_time or tx.block_time or int(self.clock())

        for mint in dict.fromkeys(tx.post_token_mints):
            sample = samples.get(mint)
            if sample is None:
                sample = MintActivitySample(mint=mint, first_seen_slot=slot, first_seen_time=seen_at)
                samples[mint] = sample
            elif slot < sample.first_seen_slot:
                sample.first_seen_slot = slot
                sample.first_seen_time = seen_at

            sample.tx_count += 1
            sample.has_dex_interaction = sample.has_dex_interaction or has_dex_interaction
            sample.has_liquidity_pool = sample.has_liquidity_pool or has_liquidity_pool

    def _merge(self, token: DiscoveredToken, sample: MintActivitySample, now: float) -> None:
        token.recent_activity = sample.tx_count
        token.has_dex_interaction = token.has_dex_interaction or sample.has_dex_interaction
        token.has_liquidity_pool = token.has_liquidity_pool or sample.has_liquidity_pool
        if token.slot is None or sample.first_seen_slot < token.slot:
            token.slot = sample.first_seen_slot
            token.block_time = sample.first_seen_time
            token.detected_at = min(token.detected_at, float(sample.first_seen_time))
        token.last_seen_at = now
        token.age_seconds = int(now - token.detected_at)
        token.category = self.classifier.classify_token(token, now)

    def _create(self, sample: MintActivitySample, metadata: TokenMetadata, now: float) -> DiscoveredToken:
        token = DiscoveredToken(
            mint=sample.mint,
            name=metadata.name,
            symbol=metadata.symbol,
            decimals=metadata.decimals,
            logo_url=metadata.logo_url,
            supply=metadata.supply,
            category=TokenCategory.NEW_PAIRS,
            detected_at=float(sample.first_seen_time),
            age_seconds=int(now - sample.first_seen_time),
            block_time=sample.first_seen_time,
            slot=sample.first_seen_slot,
            recent_activity=sample.tx_count,
            has_dex_interaction=sample.has_dex_interaction,
            has_liquidity_pool=sample.has_liquidity_pool,
            last_seen_at=now,
        )
        token.category = self.classifier.classify_token(token, now)
        logger.debug("token_discovered", mint=token.mint, category=token.category.value)
        return token

    async def _fetch_metadata(self, mint: str) -> TokenMetadata:
        try:
            metadata = await self.metadata.fetch_metadata(mint)
        except Exception as e:
            logger.warning("metadata_unavailable", mint=mint, error=str(e))
            metadata = None
        return metadata or TokenMetadata.placeholder(mint)

    def _evict(self) -> None:
        """Drop the least recently seen tokens beyond ``max_tokens``."""
        if not self.max_tokens or len(self._tokens) <= self.max_tokens:
            return
        by_last_seen = sorted(self._tokens.values(), key=lambda t: t.last_seen_at)
        for token in by_last_seen[:len(self._tokens) - self.max_tokens]:
            del self._tokens[token.mint]

    @staticmethod
    def _snapshot(token: DiscoveredToken, now: float) -> DiscoveredToken:
        return dataclasses.replace(token, age_seconds=int(now - token.detected_at))
