"""Token metadata lookups through the DAS ``getAsset`` method."""
from typing import Optional

import structlog

from ledger_mirror.api.solana_rpc import SolanaRpcClient
from ledger_mirror.errors import LedgerError
from ledger_mirror.models import TokenMetadata

logger = structlog.get_logger()

DEFAULT_DECIMALS = 9


class MetadataClient:
    """Best-effort metadata for mints. Never raises; returns None instead."""

    def __init__(self, rpc: SolanaRpcClient):
        self.rpc = rpc

    async def fetch_metadata(self, mint: str) -> Optional[TokenMetadata]:
        try:
            asset = await self.rpc.get_asset(mint)
        except LedgerError as e:
            logger.debug("metadata_fetch_failed", mint=mint, error=str(e))
            return None

        content = (asset or {}).get("content") or {}
        meta = content.get("metadata")
        if not meta:
            return None

        files = content.get("files") or []
        logo_url = None
        if files:
            logo_url = files[0].get("cdn_uri") or files[0].get("uri")

        token_info = asset.get("token_info") or {}
        supply = token_info.get("supply")

        return TokenMetadata(
            name=meta.get("name") or "Unknown Token",
            symbol=meta.get("symbol") or mint[:6].upper(),
            decimals=token_info.get("decimals") or DEFAULT_DECIMALS,
            logo_url=logo_url,
            supply=str(supply) if supply is not None else None,
        )
