"""Solana JSON-RPC client: HTTP lookups plus the live log subscription."""
import itertools
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import structlog

from ledger_mirror.api.solana_ws import LogStream
from ledger_mirror.errors import LedgerError
from ledger_mirror.models import LogBatch, ParsedTransaction, SignatureInfo

logger = structlog.get_logger()

LogCallback = Callable[[LogBatch], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[Exception], Any]


class SolanaRpcClient:
    """Read-only client for a Solana RPC node."""

    def __init__(
        self,
        rpc_url: str,
        ws_url: Optional[str] = None,
        timeout: float = 30.0,
        commitment: str = "confirmed",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self.ws_url = ws_url
        self.timeout = timeout
        self.commitment = commitment
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)
        self._handles = itertools.count(1)
        self._streams: dict[int, LogStream] = {}

    async def __aenter__(self):
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        for handle in list(self._streams):
            await self.remove_logs_listener(handle)
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    async def _call(self, method: str, params: Union[list, dict]) -> Any:
        """Issue one JSON-RPC request and return its ``result``."""
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self.client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise LedgerError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise LedgerError(f"{method} returned invalid JSON: {e}") from e

        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            raise LedgerError(f"{method} error: {error.get('message')}", code=error.get("code"))
        return data.get("result") if isinstance(data, dict) else None

    async def get_latest_blockhash(self) -> str:
        """Cheap call used as a connectivity check."""
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        return ((result or {}).get("value") or {}).get("blockhash", "")

    async def get_signatures_for_address(self, address: str, limit: int = 100) -> list[SignatureInfo]:
        """Most recent signatures touching ``address``, newest first."""
        result = await self._call(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": self.commitment}],
        )
        return [
            SignatureInfo(
                signature=item["signature"],
                slot=item.get("slot", 0),
                block_time=item.get("blockTime"),
                err=item.get("err"),
            )
            for item in result or []
            if item.get("signature")
        ]

    async def get_parsed_transaction(self, signature: str) -> Optional[ParsedTransaction]:
        result = await self._call(
            "getTransaction",
            [signature, {
                "encoding": "jsonParsed",
                "commitment": self.commitment,
                "maxSupportedTransactionVersion": 0,
            }],
        )
        if not result:
            return None
        return self._parse_transaction(signature, result)

    async def get_transaction_logs(self, signature: str) -> list[str]:
        """Log messages of a transaction, empty if unavailable."""
        result = await self._call(
            "getTransaction",
            [signature, {
                "encoding": "json",
                "commitment": self.commitment,
                "maxSupportedTransactionVersion": 0,
            }],
        )
        meta = (result or {}).get("meta") or {}
        return list(meta.get("logMessages") or [])

    async def get_asset(self, asset_id: str) -> Optional[dict]:
        """DAS ``getAsset`` lookup (Helius-compatible nodes only)."""
        return await self._call("getAsset", {"id": asset_id})

    async def on_logs(
        self,
        program_id: str,
        callback: LogCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> int:
        """Start streaming logs that mention ``program_id``. Returns a handle."""
        if not self.ws_url:
            raise LedgerError("No websocket endpoint configured for log subscriptions")

        handle = next(self._handles)
        stream = LogStream(self.ws_url, program_id, callback, on_error, commitment=self.commitment)
        stream.start()
        self._streams[handle] = stream
        logger.info("logs_listener_added", handle=handle, program=program_id)
        return handle

    async def remove_logs_listener(self, handle: int) -> None:
        stream = self._streams.pop(handle, None)
        if stream is None:
            return
        await stream.close()
        logger.info("logs_listener_removed", handle=handle)

    def _parse_transaction(self, signature: str, item: dict) -> ParsedTransaction:
        """Parse the fields the mirror needs from a jsonParsed transaction."""
        message = (item.get("transaction") or {}).get("message") or {}
        meta = item.get("meta") or {}

        account_keys = []
        for key in message.get("accountKeys") or []:
            pubkey = key.get("pubkey") if isinstance(key, dict) else key
            if pubkey:
                account_keys.append(str(pubkey))

        # Programs invoked through address lookup tables only show up here
        loaded = meta.get("loadedAddresses") or {}
        account_keys.extend(loaded.get("writable") or [])
        account_keys.extend(loaded.get("readonly") or [])

        mints = []
        for balance in meta.get("postTokenBalances") or []:
            mint = balance.get("mint")
            if mint and mint not in mints:
                mints.append(mint)

        return ParsedTransaction(
            signature=signature,
            slot=item.get("slot", 0),
            block_time=item.get("blockTime"),
            account_keys=account_keys,
            post_token_mints=mints,
            log_messages=list(meta.get("logMessages") or []),
        )
