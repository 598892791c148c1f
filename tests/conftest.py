import asyncio
import base64
import struct
from typing import Optional

import base58
import pytest

from ledger_mirror.errors import LedgerError, PriceFetchError
from ledger_mirror.events.codec import EVENT_DISCRIMINATORS, EVENT_LAYOUTS
from ledger_mirror.models import LogBatch, ParsedTransaction, SignatureInfo, TokenMetadata, TrackedPool

PROGRAM_ID = "CU2sowQaHdVcJUgEfgYvaPKj4AVb6i58oAytLnNE5y1L"
OTHER_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


def make_pubkey(seed: int) -> str:
    return base58.b58encode(bytes([seed]) * 32).decode("ascii")


def encode_event(name: str, **values) -> str:
    """Borsh-encode an event the way the program emits it, as base64."""
    out = bytearray(EVENT_DISCRIMINATORS[name])
    for field_name, kind in EVENT_LAYOUTS[name]:
        value = values[field_name]
        if isinstance(kind, list):
            out += struct.pack("<B", value if isinstance(value, int) else kind.index(value))
        elif kind == "pubkey":
            out += base58.b58decode(value)
        elif kind == "u8":
            out += struct.pack("<B", value)
        elif kind == "u16":
            out += struct.pack("<H", value)
        elif kind == "u64":
            out += struct.pack("<Q", value)
        elif kind == "i64":
            out += struct.pack("<q", value)
        elif kind == "u128":
            out += struct.pack("<QQ", value & (2**64 - 1), value >> 64)
        elif kind == "string":
            raw = value.encode("utf-8")
            out += struct.pack("<I", len(raw)) + raw
    return base64.b64encode(bytes(out)).decode("ascii")


def program_logs(*payloads: str, program_id: str = PROGRAM_ID) -> list[str]:
    """Log lines of one top-level instruction that emits ``payloads``."""
    return [
        f"Program {program_id} invoke [1]",
        "Program log: Instruction: JoinPool",
        *[f"Program data: {payload}" for payload in payloads],
        f"Program {program_id} consumed 41230 of 200000 compute units",
        f"Program {program_id} success",
    ]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLedger:
    """In-memory stand-in for SolanaRpcClient."""

    def __init__(self):
        self.signatures: dict[str, list[SignatureInfo]] = {}
        self.transactions: dict[str, ParsedTransaction] = {}
        self.logs: dict[str, list[str]] = {}
        self.failing: set[str] = set()
        self.fail_health = False
        self.fail_signatures = False
        self.fail_subscribe = False
        self.health_gate: Optional[asyncio.Event] = None
        self.listeners: dict[int, object] = {}
        self.calls: list[str] = []
        self._next_handle = 0

    async def get_latest_blockhash(self) -> str:
        self.calls.append("getLatestBlockhash")
        if self.health_gate is not None:
            await self.health_gate.wait()
        if self.fail_health:
            raise LedgerError("connection refused")
        return "blockhash"

    async def get_signatures_for_address(self, address: str, limit: int = 100) -> list[SignatureInfo]:
        self.calls.append("getSignaturesForAddress")
        if self.fail_signatures:
            raise LedgerError("signatures unavailable")
        return self.signatures.get(address, [])[:limit]

    async def get_parsed_transaction(self, signature: str) -> Optional[ParsedTransaction]:
        self.calls.append("getTransaction")
        if signature in self.failing:
            raise LedgerError("transaction unavailable")
        return self.transactions.get(signature)

    async def get_transaction_logs(self, signature: str) -> list[str]:
        if signature in self.failing:
            raise LedgerError("transaction unavailable")
        return self.logs.get(signature, [])

    async def on_logs(self, program_id, callback, on_error=None) -> int:
        self.calls.append("onLogs")
        if self.fail_subscribe:
            raise LedgerError("websocket refused")
        self._next_handle += 1
        self.listeners[self._next_handle] = callback
        return self._next_handle

    async def remove_logs_listener(self, handle: int) -> None:
        self.listeners.pop(handle, None)

    async def emit(self, signature: str, logs: list[str]) -> None:
        for callback in list(self.listeners.values()):
            await callback(LogBatch(signature=signature, logs=logs))


class FakeMetadata:
    def __init__(self):
        self.known: dict[str, TokenMetadata] = {}
        self.fail = False
        self.calls: list[str] = []
        self.gates: dict[str, asyncio.Event] = {}

    async def fetch_metadata(self, mint: str) -> Optional[TokenMetadata]:
        self.calls.append(mint)
        if mint in self.gates:
            await self.gates[mint].wait()
        if self.fail:
            raise LedgerError("das unavailable")
        return self.known.get(mint)


class FakePriceClient:
    def __init__(self):
        self.prices: dict[str, float] = {}
        self.calls: list[str] = []
        self.fail = False
        self.gate: Optional[asyncio.Event] = None

    async def fetch_token_price_usd(self, mint: str) -> Optional[float]:
        self.calls.append(mint)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise PriceFetchError("all sources down")
        return self.prices.get(mint)


class FakeStorage:
    def __init__(self):
        self.price_updates: list[tuple[int, float]] = []
        self.active_pools: list[TrackedPool] = []

    async def update_pool_price(self, pool_id: int, price: float) -> None:
        self.price_updates.append((pool_id, price))

    async def get_active_pools_for_price_tracking(self) -> list[TrackedPool]:
        return list(self.active_pools)


class FakeBroadcaster:
    def __init__(self):
        self.price_updates: list[tuple[int, float]] = []

    def broadcast_price_update(self, pool_id: int, price: float) -> None:
        self.price_updates.append((pool_id, price))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def metadata():
    return FakeMetadata()


@pytest.fixture
def prices():
    return FakePriceClient()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def broadcaster():
    return FakeBroadcaster()
