"""Data models for the ledger mirror."""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


class ActionType(str, Enum):
    """Action carried by a PoolActivityEvent."""
    CREATED = "created"
    JOINED = "joined"
    DONATED = "donated"
    CLOSED = "closed"
    ENDED = "ended"
    CANCELLED = "cancelled"
    RANDOMNESS_COMMITTED = "randomness_committed"
    RANDOMNESS_MOCK_COMMITTED = "randomness_mock_committed"
    REACHED_MAX = "reached_max"
    UNLOCKED = "unlocked"
    ADMIN_CLOSED = "admin_closed"
    EMERGENCY_REVEAL = "emergency_reveal"
    EXPIRED = "expired"
    # Wire key not known to this build
    UNKNOWN = "unknown"


class HintType(str, Enum):
    """Hint carried by a UIHintEvent."""
    REACHED_MAX = "reached_max"
    NEAR_EXPIRE = "near_expire"
    UNLOCKED = "unlocked"
    UNKNOWN = "unknown"


class PoolStatus(str, Enum):
    """On-chain lifecycle state of a pool."""
    OPEN = "open"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    RANDOMNESS_COMMITTED = "randomness_committed"
    RANDOMNESS_REVEALED = "randomness_revealed"
    WINNER_SELECTED = "winner_selected"
    ENDED = "ended"
    CANCELLED = "cancelled"
    CLOSED = "closed"
    UNKNOWN = "unknown"

    @property
    def is_price_tracked(self) -> bool:
        """Pools are priced only while they can still take deposits."""
        return self in (PoolStatus.OPEN, PoolStatus.LOCKED)

    @property
    def is_terminal(self) -> bool:
        return self in (PoolStatus.ENDED, PoolStatus.CANCELLED, PoolStatus.CLOSED)


class TokenCategory(str, Enum):
    """Lifecycle stage assigned to a discovered token."""
    NEW_PAIRS = "new_pairs"
    FINAL_STRETCH = "final_stretch"
    MIGRATED = "migrated"


# ============================================================================
# Domain events
# ============================================================================

@dataclass(frozen=True)
class PoolActivityEvent:
    """Someone created, joined, donated to or otherwise acted on a pool."""
    pool: str
    user: str
    action: ActionType
    amount: int
    timestamp: int
    participant_count: int
    kind: str = field(default="PoolActivityEvent", init=False)


@dataclass(frozen=True)
class PoolStateEvent:
    """A pool moved between lifecycle states."""
    pool: str
    old_status: PoolStatus
    new_status: PoolStatus
    timestamp: int
    reason: int
    kind: str = field(default="PoolStateEvent", init=False)


@dataclass(frozen=True)
class WinnerSelectedEvent:
    pool: str
    winner: str
    total_amount: int
    participant_count: int
    randomness: int
    timestamp: int
    kind: str = field(default="WinnerSelectedEvent", init=False)


@dataclass(frozen=True)
class RefundClaimedEvent:
    pool: str
    user: str
    amount: int
    burn_amount: int
    timestamp: int
    kind: str = field(default="RefundClaimedEvent", init=False)


@dataclass(frozen=True)
class ForfeitedToTreasuryEvent:
    """Pool funds swept to the treasury. Only pool and amount are on the wire."""
    pool: str
    amount: int
    treasury: Optional[str] = None
    timestamp: int = 0
    reason: str = ""
    kind: str = field(default="ForfeitedToTreasuryEvent", init=False)


@dataclass(frozen=True)
class RefundBurnedEvent:
    """Burned share of a refund. The program does not emit the pool or a timestamp."""
    user: str
    amount: int
    reason: int = 0
    pool: str = ""
    timestamp: int = 0
    kind: str = field(default="RefundBurnedEvent", init=False)


@dataclass(frozen=True)
class RentClaimedEvent:
    pool: str
    claimed_by: str
    amount: int
    timestamp: int
    kind: str = field(default="RentClaimedEvent", init=False)


@dataclass(frozen=True)
class UIHintEvent:
    pool: str
    hint_type: HintType
    timestamp: int
    data: int
    kind: str = field(default="UIHintEvent", init=False)


DomainEvent = Union[
    PoolActivityEvent,
    PoolStateEvent,
    WinnerSelectedEvent,
    RefundClaimedEvent,
    ForfeitedToTreasuryEvent,
    RefundBurnedEvent,
    RentClaimedEvent,
    UIHintEvent,
]


@dataclass
class RawEventRecord:
    """Event decoded from a log line but not yet typed."""
    name: str
    data: dict[str, Any]


# ============================================================================
# Ledger wire types
# ============================================================================

@dataclass
class SignatureInfo:
    """One entry of getSignaturesForAddress."""
    signature: str
    slot: int
    block_time: Optional[int] = None
    err: Optional[Any] = None


@dataclass
class ParsedTransaction:
    """The parts of a parsed transaction the mirror looks at."""
    signature: str
    slot: int
    block_time: Optional[int]
    account_keys: list[str]
    post_token_mints: list[str]
    log_messages: list[str]


@dataclass
class TokenMetadata:
    """Best-effort metadata for a mint."""
    name: str
    symbol: str
    decimals: int
    logo_url: Optional[str] = None
    supply: Optional[str] = None

    @classmethod
    def placeholder(cls, mint: str, decimals: int = 9) -> "TokenMetadata":
        """Deterministic stand-in used when no metadata is available."""
        return cls(name="Unknown Token", symbol=mint[:6].upper(), decimals=decimals)


# ============================================================================
# Token discovery
# ============================================================================

@dataclass
class MintActivitySample:
    """Activity for one mint seen during a single discovery pass."""
    mint: str
    first_seen_slot: int
    first_seen_time: int
    tx_count: int = 0
    has_dex_interaction: bool = False
    has_liquidity_pool: bool = False


@dataclass
class DiscoveredToken:
    """A fungible-token mint observed on the ledger."""
    mint: str
    name: str
    symbol: str
    decimals: int
    category: TokenCategory
    detected_at: float
    age_seconds: int = 0
    logo_url: Optional[str] = None
    supply: Optional[str] = None
    block_time: Optional[int] = None
    slot: Optional[int] = None
    recent_activity: int = 0
    has_dex_interaction: bool = False
    has_liquidity_pool: bool = False
    last_seen_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "mint": self.mint,
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "logoUrl": self.logo_url,
            "category": self.category.value,
            "detectedAt": int(self.detected_at * 1000),
            "ageSeconds": self.age_seconds,
            "blockTime": self.block_time,
            "slot": self.slot,
            "supply": self.supply,
            "recentActivity": self.recent_activity,
            "hasDexInteraction": self.has_dex_interaction,
            "hasLiquidityPool": self.has_liquidity_pool,
        }


# ============================================================================
# Price tracking
# ============================================================================

@dataclass
class PriceCacheEntry:
    price: float
    fetched_at: float


@dataclass
class PoolTracker:
    """Bookkeeping for one actively priced pool."""
    pool_id: int
    token_mint: str
    started_at: float
    task: Optional[asyncio.Task] = None


@dataclass
class TrackedPool:
    """Pool row that should currently be priced."""
    id: int
    token_mint: Optional[str]
    pool_address: Optional[str] = None
    status: PoolStatus = PoolStatus.OPEN


@dataclass
class LogBatch:
    """One logsNotification from the live subscription."""
    signature: str
    logs: list[str]
    slot: Optional[int] = None
    err: Optional[Any] = None
