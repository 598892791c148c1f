"""Translation of raw event records into typed domain events."""
from typing import Any, Callable, Optional

import structlog

from ledger_mirror.errors import EventDecodeError
from ledger_mirror.models import (
    ActionType,
    DomainEvent,
    ForfeitedToTreasuryEvent,
    HintType,
    PoolActivityEvent,
    PoolStateEvent,
    PoolStatus,
    RawEventRecord,
    RefundBurnedEvent,
    RefundClaimedEvent,
    RentClaimedEvent,
    UIHintEvent,
    WinnerSelectedEvent,
)

logger = structlog.get_logger()

ACTION_TYPES: dict[str, ActionType] = {
    "created": ActionType.CREATED,
    "joined": ActionType.JOINED,
    "donated": ActionType.DONATED,
    "closed": ActionType.CLOSED,
    "ended": ActionType.ENDED,
    "cancelled": ActionType.CANCELLED,
    "randomnessCommitted": ActionType.RANDOMNESS_COMMITTED,
    "randomnessMockCommitted": ActionType.RANDOMNESS_MOCK_COMMITTED,
    "reachedMax": ActionType.REACHED_MAX,
    "unlocked": ActionType.UNLOCKED,
    "adminClosed": ActionType.ADMIN_CLOSED,
    "emergencyReveal": ActionType.EMERGENCY_REVEAL,
    "expired": ActionType.EXPIRED,
}

HINT_TYPES: dict[str, HintType] = {
    "reachedMax": HintType.REACHED_MAX,
    "nearExpire": HintType.NEAR_EXPIRE,
    "unlocked": HintType.UNLOCKED,
}

POOL_STATUSES: dict[str, PoolStatus] = {
    "open": PoolStatus.OPEN,
    "locked": PoolStatus.LOCKED,
    "unlocked": PoolStatus.UNLOCKED,
    "randomnessCommitted": PoolStatus.RANDOMNESS_COMMITTED,
    "randomnessRevealed": PoolStatus.RANDOMNESS_REVEALED,
    "winnerSelected": PoolStatus.WINNER_SELECTED,
    "ended": PoolStatus.ENDED,
    "cancelled": PoolStatus.CANCELLED,
    "closed": PoolStatus.CLOSED,
}


def _variant_key(value: Any, label: str) -> str:
    """First key of an IDL enum value such as ``{"joined": {}}``."""
    if isinstance(value, str):
        return value
    if not isinstance(value, dict) or not value:
        raise EventDecodeError(f"invalid {label}: {value!r}")
    return next(iter(value))


def parse_action_type(value: Any) -> ActionType:
    return ACTION_TYPES.get(_variant_key(value, "action type"), ActionType.UNKNOWN)


def parse_hint_type(value: Any) -> HintType:
    return HINT_TYPES.get(_variant_key(value, "hint type"), HintType.UNKNOWN)


def parse_pool_status(value: Any) -> PoolStatus:
    return POOL_STATUSES.get(_variant_key(value, "pool status"), PoolStatus.UNKNOWN)


def _pool_activity(data: dict) -> PoolActivityEvent:
    return PoolActivityEvent(
        pool=str(data["pool"]),
        user=str(data["user"]),
        action=parse_action_type(data["action"]),
        amount=int(data["amount"]),
        timestamp=int(data["timestamp"]),
        participant_count=int(data["participant_count"]),
    )


def _pool_state(data: dict) -> PoolStateEvent:
    return PoolStateEvent(
        pool=str(data["pool"]),
        old_status=parse_pool_status(data["old_status"]),
        new_status=parse_pool_status(data["new_status"]),
        timestamp=int(data["timestamp"]),
        reason=int(data["reason"]),
    )


def _winner_selected(data: dict) -> WinnerSelectedEvent:
    return WinnerSelectedEvent(
        pool=str(data["pool"]),
        winner=str(data["winner"]),
        total_amount=int(data["total_amount"]),
        participant_count=int(data["participant_count"]),
        randomness=int(data["randomness"]),
        timestamp=int(data["timestamp"]),
    )


def _refund_claimed(data: dict) -> RefundClaimedEvent:
    return RefundClaimedEvent(
        pool=str(data["pool"]),
        user=str(data["user"]),
        amount=int(data["amount"]),
        burn_amount=int(data["burn_amount"]),
        timestamp=int(data["timestamp"]),
    )


def _forfeited_to_treasury(data: dict) -> ForfeitedToTreasuryEvent:
    return ForfeitedToTreasuryEvent(
        pool=str(data["pool"]),
        amount=int(data["amount"]),
        treasury=data.get("treasury"),
        timestamp=int(data.get("timestamp") or 0),
        reason=str(data.get("reason") or ""),
    )


def _refund_burned(data: dict) -> RefundBurnedEvent:
    return RefundBurnedEvent(
        user=str(data["user"]),
        amount=int(data["amount"]),
        reason=int(data.get("reason") or 0),
        pool=str(data.get("pool") or ""),
        timestamp=int(data.get("timestamp") or 0),
    )


def _rent_claimed(data: dict) -> RentClaimedEvent:
    return RentClaimedEvent(
        pool=str(data["pool"]),
        claimed_by=str(data["claimed_by"]),
        amount=int(data["amount"]),
        timestamp=int(data["timestamp"]),
    )


def _ui_hint(data: dict) -> UIHintEvent:
    return UIHintEvent(
        pool=str(data["pool"]),
        hint_type=parse_hint_type(data["hint_type"]),
        timestamp=int(data["timestamp"]),
        data=int(data.get("data") or 0),
    )


DECODERS: dict[str, Callable[[dict], DomainEvent]] = {
    "PoolActivityEvent": _pool_activity,
    "PoolStateEvent": _pool_state,
    "WinnerSelectedEvent": _winner_selected,
    "RefundClaimedEvent": _refund_claimed,
    "ForfeitedToTreasuryEvent": _forfeited_to_treasury,
    "RefundBurnedEvent": _refund_burned,
    "RentClaimedEvent": _rent_claimed,
    "UIHintEvent": _ui_hint,
}


def map_event(record: RawEventRecord) -> Optional[DomainEvent]:
    """Map a raw record to a typed event, or None if it cannot be mapped."""
    decoder = DECODERS.get(record.name)
    if decoder is None:
        logger.warning("unknown_event_type", event_name=record.name)
        return None

    try:
        return decoder(record.data)
    except (EventDecodeError, KeyError, TypeError, ValueError) as e:
        logger.error("event_mapping_failed", event_name=record.name, error=str(e))
        return None
