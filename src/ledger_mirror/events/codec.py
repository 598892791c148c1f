"""Decoding of program events out of transaction log messages.

Events are emitted by the program as ``Program data: <base64>`` log lines.
The payload starts with an 8-byte discriminator identifying the event,
followed by the Borsh-serialized event struct. Only lines emitted while the
watched program is the innermost running program are considered, so CPI
calls into other programs that happen to emit data are ignored.
"""
import base64
import binascii
import re
import struct
from typing import Any, Iterator, Optional

import base58
import structlog

from ledger_mirror.errors import EventDecodeError
from ledger_mirror.models import RawEventRecord

logger = structlog.get_logger()

PROGRAM_DATA_PREFIX = "Program data: "
_INVOKE_RE = re.compile(r"^Program (\w+) invoke \[\d+\]$")
_EXIT_RE = re.compile(r"^Program (\w+) (success|failed.*)$")

# Variant order is the Borsh ordinal; keys follow the IDL's camelCase naming.
ACTION_VARIANTS = [
    "created", "joined", "donated", "closed", "ended", "cancelled",
    "randomnessCommitted", "randomnessMockCommitted", "reachedMax",
    "unlocked", "adminClosed", "emergencyReveal", "expired",
]
HINT_VARIANTS = ["reachedMax", "nearExpire", "unlocked"]
POOL_STATUS_VARIANTS = [
    "open", "locked", "unlocked", "randomnessCommitted", "randomnessRevealed",
    "winnerSelected", "ended", "cancelled", "closed",
]

# Field layouts per event, in serialization order.
EVENT_LAYOUTS: dict[str, list[tuple[str, Any]]] = {
    "PoolActivityEvent": [
        ("pool", "pubkey"), ("user", "pubkey"), ("action", ACTION_VARIANTS),
        ("amount", "u64"), ("timestamp", "i64"), ("participant_count", "u16"),
    ],
    "PoolStateEvent": [
        ("pool", "pubkey"), ("old_status", POOL_STATUS_VARIANTS),
        ("new_status", POOL_STATUS_VARIANTS), ("timestamp", "i64"), ("reason", "u8"),
    ],
    "WinnerSelectedEvent": [
        ("pool", "pubkey"), ("winner", "pubkey"), ("total_amount", "u64"),
        ("participant_count", "u16"), ("randomness", "u128"), ("timestamp", "i64"),
    ],
    "RefundClaimedEvent": [
        ("pool", "pubkey"), ("user", "pubkey"), ("amount", "u64"),
        ("burn_amount", "u64"), ("timestamp", "i64"),
    ],
    # Program-side ForfeitedToTreasury and RefundBurned structs carry fewer fields than the client types
    "ForfeitedToTreasuryEvent": [
        ("pool", "pubkey"), ("amount", "u64"),
    ],
    "RefundBurnedEvent": [
        ("user", "pubkey"), ("amount", "u64"), ("reason", "u8"),
    ],
    "RentClaimedEvent": [
        ("pool", "pubkey"), ("claimed_by", "pubkey"), ("amount", "u64"), ("timestamp", "i64"),
    ],
    "UIHintEvent": [
        ("pool", "pubkey"), ("hint_type", HINT_VARIANTS), ("timestamp", "i64"), ("data", "u64"),
    ],
}

EVENT_DISCRIMINATORS: dict[str, bytes] = {
    "PoolActivityEvent": bytes([116, 221, 203, 110, 114, 139, 97, 124]),
    "PoolStateEvent": bytes([72, 169, 77, 67, 172, 217, 3, 115]),
    "WinnerSelectedEvent": bytes([7, 237, 192, 149, 90, 36, 98, 161]),
    "RefundClaimedEvent": bytes([77, 83, 172, 123, 235, 58, 154, 233]),
    "ForfeitedToTreasuryEvent": bytes([39, 110, 130, 240, 19, 62, 31, 116]),
    "RefundBurnedEvent": bytes([54, 180, 75, 149, 111, 26, 28, 217]),
    "RentClaimedEvent": bytes([33, 17, 4, 27, 161, 78, 74, 45]),
    "UIHintEvent": bytes([172, 74, 74, 147, 181, 223, 105, 15]),
}

_NAMES_BY_DISCRIMINATOR = {disc: name for name, disc in EVENT_DISCRIMINATORS.items()}

_SCALARS = {
    "u8": struct.Struct("<B"),
    "u16": struct.Struct("<H"),
    "u32": struct.Struct("<I"),
    "u64": struct.Struct("<Q"),
    "i64": struct.Struct("<q"),
}


class BorshReader:
    """Sequential little-endian reader over a Borsh payload."""

    def __init__(self, payload: bytes):
        self.payload = payload
        self.offset = 0

    def _take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self.payload):
            raise EventDecodeError(
                f"payload truncated: need {size} bytes at offset {self.offset}, have {len(self.payload)}"
            )
        chunk = self.payload[self.offset:end]
        self.offset = end
        return chunk

    def read(self, kind: Any) -> Any:
        if isinstance(kind, list):
            return self.read_enum(kind)
        if kind in _SCALARS:
            fmt = _SCALARS[kind]
            return fmt.unpack(self._take(fmt.size))[0]
        if kind == "u128":
            low, high = struct.unpack("<QQ", self._take(16))
            return (high << 64) | low
        if kind == "pubkey":
            return base58.b58encode(self._take(32)).decode("ascii")
        if kind == "string":
            length = self.read("u32")
            raw = self._take(length)
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise EventDecodeError(f"invalid utf-8 string: {e}") from e
        raise EventDecodeError(f"unsupported field type {kind!r}")

    def read_enum(self, variants: list[str]) -> dict:
        """Unit enum as the IDL presents it, e.g. ``{"joined": {}}``."""
        ordinal = self.read("u8")
        key = variants[ordinal] if ordinal < len(variants) else f"variant{ordinal}"
        return {key: {}}


def decode_event_payload(payload: bytes) -> Optional[RawEventRecord]:
    """Decode one event payload. Returns None for foreign discriminators."""
    name = _NAMES_BY_DISCRIMINATOR.get(payload[:8])
    if name is None:
        return None

    reader = BorshReader(payload[8:])
    data = {field_name: reader.read(kind) for field_name, kind in EVENT_LAYOUTS[name]}
    return RawEventRecord(name=name, data=data)


class AnchorEventParser:
    """Extracts raw event records emitted by one program from its logs."""

    def __init__(self, program_id: str):
        self.program_id = program_id

    def parse_logs(self, logs: list[str]) -> Iterator[RawEventRecord]:
        """Yield every decodable event in ``logs``; bad lines are skipped."""
        stack: list[str] = []

        for line in logs:
            invoke = _INVOKE_RE.match(line)
            if invoke:
                stack.append(invoke.group(1))
                continue

            exit_ = _EXIT_RE.match(line)
            if exit_:
                if stack and stack[-1] == exit_.group(1):
                    stack.pop()
                continue

            if not line.startswith(PROGRAM_DATA_PREFIX):
                continue
            if not stack or stack[-1] != self.program_id:
                continue

            record = self._decode_line(line[len(PROGRAM_DATA_PREFIX):])
            if record is not None:
                yield record

    def _decode_line(self, encoded: str) -> Optional[RawEventRecord]:
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning("event_payload_not_base64", error=str(e))
            return None

        try:
            record = decode_event_payload(payload)
        except EventDecodeError as e:
            logger.warning("event_payload_decode_failed", error=str(e))
            return None

        if record is None:
            logger.debug("event_discriminator_unknown", discriminator=payload[:8].hex())
        return record
