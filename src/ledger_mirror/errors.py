"""Exception hierarchy for the ledger mirror."""
from typing import Optional


class LedgerMirrorError(Exception):
    """Base class for all ledger mirror errors."""
    pass


class LedgerError(LedgerMirrorError):
    """Raised when the ledger RPC is unreachable or answers with an error."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class EventDecodeError(LedgerMirrorError):
    """Raised when a log record cannot be decoded into an event."""
    pass


class PriceFetchError(LedgerMirrorError):
    """Raised when every price source failed at transport level."""
    pass
