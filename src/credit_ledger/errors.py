from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for every error raised by the credit ledger."""

    code: str = "LEDGER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details: Dict[str, Any] = details or {}


class InvalidAmount(LedgerError, ValueError):
    code = "INVALID_AMOUNT"


class InvalidExpiry(LedgerError, ValueError):
    code = "INVALID_EXPIRY"


class InsufficientBalance(LedgerError, ValueError):
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, account_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"insufficient credits: requested {requested}, available {available}",
            {"account_id": account_id, "requested": requested, "available": available},
        )
        self.account_id = account_id
        self.requested = requested
        self.available = available


class UnknownReservation(LedgerError, LookupError):
    code = "UNKNOWN_RESERVATION"


class UnknownBatch(LedgerError, LookupError):
    code = "UNKNOWN_BATCH"


class ReservationClosed(LedgerError):
    """The reservation reached a terminal state incompatible with the request."""

    code = "RESERVATION_CLOSED"


class BatchInvariantViolation(LedgerError):
    """Ledger corruption; the affected account is frozen until an operator intervenes."""

    code = "LEDGER_INVARIANT_VIOLATION"


class AccountFrozen(LedgerError):
    code = "ACCOUNT_FROZEN"


class AccountLockTimeout(LedgerError):
    code = "ACCOUNT_BUSY"


class InvalidCursor(LedgerError, ValueError):
    code = "INVALID_CURSOR"


class ReservationConflict(LedgerError):
    """A task already holds a reservation for a different amount."""

    code = "RESERVATION_CONFLICT"


class UnknownTransaction(LedgerError, LookupError):
    code = "UNKNOWN_TRANSACTION"


class AccountLeaseLost(AccountLockTimeout):
    """The account lease lapsed and was taken over before the section's writes were committed."""

    code = "ACCOUNT_LEASE_LOST"
