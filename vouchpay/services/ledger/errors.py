"""Typed ledger failures.

Every failure carries a stable `kind` string plus a human-readable message;
only lock contention is flagged retryable.
"""

INVALID_INPUT = "INVALID_INPUT"
NOT_FOUND = "NOT_FOUND"
INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
LOCK_TIMEOUT = "LOCK_TIMEOUT"
STORAGE_FAILURE = "STORAGE_FAILURE"
SETTLEMENT_PENDING = "SETTLEMENT_PENDING"


class LedgerError(Exception):
    kind = "LEDGER_ERROR"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}


class InvalidInput(LedgerError):
    kind = INVALID_INPUT


class NotFound(LedgerError):
    kind = NOT_FOUND


class AccountNotFound(NotFound):
    pass


class InsufficientFunds(LedgerError):
    kind = INSUFFICIENT_FUNDS


class LockTimeout(LedgerError):
    kind = LOCK_TIMEOUT
    retryable = True


class StorageFailure(LedgerError):
    kind = STORAGE_FAILURE


class SettlementError(Exception):
    """Bank rail call failed or was rejected; the withdrawal stays pending."""
