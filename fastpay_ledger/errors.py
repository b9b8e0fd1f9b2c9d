"""
Ledger error kinds.

Every failure the ledger reports is one of these. Each kind carries a stable
``code`` and a user-facing message so callers can tell them apart without
parsing strings.
"""

from typing import Optional


class LedgerError(Exception):
    """Base exception for the ledger"""

    code = "ledger_error"
    default_message = "The operation could not be completed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(LedgerError, ValueError):
    """Malformed or out-of-range input (amount, account number, term)"""

    code = "validation_error"
    default_message = "The request contains invalid values"


class InsufficientFundsError(LedgerError):
    """Withdrawal or transfer exceeds the available balance"""

    code = "insufficient_funds"
    default_message = "Insufficient balance for this operation"


class NotFoundError(LedgerError):
    """Unknown account or recipient"""

    code = "not_found"
    default_message = "Account not found"


class PolicyLimitError(LedgerError):
    """A policy cap was reached, e.g. the active-loan limit"""

    code = "policy_limit"
    default_message = "This request exceeds an account limit"


class PersistenceError(LedgerError):
    """The underlying store is unavailable or rejected the write.

    ``committed`` is False whenever the mutation was not applied, which means
    retrying it (with the same idempotency key) is safe.
    """

    code = "persistence_error"
    default_message = "The ledger store is unavailable, nothing was saved"

    def __init__(self, message: Optional[str] = None, committed: bool = False):
        super().__init__(message)
        self.committed = committed


class ConcurrencyError(PersistenceError):
    """The account changed since it was read (stale version stamp)"""

    code = "concurrency_conflict"
    default_message = "The account was modified by another operation, please retry"


class RecordSchemaError(PersistenceError):
    """A stored record does not match any known schema version"""

    code = "record_schema_error"
    default_message = "Stored account record is not in a recognised format"
