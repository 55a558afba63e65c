"""Typed errors raised by the ledger services.

Every error carries a machine-readable ``code`` so callers can branch on the
type instead of parsing messages. The HTTP layer maps each class to a status.
"""

from typing import Optional


class LedgerError(Exception):
    code: str = "LEDGER_ERROR"


class ValidationError(LedgerError, ValueError):
    """Malformed or out-of-range input, rejected before any mutation."""

    code = "VALIDATION_ERROR"


class NotFoundError(LedgerError, LookupError):
    code = "NOT_FOUND"


class ReferentialIntegrityError(LedgerError):
    """A referenced row is missing, or a referenced row would be removed."""

    code = "REFERENTIAL_INTEGRITY"


class ConcurrencyConflict(LedgerError):
    code = "CONCURRENCY_CONFLICT"

    def __init__(self, operation: str, attempts: int) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            f"{operation} conflicted with a concurrent update after {attempts} attempts"
        )


class ConversionFailure(LedgerError):
    code = "CONVERSION_FAILURE"

    def __init__(
        self, from_currency: str, to_currency: str, reason: Optional[str] = None
    ) -> None:
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.reason = reason
        message = f"No exchange rate available for {from_currency} -> {to_currency}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class PersistenceError(LedgerError):
    code = "PERSISTENCE_ERROR"
