"""Domain errors raised by the rebate ledger."""

from typing import Any


class LedgerError(Exception):
    """Base exception for rebate ledger failures."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.details = details


class ValidationError(LedgerError):
    """Input rejected before any mutation."""


class NotFoundError(LedgerError):
    """A referenced record does not exist."""


class AgencyNotFoundError(NotFoundError):
    pass


class AccountNotFoundError(NotFoundError):
    pass


class RecordNotFoundError(NotFoundError):
    pass


class SettlementError(LedgerError):
    """A settlement batch cannot be applied."""


class IdempotencyError(LedgerError):
    """Raised on a partially repeated event that cannot be applied safely."""


class StorageError(LedgerError):
    """The persistence collaborator failed."""


class StorageRequestError(StorageError):
    """HTTP storage request failed."""

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message, details=details)
        self.status_code = status_code
