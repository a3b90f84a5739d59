"""Exception hierarchy for the rentals core."""


class RentalsError(Exception):
    """Base exception for all rentals errors."""


class ConfigurationError(RentalsError):
    """Raised when contract adjustment settings or runtime config are invalid."""


class EntityNotFoundError(RentalsError):
    """Raised when a referenced entity does not exist."""


class ContractNotFoundError(EntityNotFoundError):
    """Raised when a contract id does not resolve to a stored contract."""


class CashflowNotFoundError(EntityNotFoundError):
    """Raised when no cashflow row exists for a contract month."""


class InvalidCashflowStateError(RentalsError):
    """Raised when a cashflow row is in the wrong state for the operation."""


class RegenerationInProgressError(RentalsError):
    """Raised when a contract is already being regenerated."""


class TransientStoreError(RentalsError):
    """Raised when the store fails while reading or writing cashflows."""
