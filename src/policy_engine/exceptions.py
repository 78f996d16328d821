"""Custom exceptions for the monetary policy engine.

Three families, matching how callers must react:

- ConfigurationError: an admin has to fix configuration; never retried.
- PolicyViolation: an expected, user-facing refusal (limits, permissions,
  funds). Not a system failure.
- ConsistencyError: the engine could not keep its own books straight and an
  operator must intervene.

Every error carries a stable ``code`` used in transaction records and API
responses.
"""


class PolicyError(Exception):
    """Base exception for all policy engine errors."""

    code = "POLICY_ERROR"


class AccountNotFound(PolicyError):
    """Raised when the account store has no such account."""

    code = "ACCOUNT_NOT_FOUND"


class TransactionNotFound(PolicyError):
    """Raised when no record exists for a reference."""

    code = "TRANSACTION_NOT_FOUND"


# Configuration errors


class ConfigurationError(PolicyError):
    """Base for errors that require admin correction."""

    code = "CONFIGURATION_ERROR"


class RateNotConfigured(ConfigurationError):
    """Raised when no exchange rate row exists for an ordered currency pair."""

    code = "RATE_NOT_CONFIGURED"


class RateInactive(ConfigurationError):
    """Raised when the only rate row for a pair has been disabled."""

    code = "RATE_INACTIVE"


class FeeConfigMissing(ConfigurationError):
    """Raised when no active fee config exists for (transaction_type, currency)."""

    code = "FEE_CONFIG_MISSING"


class InvalidRateParameters(ConfigurationError):
    """Raised when a rate is <= 0 or a margin lies outside [0, 100]."""

    code = "INVALID_RATE_PARAMETERS"


class LimitNotConfigured(ConfigurationError):
    """Raised when no active transfer limit exists for (user_type, currency)."""

    code = "LIMIT_NOT_CONFIGURED"


class InvalidConfiguration(ConfigurationError):
    """Raised when a configuration row violates a write-time invariant."""

    code = "INVALID_CONFIGURATION"


# Policy violations


class PolicyViolation(PolicyError):
    """Base for expected refusals of a money movement."""

    code = "POLICY_VIOLATION"


class LimitExceeded(PolicyViolation):
    """Raised when an amount would push a limit window over its cap."""

    code = "LIMIT_EXCEEDED"

    def __init__(self, message: str, window: str | None = None) -> None:
        super().__init__(message)
        self.window = window


class PermissionDenied(PolicyViolation):
    """Raised when a user type is not allowed to perform an operation."""

    code = "PERMISSION_DENIED"


class AmountOutOfRange(PolicyViolation):
    """Raised when an amount is outside the configured [min, max] range."""

    code = "AMOUNT_OUT_OF_RANGE"


class InsufficientFunds(PolicyViolation):
    """Raised when a debit would take a balance below its allowed floor."""

    code = "INSUFFICIENT_FUNDS"


# Consistency failures


class ConsistencyError(PolicyError):
    """Base for failures that leave state needing operator attention."""

    code = "CONSISTENCY_ERROR"


class ReservationStuck(ConsistencyError):
    """Raised when a reservation could not be released after a failed commit."""

    code = "RESERVATION_STUCK"


class TransactionImmutable(ConsistencyError):
    """Raised when a terminal transaction is asked to change state."""

    code = "TRANSACTION_IMMUTABLE"
