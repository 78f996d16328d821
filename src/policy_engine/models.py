"""Shared data models for the monetary policy engine.

CRITICAL: All monetary values use Decimal. Never use float for amounts, rates, or fees.

Configuration rows (rates, permissions, fee configs, transfer limits) validate
their invariants at construction so an invalid row can never reach a store.
Transaction records are frozen; state changes produce a new record.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from math import ceil
from typing import Generic, TypeVar

from policy_engine.exceptions import (
    InvalidConfiguration,
    InvalidRateParameters,
    TransactionImmutable,
)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_currency(code: str) -> str:
    """Upper-case and strip a currency code; reject empty codes."""
    normalized = (code or "").strip().upper()
    if not normalized:
        raise InvalidConfiguration("Currency code must not be empty")
    return normalized


class UserType(str, Enum):
    """Account holder class. Exchange permissions key on this."""

    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    MERCHANT = "merchant"
    AGENT = "agent"
    USER = "user"


class LimitTier(str, Enum):
    """Key of the transfer limit table.

    Every UserType value is a tier of the same name; standard and agent_plus
    exist only as limit and fee tiers, never as account holder classes.
    """

    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    MERCHANT = "merchant"
    AGENT = "agent"
    USER = "user"
    AGENT_PLUS = "agent_plus"
    STANDARD = "standard"

    @classmethod
    def of(cls, user_type: UserType) -> "LimitTier":
        return cls(UserType(user_type).value)


class TransactionStatus(str, Enum):
    """Lifecycle of an executed money movement. COMPLETED and FAILED are terminal."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Error code for a PENDING record found on a later attempt: the process that
# wrote it died before reaching a terminal state.
RECOVERED = "RECOVERED"
RECOVERED_MESSAGE = "Interrupted before completion; not re-executed"


class LimitWindow(str, Enum):
    """Category of rolling cap a limit check applies to."""

    PER_TRANSACTION = "per_transaction"
    DAILY = "daily"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class CurrencyPair:
    """Ordered currency pair. A rate for A->B says nothing about B->A."""

    from_currency: str
    to_currency: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "from_currency", normalize_currency(self.from_currency))
        object.__setattr__(self, "to_currency", normalize_currency(self.to_currency))
        if self.from_currency == self.to_currency:
            raise InvalidConfiguration(
                f"Currency pair needs two different currencies, got {self.from_currency}"
            )

    def __str__(self) -> str:
        return f"{self.from_currency}/{self.to_currency}"


@dataclass
class ExchangeRate:
    """Admin-set exchange rate for an ordered pair.

    effective_rate is a property so it can never drift from rate and
    margin_percentage.
    """

    from_currency: str
    to_currency: str
    rate: Decimal
    margin_percentage: Decimal = _ZERO
    is_active: bool = True
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        pair = CurrencyPair(self.from_currency, self.to_currency)
        self.from_currency = pair.from_currency
        self.to_currency = pair.to_currency
        if self.rate <= _ZERO:
            raise InvalidRateParameters(f"Rate must be positive, got {self.rate}")
        if not _ZERO <= self.margin_percentage <= _HUNDRED:
            raise InvalidRateParameters(
                f"Margin must be within [0, 100], got {self.margin_percentage}"
            )

    @property
    def pair(self) -> CurrencyPair:
        return CurrencyPair(self.from_currency, self.to_currency)

    @property
    def effective_rate(self) -> Decimal:
        """rate * (1 - margin/100), recomputed on every read."""
        return self.rate * (Decimal("1") - self.margin_percentage / _HUNDRED)


@dataclass(frozen=True)
class LimitCaps:
    """Caps for each limit window. None means the window is unlimited."""

    per_transaction: Decimal | None = None
    daily: Decimal | None = None
    monthly: Decimal | None = None

    def for_window(self, window: LimitWindow) -> Decimal | None:
        if window == LimitWindow.PER_TRANSACTION:
            return self.per_transaction
        if window == LimitWindow.DAILY:
            return self.daily
        return self.monthly


def _check_non_negative(name: str, value: Decimal | None) -> None:
    if value is not None and value < _ZERO:
        raise InvalidConfiguration(f"{name} must be >= 0, got {value}")


@dataclass
class ExchangePermission:
    """Per user type exchange entitlement. No row for a user type means denied."""

    user_type: UserType
    can_exchange: bool = False
    daily_limit: Decimal | None = None
    monthly_limit: Decimal | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    fee_percentage: Decimal = _ZERO
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.user_type = UserType(self.user_type)
        for name in ("daily_limit", "monthly_limit", "min_amount", "max_amount"):
            _check_non_negative(name, getattr(self, name))
        if not _ZERO <= self.fee_percentage <= _HUNDRED:
            raise InvalidConfiguration(
                f"fee_percentage must be within [0, 100], got {self.fee_percentage}"
            )
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise InvalidConfiguration(
                f"min_amount {self.min_amount} exceeds max_amount {self.max_amount}"
            )

    def caps(self) -> LimitCaps:
        """Rolling caps for the ledger. max_amount is enforced as a range check."""
        return LimitCaps(daily=self.daily_limit, monthly=self.monthly_limit)


@dataclass
class FeeConfig:
    """Fee rule for a (transaction_type, currency) pair."""

    transaction_type: str
    currency: str
    percentage: Decimal = _ZERO
    minimum_fee: Decimal = _ZERO
    maximum_fee: Decimal | None = None
    flat_fee: Decimal = _ZERO
    is_active: bool = True
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.transaction_type = self.transaction_type.strip().lower()
        if not self.transaction_type:
            raise InvalidConfiguration("transaction_type must not be empty")
        self.currency = normalize_currency(self.currency)
        for name in ("percentage", "minimum_fee", "maximum_fee", "flat_fee"):
            _check_non_negative(name, getattr(self, name))
        if self.maximum_fee is not None and self.minimum_fee > self.maximum_fee:
            raise InvalidConfiguration(
                f"minimum_fee {self.minimum_fee} exceeds maximum_fee {self.maximum_fee}"
            )


@dataclass
class TransferLimit:
    """Transfer caps for a (tier, currency) pair.

    Enforces the monotonic ceiling
    min_amount <= per_transaction_limit <= daily_limit <= monthly_limit.
    """

    user_type: LimitTier
    currency: str
    daily_limit: Decimal
    monthly_limit: Decimal
    per_transaction_limit: Decimal
    min_amount: Decimal = _ZERO
    is_active: bool = True
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.user_type = LimitTier(self.user_type)
        self.currency = normalize_currency(self.currency)
        _check_non_negative("min_amount", self.min_amount)
        ceiling = [
            ("min_amount", self.min_amount),
            ("per_transaction_limit", self.per_transaction_limit),
            ("daily_limit", self.daily_limit),
            ("monthly_limit", self.monthly_limit),
        ]
        for (low_name, low), (high_name, high) in zip(ceiling, ceiling[1:]):
            if low > high:
                raise InvalidConfiguration(
                    f"{low_name} {low} exceeds {high_name} {high}"
                )

    def caps(self) -> LimitCaps:
        return LimitCaps(
            per_transaction=self.per_transaction_limit,
            daily=self.daily_limit,
            monthly=self.monthly_limit,
        )


@dataclass(frozen=True)
class Fee:
    """Computed fee for one transaction."""

    amount: Decimal
    currency: str
    transaction_type: str
    waived: bool = False


class _TerminalRecord:
    """State transitions shared by frozen transaction records."""

    status: TransactionStatus
    reference: str

    @property
    def is_terminal(self) -> bool:
        return self.status != TransactionStatus.PENDING

    def _transition(self, **changes):  # type: ignore[no-untyped-def]
        if self.is_terminal:
            raise TransactionImmutable(
                f"Transaction {self.reference} is already {self.status.value}"
            )
        return replace(self, completed_at=utcnow(), **changes)  # type: ignore[type-var]

    def fail(self, error_code: str, error_message: str):  # type: ignore[no-untyped-def]
        return self._transition(
            status=TransactionStatus.FAILED,
            error_code=error_code,
            error_message=error_message,
        )


@dataclass(frozen=True)
class ExchangeTransaction(_TerminalRecord):
    """Record of a currency conversion. exchange_rate is frozen at execution."""

    reference: str
    account_id: str
    user_type: UserType
    from_currency: str
    to_currency: str
    from_amount: Decimal
    to_amount: Decimal = _ZERO
    exchange_rate: Decimal = _ZERO
    fee_amount: Decimal = _ZERO
    status: TransactionStatus = TransactionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None

    def complete(
        self, to_amount: Decimal, exchange_rate: Decimal, fee_amount: Decimal
    ) -> "ExchangeTransaction":
        return self._transition(
            status=TransactionStatus.COMPLETED,
            to_amount=to_amount,
            exchange_rate=exchange_rate,
            fee_amount=fee_amount,
        )


@dataclass(frozen=True)
class TransferRecord(_TerminalRecord):
    """Record of a same-currency transfer between two accounts."""

    reference: str
    source_account_id: str
    destination_account_id: str
    user_type: LimitTier
    currency: str
    amount: Decimal
    transaction_type: str = "transfer"
    fee_amount: Decimal = _ZERO
    status: TransactionStatus = TransactionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None

    def complete(self, fee_amount: Decimal) -> "TransferRecord":
        return self._transition(status=TransactionStatus.COMPLETED, fee_amount=fee_amount)


@dataclass
class Page(Generic[T]):
    """One page of a newest-first listing."""

    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return ceil(self.total / self.limit) if self.limit else 0
