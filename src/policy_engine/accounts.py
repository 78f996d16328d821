"""Account/ledger store contract and an in-memory reference implementation.

Balance storage belongs to an external account service. The engine only
computes amounts and gates approval, then hands the store a list of
BalanceMovement objects that must be applied all-or-nothing.

The in-memory store is the reference semantics for integrators and the
backing store for tests and the demo entry point.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

from policy_engine.exceptions import AccountNotFound, InsufficientFunds, PermissionDenied
from policy_engine.limits.locks import KeyedLocks
from policy_engine.logging import get_logger
from policy_engine.models import normalize_currency

logger = get_logger(__name__)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class BalanceMovement:
    """One signed balance change. Negative amounts are debits.

    ``floor`` is the lowest balance a debit may leave behind: zero normally,
    minus the overdraft limit for cards that allow a negative balance.
    """

    account_id: str
    currency: str
    amount: Decimal
    floor: Decimal = _ZERO

    def __post_init__(self) -> None:
        object.__setattr__(self, "currency", normalize_currency(self.currency))


class AccountStore(ABC):
    """Abstract account store with atomic multi-movement posting."""

    @abstractmethod
    async def get_balance(self, account_id: str, currency: str) -> Decimal:
        """Return the current balance of an account in a currency.

        Raises:
            AccountNotFound: If the account or its currency balance does not exist.
        """
        ...

    @abstractmethod
    async def get_timezone(self, account_id: str) -> str | None:
        """Return the account's IANA timezone, or None to use the ledger default."""
        ...

    @abstractmethod
    async def apply(self, movements: list[BalanceMovement]) -> dict[tuple[str, str], Decimal]:
        """Apply every movement or none of them.

        Returns:
            New balances keyed by (account_id, currency) for touched balances.

        Raises:
            AccountNotFound: If any account/currency is unknown.
            PermissionDenied: If any account is not active.
            InsufficientFunds: If any debit would cross its floor.
        """
        ...


@dataclass
class _Account:
    account_id: str
    balances: dict[str, Decimal] = field(default_factory=dict)
    timezone: str | None = None
    is_active: bool = True


class InMemoryAccountStore(AccountStore):
    """Dict-backed account store with per-account locking.

    A posting locks every account it touches (sorted, so two postings over
    the same pair of accounts cannot deadlock) and validates all movements
    against projected balances before mutating anything.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, _Account] = {}
        self._locks = KeyedLocks()

    def open_account(
        self,
        account_id: str,
        balances: dict[str, Decimal] | None = None,
        timezone: str | None = None,
    ) -> None:
        self._accounts[account_id] = _Account(
            account_id=account_id,
            balances={
                normalize_currency(currency): amount
                for currency, amount in (balances or {}).items()
            },
            timezone=timezone,
        )

    def set_active(self, account_id: str, is_active: bool) -> None:
        self._account(account_id).is_active = is_active

    def _account(self, account_id: str) -> _Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    async def get_balance(self, account_id: str, currency: str) -> Decimal:
        account = self._account(account_id)
        code = normalize_currency(currency)
        if code not in account.balances:
            raise AccountNotFound(f"Account {account_id} has no {code} balance")
        return account.balances[code]

    async def get_timezone(self, account_id: str) -> str | None:
        return self._account(account_id).timezone

    async def apply(self, movements: list[BalanceMovement]) -> dict[tuple[str, str], Decimal]:
        async with self._locks.hold_many([m.account_id for m in movements]):
            projected: dict[tuple[str, str], Decimal] = {}
            for movement in movements:
                account = self._account(movement.account_id)
                if not account.is_active:
                    raise PermissionDenied(f"Account {movement.account_id} is not active")
                key = (movement.account_id, movement.currency)
                if key not in projected:
                    if movement.currency not in account.balances:
                        raise AccountNotFound(
                            f"Account {movement.account_id} has no {movement.currency} balance"
                        )
                    projected[key] = account.balances[movement.currency]
                projected[key] += movement.amount
                if movement.amount < _ZERO and projected[key] < movement.floor:
                    raise InsufficientFunds(
                        f"Debit of {-movement.amount} {movement.currency} from "
                        f"{movement.account_id} would leave {projected[key]} "
                        f"(floor {movement.floor})"
                    )

            for (account_id, currency), balance in projected.items():
                self._accounts[account_id].balances[currency] = balance

            logger.debug("balances_applied", movements=len(movements))
            return dict(projected)
