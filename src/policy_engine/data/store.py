"""Abstract configuration store, transaction log and limit usage interfaces.

The engine depends ONLY on these interfaces. Concrete stores (in-memory or
SQLite) are injected at startup based on StorageSettings.backend.

Configuration is re-read on every operation; implementations must never hand
out a row that a later write could mutate underneath the caller.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from policy_engine.cards.models import CardAuthorization, CardProgram
from policy_engine.models import (
    ExchangePermission,
    ExchangeRate,
    ExchangeTransaction,
    FeeConfig,
    LimitTier,
    Page,
    TransferLimit,
    TransferRecord,
    UserType,
)


class ConfigStore(ABC):
    """Versioned store of admin-managed configuration rows.

    Every successful write bumps the version by one.
    """

    @abstractmethod
    async def version(self) -> int:
        """Return the current configuration version."""
        ...

    @abstractmethod
    async def get_rate(self, from_currency: str, to_currency: str) -> ExchangeRate | None:
        """Return the rate row for an ordered pair, active or not."""
        ...

    @abstractmethod
    async def save_rate(self, rate: ExchangeRate) -> None:
        """Upsert the single rate row for the rate's ordered pair."""
        ...

    @abstractmethod
    async def list_rates(self) -> list[ExchangeRate]:
        """Return all rate rows ordered by (from_currency, to_currency)."""
        ...

    @abstractmethod
    async def get_permission(self, user_type: UserType) -> ExchangePermission | None:
        ...

    @abstractmethod
    async def save_permission(self, permission: ExchangePermission) -> None:
        ...

    @abstractmethod
    async def list_permissions(self) -> list[ExchangePermission]:
        ...

    @abstractmethod
    async def get_fee_config(self, transaction_type: str, currency: str) -> FeeConfig | None:
        ...

    @abstractmethod
    async def save_fee_config(self, config: FeeConfig) -> None:
        ...

    @abstractmethod
    async def list_fee_configs(self) -> list[FeeConfig]:
        ...

    @abstractmethod
    async def get_transfer_limit(
        self, user_type: LimitTier, currency: str
    ) -> TransferLimit | None:
        ...

    @abstractmethod
    async def save_transfer_limit(self, limit: TransferLimit) -> None:
        ...

    @abstractmethod
    async def list_transfer_limits(self) -> list[TransferLimit]:
        ...

    @abstractmethod
    async def get_card_program(self, program_id: str) -> CardProgram | None:
        ...

    @abstractmethod
    async def save_card_program(self, program: CardProgram) -> None:
        ...


class TransactionLog(ABC):
    """Reference-keyed store of terminal transaction records.

    References are unique per record kind. Saving a record under an existing
    reference replaces it (used for the PENDING -> terminal transition).
    """

    @abstractmethod
    async def get_exchange(self, reference: str) -> ExchangeTransaction | None:
        ...

    @abstractmethod
    async def save_exchange(self, transaction: ExchangeTransaction) -> None:
        ...

    @abstractmethod
    async def list_exchanges(
        self, account_id: str | None = None, page: int = 1, limit: int = 20
    ) -> Page[ExchangeTransaction]:
        """Return exchanges newest first, optionally for one account."""
        ...

    @abstractmethod
    async def get_transfer(self, reference: str) -> TransferRecord | None:
        ...

    @abstractmethod
    async def save_transfer(self, record: TransferRecord) -> None:
        ...

    @abstractmethod
    async def get_card_authorization(self, reference: str) -> CardAuthorization | None:
        ...

    @abstractmethod
    async def save_card_authorization(self, authorization: CardAuthorization) -> None:
        ...


class UsageStore(ABC):
    """Running limit usage per (account_id, scope, period_key).

    The ledger reads and writes these totals only while holding the
    account's lock, so implementations need no locking of their own.
    """

    @abstractmethod
    async def get_usage(self, account_id: str, scope: str, period_key: str) -> Decimal:
        """Return the consumed total for a bucket, zero if it was never used."""
        ...

    @abstractmethod
    async def save_usage(self, account_id: str, scope: str, totals: dict[str, Decimal]) -> None:
        """Overwrite the totals of several buckets in one write.

        Args:
            totals: New consumed totals keyed by period key.
        """
        ...
