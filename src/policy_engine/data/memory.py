"""In-memory configuration store, transaction log and limit usage store.

Default backend and test fixture. Each method runs without awaiting, so a
read or write is atomic with respect to other coroutines on the loop.
"""

from dataclasses import replace
from decimal import Decimal

from policy_engine.cards.models import CardAuthorization, CardProgram
from policy_engine.data.store import ConfigStore, TransactionLog, UsageStore
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
    normalize_currency,
)

_ZERO = Decimal("0")


class InMemoryConfigStore(ConfigStore):
    """Dict-backed ConfigStore. Rows are copied on the way in and out."""

    def __init__(self) -> None:
        self._version = 0
        self._rates: dict[tuple[str, str], ExchangeRate] = {}
        self._permissions: dict[UserType, ExchangePermission] = {}
        self._fee_configs: dict[tuple[str, str], FeeConfig] = {}
        self._transfer_limits: dict[tuple[LimitTier, str], TransferLimit] = {}
        self._card_programs: dict[str, CardProgram] = {}

    async def version(self) -> int:
        return self._version

    async def get_rate(self, from_currency: str, to_currency: str) -> ExchangeRate | None:
        key = (normalize_currency(from_currency), normalize_currency(to_currency))
        rate = self._rates.get(key)
        return replace(rate) if rate is not None else None

    async def save_rate(self, rate: ExchangeRate) -> None:
        self._rates[(rate.from_currency, rate.to_currency)] = replace(rate)
        self._version += 1

    async def list_rates(self) -> list[ExchangeRate]:
        return [replace(self._rates[key]) for key in sorted(self._rates)]

    async def get_permission(self, user_type: UserType) -> ExchangePermission | None:
        permission = self._permissions.get(UserType(user_type))
        return replace(permission) if permission is not None else None

    async def save_permission(self, permission: ExchangePermission) -> None:
        self._permissions[permission.user_type] = replace(permission)
        self._version += 1

    async def list_permissions(self) -> list[ExchangePermission]:
        return [
            replace(p)
            for p in sorted(self._permissions.values(), key=lambda p: p.user_type.value)
        ]

    async def get_fee_config(self, transaction_type: str, currency: str) -> FeeConfig | None:
        key = (transaction_type.strip().lower(), normalize_currency(currency))
        config = self._fee_configs.get(key)
        return replace(config) if config is not None else None

    async def save_fee_config(self, config: FeeConfig) -> None:
        self._fee_configs[(config.transaction_type, config.currency)] = replace(config)
        self._version += 1

    async def list_fee_configs(self) -> list[FeeConfig]:
        return [replace(self._fee_configs[key]) for key in sorted(self._fee_configs)]

    async def get_transfer_limit(
        self, user_type: LimitTier, currency: str
    ) -> TransferLimit | None:
        limit = self._transfer_limits.get((LimitTier(user_type), normalize_currency(currency)))
        return replace(limit) if limit is not None else None

    async def save_transfer_limit(self, limit: TransferLimit) -> None:
        self._transfer_limits[(limit.user_type, limit.currency)] = replace(limit)
        self._version += 1

    async def list_transfer_limits(self) -> list[TransferLimit]:
        return [
            replace(self._transfer_limits[key])
            for key in sorted(self._transfer_limits, key=lambda k: (k[0].value, k[1]))
        ]

    async def get_card_program(self, program_id: str) -> CardProgram | None:
        # CardProgram is frozen; no copy needed
        return self._card_programs.get(program_id)

    async def save_card_program(self, program: CardProgram) -> None:
        self._card_programs[program.id] = program
        self._version += 1


class InMemoryTransactionLog(TransactionLog):
    """Dict-backed TransactionLog. Records are frozen dataclasses."""

    def __init__(self) -> None:
        self._exchanges: dict[str, ExchangeTransaction] = {}
        self._transfers: dict[str, TransferRecord] = {}
        self._card_authorizations: dict[str, CardAuthorization] = {}

    async def get_exchange(self, reference: str) -> ExchangeTransaction | None:
        return self._exchanges.get(reference)

    async def save_exchange(self, transaction: ExchangeTransaction) -> None:
        self._exchanges[transaction.reference] = transaction

    async def list_exchanges(
        self, account_id: str | None = None, page: int = 1, limit: int = 20
    ) -> Page[ExchangeTransaction]:
        ranked = [
            (tx.created_at, position, tx)
            for position, tx in enumerate(self._exchanges.values())
            if account_id is None or tx.account_id == account_id
        ]
        # newest first; insertion order breaks timestamp ties
        ranked.sort(key=lambda entry: entry[:2], reverse=True)
        matching = [tx for _, _, tx in ranked]
        start = (page - 1) * limit
        return Page(
            items=matching[start : start + limit],
            total=len(matching),
            page=page,
            limit=limit,
        )

    async def get_transfer(self, reference: str) -> TransferRecord | None:
        return self._transfers.get(reference)

    async def save_transfer(self, record: TransferRecord) -> None:
        self._transfers[record.reference] = record

    async def get_card_authorization(self, reference: str) -> CardAuthorization | None:
        return self._card_authorizations.get(reference)

    async def save_card_authorization(self, authorization: CardAuthorization) -> None:
        self._card_authorizations[authorization.reference] = authorization


class InMemoryUsageStore(UsageStore):
    """Dict-backed UsageStore. Totals are lost with the process."""

    def __init__(self) -> None:
        self._totals: dict[tuple[str, str, str], Decimal] = {}

    async def get_usage(self, account_id: str, scope: str, period_key: str) -> Decimal:
        return self._totals.get((account_id, scope, period_key), _ZERO)

    async def save_usage(self, account_id: str, scope: str, totals: dict[str, Decimal]) -> None:
        for period_key, used in totals.items():
            self._totals[(account_id, scope, period_key)] = used
