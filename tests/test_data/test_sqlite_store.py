"""Tests for the SQLite-backed config, transaction log and usage stores.

Uses an in-memory aiosqlite database per test, or a file database where a
restart is simulated. Verifies Decimal fidelity (TEXT storage), version
bumps, upserts, payload records, pagination and limit usage that outlives
the process.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from policy_engine.accounts import InMemoryAccountStore
from policy_engine.cards.models import (
    ApproveWithOverdraft,
    CardAuthorization,
    CardProgram,
    Decline,
)
from policy_engine.data.database import SCHEMA_VERSION, PolicyDatabase
from policy_engine.data.sqlite_store import (
    SqliteConfigStore,
    SqliteTransactionLog,
    SqliteUsageStore,
)
from policy_engine.exchange.processor import ExchangeRequest
from policy_engine.facade import PolicyFacade
from policy_engine.limits.ledger import LimitLedger
from policy_engine.models import (
    ExchangePermission,
    ExchangeRate,
    ExchangeTransaction,
    FeeConfig,
    LimitTier,
    TransactionStatus,
    TransferLimit,
    TransferRecord,
    UserType,
)


@pytest_asyncio.fixture
async def database():
    async with PolicyDatabase(":memory:") as db:
        yield db


@pytest.fixture
def sqlite_config(database: PolicyDatabase) -> SqliteConfigStore:
    return SqliteConfigStore(database)


@pytest.fixture
def sqlite_log(database: PolicyDatabase) -> SqliteTransactionLog:
    return SqliteTransactionLog(database)


class TestDatabase:
    @pytest.mark.asyncio
    async def test_schema_version_recorded(self, database: PolicyDatabase) -> None:
        cursor = await database.db.execute("SELECT version FROM schema_version")
        row = await cursor.fetchone()
        assert row["version"] == SCHEMA_VERSION

    @pytest.mark.asyncio
    async def test_db_requires_connection(self) -> None:
        with pytest.raises(RuntimeError):
            PolicyDatabase(":memory:").db


class TestSqliteConfigStore:
    @pytest.mark.asyncio
    async def test_rate_round_trip_keeps_decimals(self, sqlite_config: SqliteConfigStore) -> None:
        await sqlite_config.save_rate(ExchangeRate(
            from_currency="USD", to_currency="SLE", rate=Decimal("22.50000001"),
            margin_percentage=Decimal("2.5"),
        ))
        rate = await sqlite_config.get_rate("usd", "sle")
        assert rate is not None
        assert rate.rate == Decimal("22.50000001")
        assert rate.margin_percentage == Decimal("2.5")
        assert await sqlite_config.get_rate("SLE", "USD") is None

    @pytest.mark.asyncio
    async def test_writes_bump_version(self, sqlite_config: SqliteConfigStore) -> None:
        assert await sqlite_config.version() == 0
        rate = ExchangeRate(from_currency="USD", to_currency="SLE", rate=Decimal("22.5"))
        await sqlite_config.save_rate(rate)
        rate.is_active = False
        await sqlite_config.save_rate(rate)

        assert await sqlite_config.version() == 2
        rates = await sqlite_config.list_rates()
        assert len(rates) == 1
        assert rates[0].is_active is False

    @pytest.mark.asyncio
    async def test_permission_with_unbounded_fields(
        self, sqlite_config: SqliteConfigStore
    ) -> None:
        await sqlite_config.save_permission(ExchangePermission(
            user_type=UserType.AGENT, can_exchange=True, daily_limit=Decimal("1000"),
            fee_percentage=Decimal("0.75"),
        ))
        permission = await sqlite_config.get_permission(UserType.AGENT)
        assert permission is not None
        assert permission.can_exchange is True
        assert permission.monthly_limit is None
        assert permission.max_amount is None
        assert permission.fee_percentage == Decimal("0.75")
        assert await sqlite_config.get_permission(UserType.MERCHANT) is None

    @pytest.mark.asyncio
    async def test_fee_config_and_transfer_limit(self, sqlite_config: SqliteConfigStore) -> None:
        await sqlite_config.save_fee_config(FeeConfig(
            transaction_type="transfer", currency="SLE", percentage=Decimal("1"),
            minimum_fee=Decimal("0.10"), maximum_fee=None, flat_fee=Decimal("0.5"),
        ))
        await sqlite_config.save_transfer_limit(TransferLimit(
            user_type=LimitTier.STANDARD, currency="SLE", per_transaction_limit=Decimal("100"),
            daily_limit=Decimal("500"), monthly_limit=Decimal("2000"),
        ))

        config = await sqlite_config.get_fee_config("TRANSFER", "sle")
        limit = await sqlite_config.get_transfer_limit(LimitTier.STANDARD, "SLE")
        assert config is not None and config.maximum_fee is None
        assert config.minimum_fee == Decimal("0.10")
        assert limit is not None and limit.caps().daily == Decimal("500")
        assert limit.user_type == LimitTier.STANDARD
        assert len(await sqlite_config.list_fee_configs()) == 1
        assert len(await sqlite_config.list_transfer_limits()) == 1

    @pytest.mark.asyncio
    async def test_card_program_features_survive(self, sqlite_config: SqliteConfigStore) -> None:
        program = CardProgram.from_flags(
            id="gold", name="Gold", daily_limit=Decimal("1000"), monthly_limit=Decimal("5000"),
            allow_negative_balance=True, overdraft_limit=Decimal("250"),
            high_transaction_limit=True, high_daily_limit=Decimal("9000"),
            high_monthly_limit=Decimal("90000"),
            cashback_enabled=True, cashback_percentage=Decimal("1.25"),
        )
        await sqlite_config.save_card_program(program)
        assert await sqlite_config.get_card_program("gold") == program
        assert await sqlite_config.get_card_program("missing") is None


class TestSqliteTransactionLog:
    @pytest.mark.asyncio
    async def test_exchange_status_transition(self, sqlite_log: SqliteTransactionLog) -> None:
        pending = ExchangeTransaction(
            reference="ex-1", account_id="acc-1", user_type=UserType.USER,
            from_currency="USD", to_currency="SLE", from_amount=Decimal("100"),
        )
        await sqlite_log.save_exchange(pending)
        await sqlite_log.save_exchange(
            pending.complete(Decimal("2205.0000"), Decimal("22.05000000"), Decimal("1.5000"))
        )

        stored = await sqlite_log.get_exchange("ex-1")
        assert stored is not None
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.exchange_rate == Decimal("22.05")
        assert stored.created_at == pending.created_at
        assert (await sqlite_log.list_exchanges()).total == 1

    @pytest.mark.asyncio
    async def test_list_exchanges_paginates_newest_first(
        self, sqlite_log: SqliteTransactionLog
    ) -> None:
        start = datetime(2026, 10, 1, tzinfo=timezone.utc)
        for i in range(5):
            await sqlite_log.save_exchange(ExchangeTransaction(
                reference=f"ex-{i}", account_id="acc-1" if i % 2 == 0 else "acc-2",
                user_type=UserType.USER, from_currency="USD", to_currency="SLE",
                from_amount=Decimal("10"), created_at=start + timedelta(minutes=i),
            ))

        page = await sqlite_log.list_exchanges(account_id="acc-1", page=1, limit=2)
        assert page.total == 3
        assert [tx.reference for tx in page.items] == ["ex-4", "ex-2"]
        second = await sqlite_log.list_exchanges(account_id="acc-1", page=2, limit=2)
        assert [tx.reference for tx in second.items] == ["ex-0"]

    @pytest.mark.asyncio
    async def test_transfer_payload(self, sqlite_log: SqliteTransactionLog) -> None:
        record = TransferRecord(
            reference="tr-1", source_account_id="acc-1", destination_account_id="acc-2",
            user_type=UserType.USER, currency="SLE", amount=Decimal("100"),
        ).fail("LIMIT_EXCEEDED", "daily limit of 50 exceeded")
        await sqlite_log.save_transfer(record)
        assert await sqlite_log.get_transfer("tr-1") == record
        assert await sqlite_log.get_transfer("tr-2") is None

    @pytest.mark.asyncio
    async def test_card_authorization_payload(self, sqlite_log: SqliteTransactionLog) -> None:
        approved = CardAuthorization(
            reference="c-1", card_id="card-1", account_id="acc-1", user_type=UserType.USER,
            currency="SLE", amount=Decimal("15"),
            decision=ApproveWithOverdraft(amount_beyond_balance=Decimal("5")),
            cashback_amount=Decimal("0.3"),
        )
        declined = CardAuthorization(
            reference="c-2", card_id="card-1", account_id="acc-1", user_type=UserType.USER,
            currency="SLE", amount=Decimal("15"), decision=Decline("INSUFFICIENT_FUNDS"),
        )
        await sqlite_log.save_card_authorization(approved.settle())
        await sqlite_log.save_card_authorization(declined)

        stored = await sqlite_log.get_card_authorization("c-1")
        assert stored is not None
        assert stored.settled is True
        assert stored.decision == ApproveWithOverdraft(Decimal("5"))
        assert await sqlite_log.get_card_authorization("c-2") == declined


class TestFacadeOnSqlite:
    @pytest.mark.asyncio
    async def test_exchange_idempotent_across_facades(
        self, sqlite_config: SqliteConfigStore, sqlite_log: SqliteTransactionLog
    ) -> None:
        accounts = InMemoryAccountStore()
        accounts.open_account("acc-1", {"USD": Decimal("1000"), "SLE": Decimal("0")})
        await sqlite_config.save_rate(ExchangeRate(
            from_currency="USD", to_currency="SLE", rate=Decimal("22.50"),
            margin_percentage=Decimal("2"),
        ))
        await sqlite_config.save_permission(
            ExchangePermission(user_type=UserType.USER, can_exchange=True)
        )
        request = ExchangeRequest(
            reference="ex-1", account_id="acc-1", user_type=UserType.USER,
            from_currency="USD", to_currency="SLE", amount=Decimal("100"),
        )

        first = await PolicyFacade(sqlite_config, sqlite_log, accounts).execute_exchange(request)
        # a restarted process sees the stored record
        second = await PolicyFacade(sqlite_config, sqlite_log, accounts).execute_exchange(request)

        assert first.status == TransactionStatus.COMPLETED
        assert second == first
        assert await accounts.get_balance("acc-1", "SLE") == Decimal("2205")


class TestSqliteUsageStore:
    @pytest.mark.asyncio
    async def test_unused_bucket_is_zero(self, database: PolicyDatabase) -> None:
        store = SqliteUsageStore(database)
        assert await store.get_usage("acc-1", "exchange:USD", "D:2026-10-19") == Decimal("0")

    @pytest.mark.asyncio
    async def test_save_overwrites_each_bucket(self, database: PolicyDatabase) -> None:
        store = SqliteUsageStore(database)
        await store.save_usage(
            "acc-1", "exchange:USD", {"D:2026-10-19": Decimal("40.5"), "M:2026-10": Decimal("90")}
        )
        await store.save_usage("acc-1", "exchange:USD", {"D:2026-10-19": Decimal("0.0001")})

        assert await store.get_usage("acc-1", "exchange:USD", "D:2026-10-19") == Decimal("0.0001")
        assert await store.get_usage("acc-1", "exchange:USD", "M:2026-10") == Decimal("90")
        assert await store.get_usage("acc-1", "transfer:USD", "M:2026-10") == Decimal("0")


class TestRestart:
    @pytest.mark.asyncio
    async def test_daily_cap_survives_restart(self, tmp_path) -> None:
        db_path = str(tmp_path / "policy.db")
        accounts = InMemoryAccountStore()
        accounts.open_account("acc-1", {"USD": Decimal("1000"), "SLE": Decimal("0")})

        def request(reference: str) -> ExchangeRequest:
            return ExchangeRequest(
                reference=reference, account_id="acc-1", user_type=UserType.USER,
                from_currency="USD", to_currency="SLE", amount=Decimal("100"),
            )

        def facade_on(database: PolicyDatabase) -> PolicyFacade:
            return PolicyFacade(
                SqliteConfigStore(database),
                SqliteTransactionLog(database),
                accounts,
                ledger=LimitLedger(usage_store=SqliteUsageStore(database)),
            )

        async with PolicyDatabase(db_path) as database:
            config = SqliteConfigStore(database)
            await config.save_rate(ExchangeRate(
                from_currency="USD", to_currency="SLE", rate=Decimal("22.50"),
            ))
            await config.save_permission(ExchangePermission(
                user_type=UserType.USER, can_exchange=True, daily_limit=Decimal("100"),
            ))
            first = await facade_on(database).execute_exchange(request("ex-1"))
        assert first.status == TransactionStatus.COMPLETED

        async with PolicyDatabase(db_path) as database:
            second = await facade_on(database).execute_exchange(request("ex-2"))

        assert second.status == TransactionStatus.FAILED
        assert second.error_code == "LIMIT_EXCEEDED"
        assert await accounts.get_balance("acc-1", "USD") == Decimal("900")
