"""Shared test fixtures for the monetary policy engine."""

from decimal import Decimal

import pytest
import pytest_asyncio

from policy_engine.accounts import InMemoryAccountStore
from policy_engine.config import AppSettings, LedgerSettings, PolicySettings
from policy_engine.data.memory import InMemoryConfigStore, InMemoryTransactionLog
from policy_engine.facade import PolicyFacade
from policy_engine.limits.ledger import LimitLedger
from policy_engine.models import ExchangePermission, ExchangeRate, UserType


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (in-memory storage, fail-closed fees)."""
    return AppSettings(
        log_level="DEBUG",
        ledger=LedgerSettings(default_timezone="Africa/Freetown"),
        policy=PolicySettings(fee_account_id="platform-fees"),
    )


@pytest.fixture
def config_store() -> InMemoryConfigStore:
    return InMemoryConfigStore()


@pytest.fixture
def transaction_log() -> InMemoryTransactionLog:
    return InMemoryTransactionLog()


@pytest.fixture
def accounts() -> InMemoryAccountStore:
    """Two funded customer accounts plus the platform fee account."""
    store = InMemoryAccountStore()
    store.open_account("acc-1", {"SLE": Decimal("10000"), "USD": Decimal("1000")})
    store.open_account("acc-2", {"SLE": Decimal("500"), "USD": Decimal("0")})
    store.open_account("platform-fees", {"SLE": Decimal("0"), "USD": Decimal("0")})
    return store


@pytest.fixture
def ledger(mock_settings: AppSettings) -> LimitLedger:
    return LimitLedger(mock_settings.ledger)


@pytest.fixture
def facade(
    mock_settings: AppSettings,
    config_store: InMemoryConfigStore,
    transaction_log: InMemoryTransactionLog,
    accounts: InMemoryAccountStore,
    ledger: LimitLedger,
) -> PolicyFacade:
    return PolicyFacade(
        config_store=config_store,
        transaction_log=transaction_log,
        accounts=accounts,
        settings=mock_settings.policy,
        ledger=ledger,
    )


@pytest_asyncio.fixture
async def usd_to_sle(config_store: InMemoryConfigStore) -> ExchangeRate:
    """USD -> SLE at 22.50 with a 2% margin (effective 22.05). No inverse."""
    rate = ExchangeRate(
        from_currency="USD", to_currency="SLE", rate=Decimal("22.50"),
        margin_percentage=Decimal("2"),
    )
    await config_store.save_rate(rate)
    return rate


@pytest_asyncio.fixture
async def user_permission(config_store: InMemoryConfigStore) -> ExchangePermission:
    permission = ExchangePermission(
        user_type=UserType.USER,
        can_exchange=True,
        daily_limit=Decimal("500"),
        monthly_limit=Decimal("2000"),
        min_amount=Decimal("1"),
        max_amount=Decimal("400"),
        fee_percentage=Decimal("1.5"),
    )
    await config_store.save_permission(permission)
    return permission
