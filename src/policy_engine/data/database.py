"""Async SQLite database manager for policy configuration and the transaction log.

Uses aiosqlite for non-blocking database operations with WAL mode
for concurrent read/write performance.
"""

import os
from typing import Self

import aiosqlite

from policy_engine.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS config_version (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS exchange_rates (
    from_currency TEXT NOT NULL,
    to_currency TEXT NOT NULL,
    rate TEXT NOT NULL,
    margin_percentage TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (from_currency, to_currency)
);

CREATE TABLE IF NOT EXISTS exchange_permissions (
    user_type TEXT PRIMARY KEY,
    can_exchange INTEGER NOT NULL DEFAULT 0,
    daily_limit TEXT,
    monthly_limit TEXT,
    min_amount TEXT,
    max_amount TEXT,
    fee_percentage TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS fee_configs (
    transaction_type TEXT NOT NULL,
    currency TEXT NOT NULL,
    percentage TEXT NOT NULL,
    minimum_fee TEXT NOT NULL,
    maximum_fee TEXT,
    flat_fee TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (transaction_type, currency)
);

CREATE TABLE IF NOT EXISTS transfer_limits (
    user_type TEXT NOT NULL,
    currency TEXT NOT NULL,
    daily_limit TEXT NOT NULL,
    monthly_limit TEXT NOT NULL,
    per_transaction_limit TEXT NOT NULL,
    min_amount TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_type, currency)
);

CREATE TABLE IF NOT EXISTS card_programs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    flags TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS exchange_transactions (
    reference TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    user_type TEXT NOT NULL,
    from_currency TEXT NOT NULL,
    to_currency TEXT NOT NULL,
    from_amount TEXT NOT NULL,
    to_amount TEXT NOT NULL,
    exchange_rate TEXT NOT NULL,
    fee_amount TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    error_code TEXT,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS transfers (
    reference TEXT PRIMARY KEY,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS card_authorizations (
    reference TEXT PRIMARY KEY,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS limit_usage (
    account_id TEXT NOT NULL,
    scope TEXT NOT NULL,
    period_key TEXT NOT NULL,
    used TEXT NOT NULL,
    PRIMARY KEY (account_id, scope, period_key)
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_exchange_tx_account_created
    ON exchange_transactions(account_id, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_exchange_tx_created
    ON exchange_transactions(created_at DESC);
"""


class PolicyDatabase:
    """Async SQLite connection manager for the policy engine.

    Manages database lifecycle including schema creation, WAL mode
    configuration, and clean resource cleanup.

    Usage:
        async with PolicyDatabase("data/policy.db") as database:
            config_store = SqliteConfigStore(database)
    """

    def __init__(self, db_path: str = "data/policy.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open database connection, configure pragmas, and create schema."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=FULL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("policy_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("policy_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.execute(
            "INSERT OR IGNORE INTO config_version (id, version) VALUES (1, 0)"
        )
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
