"""Typed SQLite read/write implementations of the configuration, log and usage stores.

All SQL is isolated behind these classes; every access goes through
database.db (the aiosqlite Connection).

CRITICAL: All monetary/rate values stored as TEXT in SQLite, restored as Decimal on read.
"""

import json
from datetime import datetime
from decimal import Decimal

import aiosqlite

from policy_engine.cards.models import (
    CardAuthorization,
    CardProgram,
    decision_from_dict,
    decision_to_dict,
)
from policy_engine.data.database import PolicyDatabase
from policy_engine.data.store import ConfigStore, TransactionLog, UsageStore
from policy_engine.logging import get_logger
from policy_engine.models import (
    ExchangePermission,
    ExchangeRate,
    ExchangeTransaction,
    FeeConfig,
    LimitTier,
    Page,
    TransactionStatus,
    TransferLimit,
    TransferRecord,
    UserType,
    normalize_currency,
)

logger = get_logger(__name__)


def _text(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


class SqliteConfigStore(ConfigStore):
    """ConfigStore persisted in SQLite.

    Each write and its version bump commit together.

    Usage:
        async with PolicyDatabase("data/policy.db") as database:
            store = SqliteConfigStore(database)
            await store.save_rate(ExchangeRate("USD", "SLE", Decimal("22.50")))
    """

    def __init__(self, database: PolicyDatabase) -> None:
        self._database = database

    async def _write(self, sql: str, params: tuple) -> None:
        db = self._database.db
        await db.execute(sql, params)
        await db.execute("UPDATE config_version SET version = version + 1 WHERE id = 1")
        await db.commit()

    async def version(self) -> int:
        cursor = await self._database.db.execute(
            "SELECT version FROM config_version WHERE id = 1"
        )
        row = await cursor.fetchone()
        return int(row["version"]) if row is not None else 0

    # ──────────────────────────────────────────────
    # Exchange rates
    # ──────────────────────────────────────────────

    @staticmethod
    def _rate_from_row(row: aiosqlite.Row) -> ExchangeRate:
        return ExchangeRate(
            from_currency=row["from_currency"],
            to_currency=row["to_currency"],
            rate=Decimal(row["rate"]),
            margin_percentage=Decimal(row["margin_percentage"]),
            is_active=bool(row["is_active"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def get_rate(self, from_currency: str, to_currency: str) -> ExchangeRate | None:
        cursor = await self._database.db.execute(
            "SELECT * FROM exchange_rates WHERE from_currency = ? AND to_currency = ?",
            (normalize_currency(from_currency), normalize_currency(to_currency)),
        )
        row = await cursor.fetchone()
        return self._rate_from_row(row) if row is not None else None

    async def save_rate(self, rate: ExchangeRate) -> None:
        await self._write(
            "INSERT OR REPLACE INTO exchange_rates "
            "(from_currency, to_currency, rate, margin_percentage, is_active, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                rate.from_currency,
                rate.to_currency,
                str(rate.rate),
                str(rate.margin_percentage),
                int(rate.is_active),
                _ts(rate.updated_at),
            ),
        )

    async def list_rates(self) -> list[ExchangeRate]:
        cursor = await self._database.db.execute(
            "SELECT * FROM exchange_rates ORDER BY from_currency, to_currency"
        )
        return [self._rate_from_row(row) for row in await cursor.fetchall()]

    # ──────────────────────────────────────────────
    # Exchange permissions
    # ──────────────────────────────────────────────

    @staticmethod
    def _permission_from_row(row: aiosqlite.Row) -> ExchangePermission:
        return ExchangePermission(
            user_type=UserType(row["user_type"]),
            can_exchange=bool(row["can_exchange"]),
            daily_limit=_dec(row["daily_limit"]),
            monthly_limit=_dec(row["monthly_limit"]),
            min_amount=_dec(row["min_amount"]),
            max_amount=_dec(row["max_amount"]),
            fee_percentage=Decimal(row["fee_percentage"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def get_permission(self, user_type: UserType) -> ExchangePermission | None:
        cursor = await self._database.db.execute(
            "SELECT * FROM exchange_permissions WHERE user_type = ?",
            (UserType(user_type).value,),
        )
        row = await cursor.fetchone()
        return self._permission_from_row(row) if row is not None else None

    async def save_permission(self, permission: ExchangePermission) -> None:
        await self._write(
            "INSERT OR REPLACE INTO exchange_permissions "
            "(user_type, can_exchange, daily_limit, monthly_limit, min_amount, "
            "max_amount, fee_percentage, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                permission.user_type.value,
                int(permission.can_exchange),
                _text(permission.daily_limit),
                _text(permission.monthly_limit),
                _text(permission.min_amount),
                _text(permission.max_amount),
                str(permission.fee_percentage),
                _ts(permission.updated_at),
            ),
        )

    async def list_permissions(self) -> list[ExchangePermission]:
        cursor = await self._database.db.execute(
            "SELECT * FROM exchange_permissions ORDER BY user_type"
        )
        return [self._permission_from_row(row) for row in await cursor.fetchall()]

    # ──────────────────────────────────────────────
    # Fee configs
    # ──────────────────────────────────────────────

    @staticmethod
    def _fee_config_from_row(row: aiosqlite.Row) -> FeeConfig:
        return FeeConfig(
            transaction_type=row["transaction_type"],
            currency=row["currency"],
            percentage=Decimal(row["percentage"]),
            minimum_fee=Decimal(row["minimum_fee"]),
            maximum_fee=_dec(row["maximum_fee"]),
            flat_fee=Decimal(row["flat_fee"]),
            is_active=bool(row["is_active"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def get_fee_config(self, transaction_type: str, currency: str) -> FeeConfig | None:
        cursor = await self._database.db.execute(
            "SELECT * FROM fee_configs WHERE transaction_type = ? AND currency = ?",
            (transaction_type.strip().lower(), normalize_currency(currency)),
        )
        row = await cursor.fetchone()
        return self._fee_config_from_row(row) if row is not None else None

    async def save_fee_config(self, config: FeeConfig) -> None:
        await self._write(
            "INSERT OR REPLACE INTO fee_configs "
            "(transaction_type, currency, percentage, minimum_fee, maximum_fee, "
            "flat_fee, is_active, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                config.transaction_type,
                config.currency,
                str(config.percentage),
                str(config.minimum_fee),
                _text(config.maximum_fee),
                str(config.flat_fee),
                int(config.is_active),
                _ts(config.updated_at),
            ),
        )

    async def list_fee_configs(self) -> list[FeeConfig]:
        cursor = await self._database.db.execute(
            "SELECT * FROM fee_configs ORDER BY transaction_type, currency"
        )
        return [self._fee_config_from_row(row) for row in await cursor.fetchall()]

    # ──────────────────────────────────────────────
    # Transfer limits
    # ──────────────────────────────────────────────

    @staticmethod
    def _transfer_limit_from_row(row: aiosqlite.Row) -> TransferLimit:
        return TransferLimit(
            user_type=LimitTier(row["user_type"]),
            currency=row["currency"],
            daily_limit=Decimal(row["daily_limit"]),
            monthly_limit=Decimal(row["monthly_limit"]),
            per_transaction_limit=Decimal(row["per_transaction_limit"]),
            min_amount=Decimal(row["min_amount"]),
            is_active=bool(row["is_active"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def get_transfer_limit(
        self, user_type: LimitTier, currency: str
    ) -> TransferLimit | None:
        cursor = await self._database.db.execute(
            "SELECT * FROM transfer_limits WHERE user_type = ? AND currency = ?",
            (LimitTier(user_type).value, normalize_currency(currency)),
        )
        row = await cursor.fetchone()
        return self._transfer_limit_from_row(row) if row is not None else None

    async def save_transfer_limit(self, limit: TransferLimit) -> None:
        await self._write(
            "INSERT OR REPLACE INTO transfer_limits "
            "(user_type, currency, daily_limit, monthly_limit, per_transaction_limit, "
            "min_amount, is_active, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                limit.user_type.value,
                limit.currency,
                str(limit.daily_limit),
                str(limit.monthly_limit),
                str(limit.per_transaction_limit),
                str(limit.min_amount),
                int(limit.is_active),
                _ts(limit.updated_at),
            ),
        )

    async def list_transfer_limits(self) -> list[TransferLimit]:
        cursor = await self._database.db.execute(
            "SELECT * FROM transfer_limits ORDER BY user_type, currency"
        )
        return [self._transfer_limit_from_row(row) for row in await cursor.fetchall()]

    # ──────────────────────────────────────────────
    # Card programs (stored as the admin console's flag record)
    # ──────────────────────────────────────────────

    async def get_card_program(self, program_id: str) -> CardProgram | None:
        cursor = await self._database.db.execute(
            "SELECT flags FROM card_programs WHERE id = ?", (program_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        flags = json.loads(row["flags"])
        for key in (
            "daily_limit",
            "monthly_limit",
            "transaction_fee_percentage",
            "transaction_fee_fixed",
            "overdraft_limit",
            "bnpl_max_amount",
            "bnpl_interest_rate",
            "high_daily_limit",
            "high_monthly_limit",
            "cashback_percentage",
        ):
            flags[key] = _dec(flags[key])
        return CardProgram.from_flags(**flags)

    async def save_card_program(self, program: CardProgram) -> None:
        flags = {
            key: str(value) if isinstance(value, Decimal) else value
            for key, value in program.to_flags().items()
        }
        await self._write(
            "INSERT OR REPLACE INTO card_programs (id, name, flags) VALUES (?, ?, ?)",
            (program.id, program.name, json.dumps(flags)),
        )


class SqliteTransactionLog(TransactionLog):
    """TransactionLog persisted in SQLite.

    Exchange transactions get typed columns for listing; transfers and card
    authorizations are stored as JSON payloads keyed by reference.
    """

    def __init__(self, database: PolicyDatabase) -> None:
        self._database = database

    @staticmethod
    def _exchange_from_row(row: aiosqlite.Row) -> ExchangeTransaction:
        return ExchangeTransaction(
            reference=row["reference"],
            account_id=row["account_id"],
            user_type=UserType(row["user_type"]),
            from_currency=row["from_currency"],
            to_currency=row["to_currency"],
            from_amount=Decimal(row["from_amount"]),
            to_amount=Decimal(row["to_amount"]),
            exchange_rate=Decimal(row["exchange_rate"]),
            fee_amount=Decimal(row["fee_amount"]),
            status=TransactionStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            completed_at=_dt(row["completed_at"]),
            error_code=row["error_code"],
            error_message=row["error_message"],
        )

    async def get_exchange(self, reference: str) -> ExchangeTransaction | None:
        cursor = await self._database.db.execute(
            "SELECT * FROM exchange_transactions WHERE reference = ?", (reference,)
        )
        row = await cursor.fetchone()
        return self._exchange_from_row(row) if row is not None else None

    async def save_exchange(self, transaction: ExchangeTransaction) -> None:
        db = self._database.db
        await db.execute(
            "INSERT OR REPLACE INTO exchange_transactions "
            "(reference, account_id, user_type, from_currency, to_currency, from_amount, "
            "to_amount, exchange_rate, fee_amount, status, created_at, completed_at, "
            "error_code, error_message) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                transaction.reference,
                transaction.account_id,
                transaction.user_type.value,
                transaction.from_currency,
                transaction.to_currency,
                str(transaction.from_amount),
                str(transaction.to_amount),
                str(transaction.exchange_rate),
                str(transaction.fee_amount),
                transaction.status.value,
                _ts(transaction.created_at),
                _ts(transaction.completed_at),
                transaction.error_code,
                transaction.error_message,
            ),
        )
        await db.commit()

    async def list_exchanges(
        self, account_id: str | None = None, page: int = 1, limit: int = 20
    ) -> Page[ExchangeTransaction]:
        db = self._database.db
        where, params = ("WHERE account_id = ?", (account_id,)) if account_id else ("", ())
        cursor = await db.execute(
            f"SELECT COUNT(*) AS total FROM exchange_transactions {where}", params
        )
        total_row = await cursor.fetchone()
        cursor = await db.execute(
            f"SELECT * FROM exchange_transactions {where} "
            "ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (*params, limit, (page - 1) * limit),
        )
        rows = await cursor.fetchall()
        return Page(
            items=[self._exchange_from_row(row) for row in rows],
            total=int(total_row["total"]) if total_row is not None else 0,
            page=page,
            limit=limit,
        )

    async def get_transfer(self, reference: str) -> TransferRecord | None:
        cursor = await self._database.db.execute(
            "SELECT payload FROM transfers WHERE reference = ?", (reference,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        data = json.loads(row["payload"])
        return TransferRecord(
            reference=data["reference"],
            source_account_id=data["source_account_id"],
            destination_account_id=data["destination_account_id"],
            user_type=LimitTier(data["user_type"]),
            currency=data["currency"],
            amount=Decimal(data["amount"]),
            transaction_type=data["transaction_type"],
            fee_amount=Decimal(data["fee_amount"]),
            status=TransactionStatus(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            completed_at=_dt(data["completed_at"]),
            error_code=data["error_code"],
            error_message=data["error_message"],
        )

    async def save_transfer(self, record: TransferRecord) -> None:
        payload = {
            "reference": record.reference,
            "source_account_id": record.source_account_id,
            "destination_account_id": record.destination_account_id,
            "user_type": record.user_type.value,
            "currency": record.currency,
            "amount": str(record.amount),
            "transaction_type": record.transaction_type,
            "fee_amount": str(record.fee_amount),
            "status": record.status.value,
            "created_at": _ts(record.created_at),
            "completed_at": _ts(record.completed_at),
            "error_code": record.error_code,
            "error_message": record.error_message,
        }
        db = self._database.db
        await db.execute(
            "INSERT OR REPLACE INTO transfers (reference, payload) VALUES (?, ?)",
            (record.reference, json.dumps(payload)),
        )
        await db.commit()

    async def get_card_authorization(self, reference: str) -> CardAuthorization | None:
        cursor = await self._database.db.execute(
            "SELECT payload FROM card_authorizations WHERE reference = ?", (reference,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        data = json.loads(row["payload"])
        return CardAuthorization(
            reference=data["reference"],
            card_id=data["card_id"],
            account_id=data["account_id"],
            user_type=UserType(data["user_type"]),
            currency=data["currency"],
            amount=Decimal(data["amount"]),
            decision=decision_from_dict(data["decision"]),
            fee_amount=Decimal(data["fee_amount"]),
            cashback_amount=Decimal(data["cashback_amount"]),
            status=TransactionStatus(data["status"]),
            settled=data["settled"],
            created_at=datetime.fromisoformat(data["created_at"]),
            settled_at=_dt(data["settled_at"]),
            error_code=data["error_code"],
            error_message=data["error_message"],
        )

    async def save_card_authorization(self, authorization: CardAuthorization) -> None:
        payload = {
            "reference": authorization.reference,
            "card_id": authorization.card_id,
            "account_id": authorization.account_id,
            "user_type": authorization.user_type.value,
            "currency": authorization.currency,
            "amount": str(authorization.amount),
            "decision": decision_to_dict(authorization.decision),
            "fee_amount": str(authorization.fee_amount),
            "cashback_amount": str(authorization.cashback_amount),
            "status": authorization.status.value,
            "settled": authorization.settled,
            "created_at": _ts(authorization.created_at),
            "settled_at": _ts(authorization.settled_at),
            "error_code": authorization.error_code,
            "error_message": authorization.error_message,
        }
        db = self._database.db
        await db.execute(
            "INSERT OR REPLACE INTO card_authorizations (reference, payload) VALUES (?, ?)",
            (authorization.reference, json.dumps(payload)),
        )
        await db.commit()
        logger.debug(
            "card_authorization_saved",
            reference=authorization.reference,
            settled=authorization.settled,
        )


class SqliteUsageStore(UsageStore):
    """UsageStore persisted in SQLite, so limit windows survive a restart.

    Every bucket touched by one reservation or release commits together.
    """

    def __init__(self, database: PolicyDatabase) -> None:
        self._database = database

    async def get_usage(self, account_id: str, scope: str, period_key: str) -> Decimal:
        cursor = await self._database.db.execute(
            "SELECT used FROM limit_usage WHERE account_id = ? AND scope = ? AND period_key = ?",
            (account_id, scope, period_key),
        )
        row = await cursor.fetchone()
        return Decimal(row["used"]) if row is not None else Decimal("0")

    async def save_usage(self, account_id: str, scope: str, totals: dict[str, Decimal]) -> None:
        db = self._database.db
        await db.executemany(
            "INSERT INTO limit_usage (account_id, scope, period_key, used) VALUES (?, ?, ?, ?) "
            "ON CONFLICT (account_id, scope, period_key) DO UPDATE SET used = excluded.used",
            [(account_id, scope, key, str(used)) for key, used in totals.items()],
        )
        await db.commit()
