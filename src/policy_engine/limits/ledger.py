"""Rolling limit ledger with atomic check-and-reserve.

Usage is tracked per (account_id, scope, period_key). The scope names the
operation class and currency ("exchange:USD", "transfer:SLE", "card:SLE")
so that limit tables with different meanings never share counters. Period
keys are calendar-day ("D:2026-10-19") and calendar-month ("M:2026-10")
buckets in the account's timezone. Buckets are created lazily on first use
and never reset: a new period simply has a new key.

The correctness-critical invariant is that checking every window and
incrementing every window happen under the same per-account lock, so two
concurrent reservations can never both pass against a stale total.
"""

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4
from zoneinfo import ZoneInfo

from policy_engine.config import LedgerSettings
from policy_engine.data.memory import InMemoryUsageStore
from policy_engine.data.store import UsageStore
from policy_engine.exceptions import (
    AmountOutOfRange,
    LimitExceeded,
    ReservationStuck,
    TransactionImmutable,
)
from policy_engine.limits.locks import KeyedLocks
from policy_engine.logging import get_logger
from policy_engine.models import LimitCaps, LimitWindow

logger = get_logger(__name__)

_ZERO = Decimal("0")


class ReservationState(str, Enum):
    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"


@dataclass
class Reservation:
    """Provisional consumption of limit capacity pending commit or release."""

    id: str
    account_id: str
    scope: str
    amount: Decimal
    daily_key: str
    monthly_key: str
    state: ReservationState = ReservationState.HELD
    created_at: float = 0.0


@dataclass(frozen=True)
class WindowUsage:
    """Consumed totals for the current daily and monthly buckets."""

    daily: Decimal
    monthly: Decimal
    daily_key: str
    monthly_key: str


@dataclass(frozen=True)
class WindowRemaining:
    """Remaining headroom per window. None means the window is unlimited."""

    per_transaction: Decimal | None
    daily: Decimal | None
    monthly: Decimal | None


def period_keys(at: datetime, tz_name: str) -> tuple[str, str]:
    """Return (daily_key, monthly_key) for an instant in a timezone."""
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    local = at.astimezone(ZoneInfo(tz_name))
    return f"D:{local:%Y-%m-%d}", f"M:{local:%Y-%m}"


class LimitLedger:
    """Tracks rolling usage and enforces caps with atomic reservations.

    Unlimited windows are represented by a None cap, never by a large number.
    Usage totals live in a UsageStore; with a persistent store the windows
    survive a restart. Held reservations are kept in memory only: a
    reservation held when the process dies stays consumed.

    Args:
        settings: Ledger settings (default timezone for period buckets).
        locks: Per-account lock registry. Shared with callers that need to
            serialize a reservation together with a balance mutation.
        usage_store: Where usage totals are kept; in-memory by default.
    """

    def __init__(
        self,
        settings: LedgerSettings | None = None,
        locks: KeyedLocks | None = None,
        usage_store: UsageStore | None = None,
    ) -> None:
        self._settings = settings or LedgerSettings()
        self._locks = locks or KeyedLocks()
        self._usage = usage_store or InMemoryUsageStore()
        self._held: dict[str, Reservation] = {}

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        """Serialize a wider unit of work on an account.

        Ledger operations inside the block reuse the held lock.
        """
        async with self._locks.hold(self._lock_key(account_id)):
            yield

    @staticmethod
    def _lock_key(account_id: str) -> str:
        return f"account:{account_id}"

    def _keys(self, tz: str | None, at: datetime | None) -> tuple[str, str]:
        return period_keys(at or datetime.now(timezone.utc), tz or self._settings.default_timezone)

    async def check_and_reserve(
        self,
        account_id: str,
        scope: str,
        amount: Decimal,
        caps: LimitCaps,
        *,
        tz: str | None = None,
        at: datetime | None = None,
    ) -> Reservation:
        """Atomically verify every window and consume ``amount`` from all of them.

        Raises:
            AmountOutOfRange: If amount is not positive.
            LimitExceeded: If any window would exceed its cap. Nothing is consumed.
        """
        if amount <= _ZERO:
            raise AmountOutOfRange(f"Amount must be positive, got {amount}")

        daily_key, monthly_key = self._keys(tz, at)

        async with self._locks.hold(self._lock_key(account_id)):
            daily_used = await self._usage.get_usage(account_id, scope, daily_key)
            monthly_used = await self._usage.get_usage(account_id, scope, monthly_key)

            checks = [
                (LimitWindow.PER_TRANSACTION, _ZERO),
                (LimitWindow.DAILY, daily_used),
                (LimitWindow.MONTHLY, monthly_used),
            ]
            for window, used in checks:
                cap = caps.for_window(window)
                if cap is not None and used + amount > cap:
                    logger.info(
                        "limit_exceeded",
                        account_id=account_id,
                        scope=scope,
                        window=window.value,
                        cap=str(cap),
                        used=str(used),
                        amount=str(amount),
                    )
                    raise LimitExceeded(
                        f"{window.value} limit of {cap} exceeded for {scope}: "
                        f"used {used}, requested {amount}",
                        window=window.value,
                    )

            await self._usage.save_usage(
                account_id,
                scope,
                {daily_key: daily_used + amount, monthly_key: monthly_used + amount},
            )

            reservation = Reservation(
                id=uuid4().hex,
                account_id=account_id,
                scope=scope,
                amount=amount,
                daily_key=daily_key,
                monthly_key=monthly_key,
                created_at=time.time(),
            )
            self._held[reservation.id] = reservation

        logger.debug(
            "limit_reserved",
            reservation_id=reservation.id,
            account_id=account_id,
            scope=scope,
            amount=str(amount),
        )
        return reservation

    async def commit(self, reservation: Reservation) -> None:
        """Make a held reservation final. Committed usage is never released."""
        async with self._locks.hold(self._lock_key(reservation.account_id)):
            if reservation.state == ReservationState.COMMITTED:
                return
            if reservation.state == ReservationState.RELEASED:
                raise TransactionImmutable(
                    f"Reservation {reservation.id} was released and cannot be committed"
                )
            self._held.pop(reservation.id, None)
            reservation.state = ReservationState.COMMITTED

    async def release(self, reservation: Reservation) -> None:
        """Return a held reservation's amount to every window it consumed.

        Releasing an already released reservation is a no-op. The state is
        read under the account lock, so concurrent releases, or a release
        racing a commit, restore the amount at most once.

        Raises:
            TransactionImmutable: If the reservation was committed.
            ReservationStuck: If the usage could not be restored. The
                reservation keeps consuming the account's limit until an
                operator intervenes.
        """
        async with self._locks.hold(self._lock_key(reservation.account_id)):
            if reservation.state == ReservationState.RELEASED:
                return
            if reservation.state == ReservationState.COMMITTED:
                raise TransactionImmutable(
                    f"Reservation {reservation.id} is committed and cannot be released"
                )
            try:
                await self._restore(reservation)
            except Exception as exc:
                logger.critical(
                    "reservation_stuck",
                    reservation_id=reservation.id,
                    account_id=reservation.account_id,
                    scope=reservation.scope,
                    amount=str(reservation.amount),
                    error=str(exc),
                    exc_info=True,
                )
                raise ReservationStuck(
                    f"Reservation {reservation.id} for {reservation.account_id} could not "
                    f"be released: {exc}"
                ) from exc
            self._held.pop(reservation.id, None)
            reservation.state = ReservationState.RELEASED

        logger.info(
            "limit_released",
            reservation_id=reservation.id,
            account_id=reservation.account_id,
            scope=reservation.scope,
            amount=str(reservation.amount),
        )

    async def _restore(self, reservation: Reservation) -> None:
        totals: dict[str, Decimal] = {}
        for key in (reservation.daily_key, reservation.monthly_key):
            used = await self._usage.get_usage(reservation.account_id, reservation.scope, key)
            if used < reservation.amount:
                raise ValueError(
                    f"Bucket {key} holds {used}, cannot release {reservation.amount}"
                )
            totals[key] = used - reservation.amount
        await self._usage.save_usage(reservation.account_id, reservation.scope, totals)

    async def usage(
        self,
        account_id: str,
        scope: str,
        *,
        tz: str | None = None,
        at: datetime | None = None,
    ) -> WindowUsage:
        """Return consumed totals for the current daily and monthly buckets."""
        daily_key, monthly_key = self._keys(tz, at)
        async with self._locks.hold(self._lock_key(account_id)):
            return WindowUsage(
                daily=await self._usage.get_usage(account_id, scope, daily_key),
                monthly=await self._usage.get_usage(account_id, scope, monthly_key),
                daily_key=daily_key,
                monthly_key=monthly_key,
            )

    async def remaining(
        self,
        account_id: str,
        scope: str,
        caps: LimitCaps,
        *,
        tz: str | None = None,
        at: datetime | None = None,
    ) -> WindowRemaining:
        """Return headroom per window, clamped at zero."""
        used = await self.usage(account_id, scope, tz=tz, at=at)

        def _left(cap: Decimal | None, consumed: Decimal) -> Decimal | None:
            return None if cap is None else max(cap - consumed, _ZERO)

        return WindowRemaining(
            per_transaction=caps.per_transaction,
            daily=_left(caps.daily, used.daily),
            monthly=_left(caps.monthly, used.monthly),
        )

    def held_reservations(self) -> list[Reservation]:
        """Reservations neither committed nor released (for operator inspection)."""
        return list(self._held.values())
