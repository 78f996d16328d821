"""Tests for LimitLedger rolling windows and atomic reservations.

Verifies:
- N concurrent reservations of a against cap C: exactly floor(C/a) succeed
- LimitExceeded names the window and consumes nothing
- release() restores exactly the consumed buckets; idempotent, also when
  two releases (or a release and a commit) queue on the same account lock
- Committed reservations cannot be released
- Daily/monthly buckets roll over in the account's timezone
- Scopes never share counters
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from policy_engine.data.memory import InMemoryUsageStore
from policy_engine.exceptions import (
    AmountOutOfRange,
    LimitExceeded,
    ReservationStuck,
    TransactionImmutable,
)
from policy_engine.limits.ledger import LimitLedger, ReservationState, period_keys
from policy_engine.limits.locks import KeyedLocks
from policy_engine.models import LimitCaps

NOON = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class TestPeriodKeys:
    def test_utc_account(self) -> None:
        assert period_keys(NOON, "UTC") == ("D:2026-10-19", "M:2026-10")

    def test_local_day_differs_from_utc(self) -> None:
        late = datetime(2026, 10, 31, 23, 30, tzinfo=timezone.utc)
        # Already Nov 1 in Nairobi (UTC+3)
        assert period_keys(late, "Africa/Nairobi") == ("D:2026-11-01", "M:2026-11")

    def test_naive_datetime_treated_as_utc(self) -> None:
        assert period_keys(datetime(2026, 1, 1, 0, 30), "UTC") == ("D:2026-01-01", "M:2026-01")


class TestCheckAndReserve:
    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_overshoot(self, ledger: LimitLedger) -> None:
        """20 concurrent reservations of 30 against a daily cap of 100: exactly 3 succeed."""
        caps = LimitCaps(daily=Decimal("100"))

        async def attempt() -> bool:
            await asyncio.sleep(0)
            try:
                await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("30"), caps, at=NOON)
            except LimitExceeded:
                return False
            return True

        results = await asyncio.gather(*(attempt() for _ in range(20)))

        assert sum(results) == 3
        usage = await ledger.usage("acc-1", "transfer:SLE", at=NOON)
        assert usage.daily == Decimal("90")

    @pytest.mark.asyncio
    async def test_exceeding_window_is_named_and_consumes_nothing(
        self, ledger: LimitLedger
    ) -> None:
        caps = LimitCaps(daily=Decimal("100"), monthly=Decimal("150"))
        await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("100"), caps, at=NOON)

        next_day = datetime(2026, 10, 20, 12, 0, tzinfo=timezone.utc)
        with pytest.raises(LimitExceeded) as exc_info:
            await ledger.check_and_reserve(
                "acc-1", "transfer:SLE", Decimal("60"), caps, at=next_day
            )
        assert exc_info.value.window == "monthly"

        usage = await ledger.usage("acc-1", "transfer:SLE", at=next_day)
        assert usage.daily == Decimal("0")
        assert usage.monthly == Decimal("100")

    @pytest.mark.asyncio
    async def test_per_transaction_cap(self, ledger: LimitLedger) -> None:
        caps = LimitCaps(per_transaction=Decimal("50"))
        with pytest.raises(LimitExceeded) as exc_info:
            await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("50.01"), caps)
        assert exc_info.value.window == "per_transaction"

    @pytest.mark.asyncio
    async def test_cap_reached_exactly_is_allowed(self, ledger: LimitLedger) -> None:
        caps = LimitCaps(daily=Decimal("100"))
        await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("40"), caps, at=NOON)
        await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("60"), caps, at=NOON)
        remaining = await ledger.remaining("acc-1", "transfer:SLE", caps, at=NOON)
        assert remaining.daily == Decimal("0")
        assert remaining.monthly is None

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, ledger: LimitLedger) -> None:
        with pytest.raises(AmountOutOfRange):
            await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("0"), LimitCaps())

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self, ledger: LimitLedger) -> None:
        caps = LimitCaps(daily=Decimal("100"))
        await ledger.check_and_reserve("acc-1", "exchange:USD", Decimal("100"), caps, at=NOON)
        await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("100"), caps, at=NOON)
        await ledger.check_and_reserve("acc-2", "exchange:USD", Decimal("100"), caps, at=NOON)

    @pytest.mark.asyncio
    async def test_new_day_rolls_over_daily_only(self, ledger: LimitLedger) -> None:
        caps = LimitCaps(daily=Decimal("100"), monthly=Decimal("1000"))
        await ledger.check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("100"), caps, tz="UTC", at=NOON
        )
        tomorrow = datetime(2026, 10, 20, 0, 1, tzinfo=timezone.utc)
        await ledger.check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("100"), caps, tz="UTC", at=tomorrow
        )
        usage = await ledger.usage("acc-1", "transfer:SLE", tz="UTC", at=tomorrow)
        assert usage.daily == Decimal("100")
        assert usage.monthly == Decimal("200")


class TestReleaseAndCommit:
    @pytest.mark.asyncio
    async def test_release_restores_capacity(self, ledger: LimitLedger) -> None:
        caps = LimitCaps(daily=Decimal("100"))
        reservation = await ledger.check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("80"), caps, at=NOON
        )
        await ledger.release(reservation)

        assert reservation.state == ReservationState.RELEASED
        assert ledger.held_reservations() == []
        usage = await ledger.usage("acc-1", "transfer:SLE", at=NOON)
        assert usage.daily == Decimal("0")
        assert usage.monthly == Decimal("0")

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, ledger: LimitLedger) -> None:
        caps = LimitCaps(daily=Decimal("100"))
        first = await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("30"), caps, at=NOON)
        await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("30"), caps, at=NOON)

        await ledger.release(first)
        await ledger.release(first)

        usage = await ledger.usage("acc-1", "transfer:SLE", at=NOON)
        assert usage.daily == Decimal("30")

    @pytest.mark.asyncio
    async def test_release_uses_buckets_recorded_at_reservation(
        self, ledger: LimitLedger
    ) -> None:
        caps = LimitCaps(daily=Decimal("100"))
        before_midnight = datetime(2026, 10, 19, 23, 59, tzinfo=timezone.utc)
        reservation = await ledger.check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("70"), caps, tz="UTC", at=before_midnight
        )
        assert reservation.daily_key == "D:2026-10-19"

        await ledger.release(reservation)
        usage = await ledger.usage("acc-1", "transfer:SLE", tz="UTC", at=before_midnight)
        assert usage.daily == Decimal("0")
        assert usage.monthly == Decimal("0")

    @pytest.mark.asyncio
    async def test_committed_reservation_cannot_be_released(self, ledger: LimitLedger) -> None:
        reservation = await ledger.check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("10"), LimitCaps(), at=NOON
        )
        await ledger.commit(reservation)
        with pytest.raises(TransactionImmutable):
            await ledger.release(reservation)
        assert (await ledger.usage("acc-1", "transfer:SLE", at=NOON)).daily == Decimal("10")

    @pytest.mark.asyncio
    async def test_released_reservation_cannot_be_committed(self, ledger: LimitLedger) -> None:
        reservation = await ledger.check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("10"), LimitCaps(), at=NOON
        )
        await ledger.release(reservation)
        with pytest.raises(TransactionImmutable):
            await ledger.commit(reservation)

    @pytest.mark.asyncio
    async def test_corrupted_bucket_reports_stuck_reservation(self) -> None:
        usage_store = InMemoryUsageStore()
        ledger = LimitLedger(usage_store=usage_store)
        reservation = await ledger.check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("10"), LimitCaps(), at=NOON
        )
        await usage_store.save_usage(
            "acc-1", "transfer:SLE", {reservation.daily_key: Decimal("0")}
        )

        with pytest.raises(ReservationStuck):
            await ledger.release(reservation)
        assert reservation.state == ReservationState.HELD
        assert ledger.held_reservations() == [reservation]
        # nothing restored to the intact monthly bucket either
        usage = await ledger.usage("acc-1", "transfer:SLE", at=NOON)
        assert usage.monthly == Decimal("10")

    @pytest.mark.asyncio
    async def test_store_failure_reports_stuck_reservation(self) -> None:
        usage_store = InMemoryUsageStore()
        ledger = LimitLedger(usage_store=usage_store)
        reservation = await ledger.check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("10"), LimitCaps(), at=NOON
        )

        with patch.object(
            usage_store, "save_usage", AsyncMock(side_effect=OSError("disk full"))
        ):
            with pytest.raises(ReservationStuck):
                await ledger.release(reservation)
        assert reservation.state == ReservationState.HELD


class TestContendedRelease:
    """Release and commit called while another task holds the account lock."""

    @pytest.mark.asyncio
    async def test_concurrent_double_release_restores_once(self, ledger: LimitLedger) -> None:
        caps = LimitCaps(daily=Decimal("100"))
        await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("60"), caps, at=NOON)
        second = await ledger.check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("40"), caps, at=NOON
        )

        async with ledger.hold("acc-1"):
            releases = [asyncio.create_task(ledger.release(second)) for _ in range(2)]
            await asyncio.sleep(0.01)
            # both callers are queued behind the lock
            assert not any(task.done() for task in releases)
        await asyncio.gather(*releases)

        usage = await ledger.usage("acc-1", "transfer:SLE", at=NOON)
        assert usage.daily == Decimal("60")
        with pytest.raises(LimitExceeded):
            await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("80"), caps, at=NOON)

    @pytest.mark.asyncio
    async def test_release_queued_behind_commit_is_refused(self, ledger: LimitLedger) -> None:
        caps = LimitCaps(daily=Decimal("100"))
        reservation = await ledger.check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("40"), caps, at=NOON
        )

        async with ledger.hold("acc-1"):
            release = asyncio.create_task(ledger.release(reservation))
            await asyncio.sleep(0.01)
            # the holder finalises the reservation before the queued release runs
            await ledger.commit(reservation)
        with pytest.raises(TransactionImmutable):
            await release

        assert reservation.state == ReservationState.COMMITTED
        usage = await ledger.usage("acc-1", "transfer:SLE", at=NOON)
        assert usage.daily == Decimal("40")

    @pytest.mark.asyncio
    async def test_commit_queued_behind_release_is_refused(self, ledger: LimitLedger) -> None:
        reservation = await ledger.check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("40"), LimitCaps(), at=NOON
        )

        async with ledger.hold("acc-1"):
            commit = asyncio.create_task(ledger.commit(reservation))
            await asyncio.sleep(0.01)
            await ledger.release(reservation)
        with pytest.raises(TransactionImmutable):
            await commit

        assert reservation.state == ReservationState.RELEASED
        assert (await ledger.usage("acc-1", "transfer:SLE", at=NOON)).daily == Decimal("0")


class TestUsageStore:
    @pytest.mark.asyncio
    async def test_usage_is_read_from_the_store(self) -> None:
        usage_store = InMemoryUsageStore()
        caps = LimitCaps(daily=Decimal("100"))
        await LimitLedger(usage_store=usage_store).check_and_reserve(
            "acc-1", "transfer:SLE", Decimal("70"), caps, at=NOON
        )

        # a second ledger over the same store sees the consumed window
        restarted = LimitLedger(usage_store=usage_store)
        with pytest.raises(LimitExceeded):
            await restarted.check_and_reserve(
                "acc-1", "transfer:SLE", Decimal("31"), caps, at=NOON
            )
        assert (await restarted.usage("acc-1", "transfer:SLE", at=NOON)).daily == Decimal("70")


class TestKeyedLocks:
    @pytest.mark.asyncio
    async def test_reentrant_for_same_task(self) -> None:
        locks = KeyedLocks()
        async with locks.hold("account:a"):
            async with locks.hold("account:a"):
                assert locks.is_held("account:a")
        assert not locks.is_held("account:a")
        assert locks._locks == {}

    @pytest.mark.asyncio
    async def test_unrelated_keys_do_not_block(self) -> None:
        locks = KeyedLocks()
        entered = asyncio.Event()

        async def other() -> None:
            async with locks.hold("account:b"):
                entered.set()

        async with locks.hold("account:a"):
            await asyncio.wait_for(other(), timeout=1)
        assert entered.is_set()

    @pytest.mark.asyncio
    async def test_same_key_serializes(self) -> None:
        locks = KeyedLocks()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("account:a"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("first"), worker("second"))
        assert order == ["first-in", "first-out", "second-in", "second-out"]

    @pytest.mark.asyncio
    async def test_ledger_hold_blocks_other_tasks(self, ledger: LimitLedger) -> None:
        caps = LimitCaps(daily=Decimal("100"))
        reserved = asyncio.Event()

        async def contender() -> None:
            await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("10"), caps, at=NOON)
            reserved.set()

        async with ledger.hold("acc-1"):
            task = asyncio.create_task(contender())
            await asyncio.sleep(0.01)
            assert not reserved.is_set()
            # inner ledger calls by the holder reuse the lock
            await ledger.check_and_reserve("acc-1", "transfer:SLE", Decimal("10"), caps, at=NOON)
        await task
        assert reserved.is_set()
