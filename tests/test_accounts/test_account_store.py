"""Tests for InMemoryAccountStore posting semantics.

Verifies:
- Multi-movement postings are all-or-nothing
- Debit floors (zero, or negative for overdraft)
- Unknown and inactive accounts
- Concurrent postings never overdraw
"""

import asyncio
from decimal import Decimal

import pytest

from policy_engine.accounts import BalanceMovement, InMemoryAccountStore
from policy_engine.exceptions import AccountNotFound, InsufficientFunds, PermissionDenied


class TestApply:
    @pytest.mark.asyncio
    async def test_transfer_with_fee(self, accounts: InMemoryAccountStore) -> None:
        balances = await accounts.apply([
            BalanceMovement("acc-1", "SLE", Decimal("-101")),
            BalanceMovement("acc-2", "SLE", Decimal("100")),
            BalanceMovement("platform-fees", "sle", Decimal("1")),
        ])

        assert balances[("acc-1", "SLE")] == Decimal("9899")
        assert balances[("acc-2", "SLE")] == Decimal("600")
        assert await accounts.get_balance("platform-fees", "SLE") == Decimal("1")

    @pytest.mark.asyncio
    async def test_failed_leg_leaves_nothing_applied(self, accounts: InMemoryAccountStore) -> None:
        with pytest.raises(InsufficientFunds):
            await accounts.apply([
                BalanceMovement("acc-2", "SLE", Decimal("100")),
                BalanceMovement("acc-2", "USD", Decimal("-1")),
            ])

        assert await accounts.get_balance("acc-2", "SLE") == Decimal("500")
        assert await accounts.get_balance("acc-2", "USD") == Decimal("0")

    @pytest.mark.asyncio
    async def test_movements_on_same_balance_accumulate(
        self, accounts: InMemoryAccountStore
    ) -> None:
        # second debit is checked against the projected balance
        with pytest.raises(InsufficientFunds):
            await accounts.apply([
                BalanceMovement("acc-2", "SLE", Decimal("-300")),
                BalanceMovement("acc-2", "SLE", Decimal("-300")),
            ])
        assert await accounts.get_balance("acc-2", "SLE") == Decimal("500")

    @pytest.mark.asyncio
    async def test_overdraft_floor(self, accounts: InMemoryAccountStore) -> None:
        await accounts.apply([BalanceMovement("acc-2", "SLE", Decimal("-550"), floor=Decimal("-100"))])
        assert await accounts.get_balance("acc-2", "SLE") == Decimal("-50")

        with pytest.raises(InsufficientFunds):
            await accounts.apply([
                BalanceMovement("acc-2", "SLE", Decimal("-50.01"), floor=Decimal("-100"))
            ])

    @pytest.mark.asyncio
    async def test_debit_exactly_to_floor(self, accounts: InMemoryAccountStore) -> None:
        await accounts.apply([BalanceMovement("acc-2", "SLE", Decimal("-500"))])
        assert await accounts.get_balance("acc-2", "SLE") == Decimal("0")


class TestAccountErrors:
    @pytest.mark.asyncio
    async def test_unknown_account(self, accounts: InMemoryAccountStore) -> None:
        with pytest.raises(AccountNotFound):
            await accounts.get_balance("ghost", "SLE")
        with pytest.raises(AccountNotFound):
            await accounts.apply([BalanceMovement("ghost", "SLE", Decimal("1"))])

    @pytest.mark.asyncio
    async def test_unknown_currency(self, accounts: InMemoryAccountStore) -> None:
        with pytest.raises(AccountNotFound):
            await accounts.apply([BalanceMovement("acc-1", "EUR", Decimal("1"))])

    @pytest.mark.asyncio
    async def test_inactive_account(self, accounts: InMemoryAccountStore) -> None:
        accounts.set_active("acc-2", False)
        with pytest.raises(PermissionDenied):
            await accounts.apply([
                BalanceMovement("acc-1", "SLE", Decimal("-10")),
                BalanceMovement("acc-2", "SLE", Decimal("10")),
            ])
        assert await accounts.get_balance("acc-1", "SLE") == Decimal("10000")

    @pytest.mark.asyncio
    async def test_timezone(self) -> None:
        store = InMemoryAccountStore()
        store.open_account("acc-tz", {"SLE": Decimal("0")}, timezone="Africa/Lagos")
        assert await store.get_timezone("acc-tz") == "Africa/Lagos"


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overdraw(self) -> None:
        store = InMemoryAccountStore()
        store.open_account("a", {"SLE": Decimal("100")})
        store.open_account("b", {"SLE": Decimal("100")})

        async def move(src: str, dst: str) -> bool:
            try:
                await store.apply([
                    BalanceMovement(src, "SLE", Decimal("-30")),
                    BalanceMovement(dst, "SLE", Decimal("30")),
                ])
            except InsufficientFunds:
                return False
            return True

        results = await asyncio.gather(*(move("a", "b") for _ in range(5)), move("b", "a"))

        assert sum(results[:5]) <= 4
        total = await store.get_balance("a", "SLE") + await store.get_balance("b", "SLE")
        assert total == Decimal("200")
        assert await store.get_balance("a", "SLE") >= Decimal("0")
        assert await store.get_balance("b", "SLE") >= Decimal("0")
