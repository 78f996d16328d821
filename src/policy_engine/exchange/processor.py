"""Currency exchange execution against an account's balances.

Exchange flow (per reference, PENDING -> COMPLETED | FAILED):
1. Resolve the active rate for the ordered pair (fail fast if missing/disabled)
2. Validate the user type's ExchangePermission (can_exchange, [min, max])
3. Reserve the amount against the permission's daily/monthly caps
4. Compute the permission-scoped fee in the source currency
5. Debit amount + fee, credit amount * effective_rate, in one posting
6. On any failure after step 3, release the reservation, then mark FAILED
7. On success, freeze the effective rate used into the completed record

The account lock is held from step 3 through the commit, so a second
exchange on the same account sees the first one's reservation and debit.
A reference that already has a record is answered from the log, never
executed again; a PENDING one left by an interrupted run is failed with
RECOVERED first.
"""

import asyncio
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from policy_engine.accounts import AccountStore, BalanceMovement
from policy_engine.config import PolicySettings
from policy_engine.data.store import ConfigStore, TransactionLog
from policy_engine.exceptions import (
    AmountOutOfRange,
    ConsistencyError,
    PermissionDenied,
    PolicyError,
    PolicyViolation,
)
from policy_engine.fees.calculator import FeeCalculator
from policy_engine.limits.ledger import LimitLedger
from policy_engine.limits.locks import KeyedLocks
from policy_engine.logging import bound_operation, get_logger
from policy_engine.models import (
    RECOVERED,
    RECOVERED_MESSAGE,
    CurrencyPair,
    ExchangePermission,
    ExchangeTransaction,
    TransactionStatus,
    UserType,
    normalize_currency,
)
from policy_engine.rates.registry import RateRegistry

logger = get_logger(__name__)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class ExchangeRequest:
    """Caller's intent to convert ``amount`` of from_currency into to_currency."""

    reference: str
    account_id: str
    user_type: UserType
    from_currency: str
    to_currency: str
    amount: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_type", UserType(self.user_type))
        object.__setattr__(self, "from_currency", normalize_currency(self.from_currency))
        object.__setattr__(self, "to_currency", normalize_currency(self.to_currency))


@dataclass(frozen=True)
class ExchangeQuote:
    """Read-only preview of an exchange at current configuration."""

    from_currency: str
    to_currency: str
    from_amount: Decimal
    rate: Decimal
    margin_percentage: Decimal
    effective_rate: Decimal
    to_amount: Decimal
    fee_percentage: Decimal
    fee_amount: Decimal

    @property
    def total_debit(self) -> Decimal:
        return self.from_amount + self.fee_amount


@dataclass(frozen=True)
class Eligibility:
    """Whether a user type may exchange now, with remaining headroom."""

    allowed: bool
    reason: str | None = None
    daily_remaining: Decimal | None = None
    monthly_remaining: Decimal | None = None
    fee_percentage: Decimal | None = None


def exchange_scope(from_currency: str) -> str:
    """Ledger scope for exchanges out of ``from_currency``.

    Permission caps carry no currency, so usage is counted per source
    currency in that currency's units. A holder exchanging out of USD and
    out of SLE gets the daily and monthly caps once for each.
    """
    return f"exchange:{normalize_currency(from_currency)}"


class ExchangeProcessor:
    """Orchestrates rate, permission, limit, fee and posting for one exchange.

    Args:
        rates: Rate registry for resolving the pair.
        config_store: Source of ExchangePermission rows.
        ledger: Limit ledger for daily/monthly caps.
        accounts: External account store that applies the posting.
        transaction_log: Reference-keyed record store (idempotency).
        settings: Posting precision and fee account.
        reference_locks: Lock registry serializing work per reference.
    """

    def __init__(
        self,
        rates: RateRegistry,
        config_store: ConfigStore,
        ledger: LimitLedger,
        accounts: AccountStore,
        transaction_log: TransactionLog,
        settings: PolicySettings | None = None,
        reference_locks: KeyedLocks | None = None,
    ) -> None:
        self._rates = rates
        self._config = config_store
        self._ledger = ledger
        self._accounts = accounts
        self._log = transaction_log
        self._settings = settings or PolicySettings()
        self._reference_locks = reference_locks or KeyedLocks()

    # ──────────────────────────────────────────────
    # Amount helpers
    # ──────────────────────────────────────────────

    def _fee(self, amount: Decimal, percentage: Decimal) -> Decimal:
        fee = FeeCalculator.percentage_fee(amount, percentage)
        return fee.quantize(self._settings.amount_quantum, rounding=ROUND_HALF_UP)

    def _converted(self, amount: Decimal, effective_rate: Decimal) -> Decimal:
        # never credit more than the computed conversion
        return (amount * effective_rate).quantize(
            self._settings.amount_quantum, rounding=ROUND_DOWN
        )

    def _frozen_rate(self, effective_rate: Decimal) -> Decimal:
        return effective_rate.quantize(self._settings.rate_quantum, rounding=ROUND_HALF_UP)

    # ──────────────────────────────────────────────
    # Read-only previews
    # ──────────────────────────────────────────────

    async def quote(
        self,
        from_currency: str,
        to_currency: str,
        amount: Decimal,
        user_type: UserType | None = None,
    ) -> ExchangeQuote:
        """Preview an exchange. Without a user type (or permission row) no fee applies.

        Raises:
            RateNotConfigured, RateInactive: If the pair cannot be exchanged.
        """
        rate = await self._rates.resolve(from_currency, to_currency)
        fee_percentage = _ZERO
        if user_type is not None:
            permission = await self._config.get_permission(UserType(user_type))
            if permission is not None:
                fee_percentage = permission.fee_percentage
        effective = self._frozen_rate(rate.effective_rate)
        return ExchangeQuote(
            from_currency=rate.from_currency,
            to_currency=rate.to_currency,
            from_amount=amount,
            rate=rate.rate,
            margin_percentage=rate.margin_percentage,
            effective_rate=effective,
            to_amount=self._converted(amount, effective),
            fee_percentage=fee_percentage,
            fee_amount=self._fee(amount, fee_percentage),
        )

    async def eligibility(
        self,
        account_id: str,
        user_type: UserType,
        from_currency: str,
        amount: Decimal | None = None,
    ) -> Eligibility:
        """Report whether an exchange of ``amount`` would pass permission and limits.

        Nothing is reserved; a later execute() re-checks atomically.
        """
        permission = await self._config.get_permission(UserType(user_type))
        if permission is None:
            return Eligibility(
                allowed=False,
                reason="No exchange permission configured for this account type",
            )
        if not permission.can_exchange:
            return Eligibility(
                allowed=False,
                reason="Exchange is not enabled for this account type",
                fee_percentage=permission.fee_percentage,
            )

        tz = await self._accounts.get_timezone(account_id)
        remaining = await self._ledger.remaining(
            account_id, exchange_scope(from_currency), permission.caps(), tz=tz
        )
        result = dict(
            daily_remaining=remaining.daily,
            monthly_remaining=remaining.monthly,
            fee_percentage=permission.fee_percentage,
        )

        if amount is not None:
            reason = self._range_violation(permission, amount)
            if reason is None and remaining.daily is not None and amount > remaining.daily:
                reason = "Daily exchange limit exceeded"
            if reason is None and remaining.monthly is not None and amount > remaining.monthly:
                reason = "Monthly exchange limit exceeded"
            if reason is not None:
                return Eligibility(allowed=False, reason=reason, **result)

        return Eligibility(allowed=True, **result)

    @staticmethod
    def _range_violation(permission: ExchangePermission, amount: Decimal) -> str | None:
        if amount <= _ZERO:
            return "Amount must be positive"
        if permission.min_amount is not None and amount < permission.min_amount:
            return f"Minimum exchange amount is {permission.min_amount}"
        if permission.max_amount is not None and amount > permission.max_amount:
            return f"Maximum exchange amount is {permission.max_amount}"
        return None

    # ──────────────────────────────────────────────
    # Execution
    # ──────────────────────────────────────────────

    async def execute(self, request: ExchangeRequest) -> ExchangeTransaction:
        """Execute an exchange, or return the existing record for its reference.

        Policy and configuration failures are returned as a FAILED record
        carrying the error code. Consistency failures are recorded and
        re-raised.
        """
        async with self._reference_locks.hold(f"exchange:{request.reference}"):
            existing = await self._log.get_exchange(request.reference)
            if existing is not None and existing.status == TransactionStatus.PENDING:
                # left behind by a process that died mid-execution
                existing = existing.fail(RECOVERED, RECOVERED_MESSAGE)
                await self._log.save_exchange(existing)
                logger.warning(
                    "exchange_recovered",
                    reference=request.reference,
                    account_id=existing.account_id,
                )
            if existing is not None:
                logger.info(
                    "exchange_duplicate_reference",
                    reference=request.reference,
                    status=existing.status.value,
                )
                return existing

            with bound_operation(reference=request.reference, account_id=request.account_id):
                pending = ExchangeTransaction(
                    reference=request.reference,
                    account_id=request.account_id,
                    user_type=request.user_type,
                    from_currency=request.from_currency,
                    to_currency=request.to_currency,
                    from_amount=request.amount,
                )
                await self._log.save_exchange(pending)

                try:
                    completed = await self._run(request, pending)
                except PolicyError as exc:
                    failed = pending.fail(exc.code, str(exc))
                    await self._log.save_exchange(failed)
                    if isinstance(exc, PolicyViolation):
                        logger.info("exchange_refused", code=exc.code, reason=str(exc))
                    elif isinstance(exc, ConsistencyError):
                        logger.critical("exchange_inconsistent", code=exc.code, reason=str(exc))
                        raise
                    else:
                        logger.warning("exchange_unavailable", code=exc.code, reason=str(exc))
                    return failed
                except asyncio.CancelledError:
                    await self._log.save_exchange(pending.fail("CANCELLED", "Caller cancelled"))
                    raise
                except Exception as exc:
                    await self._log.save_exchange(pending.fail("INTERNAL_ERROR", str(exc)))
                    logger.error("exchange_failed", error=str(exc), exc_info=True)
                    raise

                await self._log.save_exchange(completed)
                logger.info(
                    "exchange_completed",
                    pair=f"{completed.from_currency}/{completed.to_currency}",
                    from_amount=str(completed.from_amount),
                    to_amount=str(completed.to_amount),
                    exchange_rate=str(completed.exchange_rate),
                    fee_amount=str(completed.fee_amount),
                )
                return completed

    async def _run(
        self, request: ExchangeRequest, pending: ExchangeTransaction
    ) -> ExchangeTransaction:
        # 1. Resolve rate
        pair = CurrencyPair(request.from_currency, request.to_currency)
        rate = await self._rates.resolve(pair.from_currency, pair.to_currency)

        # 2. Permission for the initiating user type (absent row = denied)
        permission = await self._config.get_permission(request.user_type)
        if permission is None:
            raise PermissionDenied(
                f"No exchange permission configured for {request.user_type.value}"
            )
        if not permission.can_exchange:
            raise PermissionDenied(f"Exchange is not enabled for {request.user_type.value}")
        violation = self._range_violation(permission, request.amount)
        if violation is not None:
            raise AmountOutOfRange(violation)

        tz = await self._accounts.get_timezone(request.account_id)

        async with self._ledger.hold(request.account_id):
            # 3. Reserve against the permission's caps
            reservation = await self._ledger.check_and_reserve(
                request.account_id,
                exchange_scope(pair.from_currency),
                request.amount,
                permission.caps(),
                tz=tz,
            )
            try:
                # 4. Permission-scoped fee, in the source currency
                fee = self._fee(request.amount, permission.fee_percentage)

                # 5. One posting: debit principal + fee, credit converted amount
                effective_rate = self._frozen_rate(rate.effective_rate)
                to_amount = self._converted(request.amount, effective_rate)
                movements = [
                    BalanceMovement(
                        request.account_id, pair.from_currency, -(request.amount + fee)
                    ),
                    BalanceMovement(request.account_id, pair.to_currency, to_amount),
                ]
                if fee > _ZERO and self._settings.fee_account_id:
                    movements.append(
                        BalanceMovement(self._settings.fee_account_id, pair.from_currency, fee)
                    )
                await self._accounts.apply(movements)
                await self._ledger.commit(reservation)
            except BaseException:
                # 6. Compensate before the record is marked FAILED
                await self._ledger.release(reservation)
                raise

        # 7. Freeze the rate actually used
        return pending.complete(
            to_amount=to_amount, exchange_rate=effective_rate, fee_amount=fee
        )
