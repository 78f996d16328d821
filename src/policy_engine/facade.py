"""Single entry point for quotes, exchanges, transfers and card transactions.

Consumers:
- admin console: read-only quotes and configuration upserts
- account service: execute_exchange / execute_transfer
- card authorization path: authorize_card_transaction / settle_card_transaction

Every money movement is keyed by a caller-supplied reference. A reference
that already has a record returns that record; it is never executed twice.
Configuration is read from the store on every call.
"""

import asyncio
from dataclasses import dataclass, replace
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from policy_engine.accounts import AccountStore, BalanceMovement
from policy_engine.cards.models import (
    ApproveAsInstallment,
    CardAuthorization,
    CardProgram,
    Decision,
    Decline,
    IssuedCard,
)
from policy_engine.cards.policy import CardFeaturePolicy
from policy_engine.config import LedgerSettings, PolicySettings
from policy_engine.data.store import ConfigStore, TransactionLog
from policy_engine.exceptions import (
    AmountOutOfRange,
    ConsistencyError,
    FeeConfigMissing,
    InvalidConfiguration,
    LimitNotConfigured,
    PermissionDenied,
    PolicyError,
    PolicyViolation,
    TransactionNotFound,
)
from policy_engine.exchange.processor import (
    Eligibility,
    ExchangeProcessor,
    ExchangeQuote,
    ExchangeRequest,
)
from policy_engine.fees.calculator import FeeCalculator
from policy_engine.limits.ledger import LimitLedger
from policy_engine.limits.locks import KeyedLocks
from policy_engine.logging import bound_operation, get_logger
from policy_engine.models import (
    RECOVERED,
    RECOVERED_MESSAGE,
    ExchangeTransaction,
    Fee,
    LimitTier,
    Page,
    TransactionStatus,
    TransferRecord,
    UserType,
    normalize_currency,
)
from policy_engine.rates.registry import RateRegistry

logger = get_logger(__name__)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class TransferRequest:
    """Same-currency movement of ``amount`` between two accounts."""

    reference: str
    source_account_id: str
    destination_account_id: str
    user_type: LimitTier
    currency: str
    amount: Decimal
    transaction_type: str = "transfer"

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_type", LimitTier(self.user_type))
        object.__setattr__(self, "currency", normalize_currency(self.currency))
        object.__setattr__(self, "transaction_type", self.transaction_type.strip().lower())


@dataclass(frozen=True)
class CardTransactionRequest:
    """A purchase on an issued card, debited from the card's account."""

    reference: str
    card: IssuedCard
    user_type: UserType
    currency: str
    amount: Decimal
    use_bnpl: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_type", UserType(self.user_type))
        object.__setattr__(self, "currency", normalize_currency(self.currency))


class PolicyFacade:
    """Composes rates, fees, limits and card policy over the account store.

    Args:
        config_store: Versioned configuration rows.
        transaction_log: Reference-keyed transaction records.
        accounts: External account store applying balance movements.
        settings: Policy settings (fail-closed fees, precision, platform accounts).
        ledger_settings: Limit window settings, used when no ledger is given.
        ledger: Limit ledger; a fresh in-memory ledger by default.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        transaction_log: TransactionLog,
        accounts: AccountStore,
        settings: PolicySettings | None = None,
        ledger_settings: LedgerSettings | None = None,
        ledger: LimitLedger | None = None,
    ) -> None:
        self._config = config_store
        self._log = transaction_log
        self._accounts = accounts
        self._settings = settings or PolicySettings()
        self._ledger = ledger or LimitLedger(ledger_settings)
        self._reference_locks = KeyedLocks()

        self.rates = RateRegistry(config_store)
        self.fees = FeeCalculator(config_store)
        self.cards = CardFeaturePolicy()
        self._exchange = ExchangeProcessor(
            rates=self.rates,
            config_store=config_store,
            ledger=self._ledger,
            accounts=accounts,
            transaction_log=transaction_log,
            settings=self._settings,
            reference_locks=self._reference_locks,
        )

    @property
    def ledger(self) -> LimitLedger:
        return self._ledger

    @property
    def config(self) -> ConfigStore:
        return self._config

    def _quantize(self, value: Decimal, rounding: str = ROUND_HALF_UP) -> Decimal:
        return value.quantize(self._settings.amount_quantum, rounding=rounding)

    # ──────────────────────────────────────────────
    # Read-only quotes
    # ──────────────────────────────────────────────

    async def quote_exchange(
        self,
        from_currency: str,
        to_currency: str,
        amount: Decimal,
        user_type: UserType | None = None,
    ) -> ExchangeQuote:
        return await self._exchange.quote(from_currency, to_currency, amount, user_type)

    async def quote_fee(self, amount: Decimal, currency: str, transaction_type: str) -> Fee:
        """Fee a movement of ``amount`` would incur under the active fee table."""
        fee = await self._table_fee(amount, currency, transaction_type)
        return Fee(
            amount=self._quantize(fee.amount),
            currency=fee.currency,
            transaction_type=fee.transaction_type,
            waived=fee.waived,
        )

    async def check_exchange_eligibility(
        self,
        account_id: str,
        user_type: UserType,
        from_currency: str,
        amount: Decimal | None = None,
    ) -> Eligibility:
        return await self._exchange.eligibility(account_id, user_type, from_currency, amount)

    async def list_exchanges(
        self, account_id: str | None = None, page: int = 1, limit: int = 20
    ) -> Page[ExchangeTransaction]:
        return await self._log.list_exchanges(account_id=account_id, page=page, limit=limit)

    async def _table_fee(self, amount: Decimal, currency: str, transaction_type: str) -> Fee:
        try:
            return await self.fees.compute_fee(amount, currency, transaction_type)
        except FeeConfigMissing:
            if self._settings.fail_closed_on_missing_fee:
                raise
            logger.warning(
                "fee_config_missing_fail_open",
                transaction_type=transaction_type,
                currency=currency,
            )
            return Fee(
                amount=_ZERO,
                currency=normalize_currency(currency),
                transaction_type=transaction_type,
            )

    # ──────────────────────────────────────────────
    # Exchanges
    # ──────────────────────────────────────────────

    async def execute_exchange(self, request: ExchangeRequest) -> ExchangeTransaction:
        return await self._exchange.execute(request)

    # ──────────────────────────────────────────────
    # Transfers
    # ──────────────────────────────────────────────

    async def execute_transfer(self, request: TransferRequest) -> TransferRecord:
        """Execute a same-currency transfer, or return the record for its reference.

        Policy and configuration failures come back as a FAILED record. A
        PENDING record left by an interrupted run is failed with RECOVERED
        rather than re-executed.
        """
        async with self._reference_locks.hold(f"transfer:{request.reference}"):
            existing = await self._log.get_transfer(request.reference)
            if existing is not None and existing.status == TransactionStatus.PENDING:
                existing = existing.fail(RECOVERED, RECOVERED_MESSAGE)
                await self._log.save_transfer(existing)
                logger.warning(
                    "transfer_recovered",
                    reference=request.reference,
                    account_id=existing.source_account_id,
                )
            if existing is not None:
                logger.info(
                    "transfer_duplicate_reference",
                    reference=request.reference,
                    status=existing.status.value,
                )
                return existing

            with bound_operation(
                reference=request.reference, account_id=request.source_account_id
            ):
                pending = TransferRecord(
                    reference=request.reference,
                    source_account_id=request.source_account_id,
                    destination_account_id=request.destination_account_id,
                    user_type=request.user_type,
                    currency=request.currency,
                    amount=request.amount,
                    transaction_type=request.transaction_type,
                )
                await self._log.save_transfer(pending)

                try:
                    completed = await self._run_transfer(request, pending)
                except PolicyError as exc:
                    failed = pending.fail(exc.code, str(exc))
                    await self._log.save_transfer(failed)
                    self._log_failure("transfer", exc)
                    if isinstance(exc, ConsistencyError):
                        raise
                    return failed
                except asyncio.CancelledError:
                    await self._log.save_transfer(pending.fail("CANCELLED", "Caller cancelled"))
                    raise
                except Exception as exc:
                    await self._log.save_transfer(pending.fail("INTERNAL_ERROR", str(exc)))
                    logger.error("transfer_failed", error=str(exc), exc_info=True)
                    raise

                await self._log.save_transfer(completed)
                logger.info(
                    "transfer_completed",
                    destination_account_id=completed.destination_account_id,
                    currency=completed.currency,
                    amount=str(completed.amount),
                    fee_amount=str(completed.fee_amount),
                )
                return completed

    async def _run_transfer(
        self, request: TransferRequest, pending: TransferRecord
    ) -> TransferRecord:
        if request.source_account_id == request.destination_account_id:
            raise PermissionDenied("Cannot transfer to the same account")
        if request.amount <= _ZERO:
            raise AmountOutOfRange(f"Amount must be positive, got {request.amount}")

        limit = await self._config.get_transfer_limit(request.user_type, request.currency)
        if limit is None or not limit.is_active:
            raise LimitNotConfigured(
                f"No active transfer limit for {request.user_type.value}/{request.currency}"
            )
        if request.amount < limit.min_amount:
            raise AmountOutOfRange(
                f"Minimum transfer amount is {limit.min_amount} {request.currency}"
            )

        fee = await self._table_fee(request.amount, request.currency, request.transaction_type)
        fee_amount = self._quantize(fee.amount)
        tz = await self._accounts.get_timezone(request.source_account_id)

        async with self._ledger.hold(request.source_account_id):
            reservation = await self._ledger.check_and_reserve(
                request.source_account_id,
                f"transfer:{request.currency}",
                request.amount,
                limit.caps(),
                tz=tz,
            )
            try:
                movements = [
                    BalanceMovement(
                        request.source_account_id,
                        request.currency,
                        -(request.amount + fee_amount),
                    ),
                    BalanceMovement(
                        request.destination_account_id, request.currency, request.amount
                    ),
                ]
                movements.extend(self._fee_credit(request.currency, fee_amount))
                await self._accounts.apply(movements)
                await self._ledger.commit(reservation)
            except BaseException:
                await self._ledger.release(reservation)
                raise

        return pending.complete(fee_amount=fee_amount)

    def _fee_credit(self, currency: str, fee_amount: Decimal) -> list[BalanceMovement]:
        if fee_amount > _ZERO and self._settings.fee_account_id:
            return [BalanceMovement(self._settings.fee_account_id, currency, fee_amount)]
        return []

    @staticmethod
    def _log_failure(kind: str, exc: PolicyError) -> None:
        if isinstance(exc, PolicyViolation):
            logger.info(f"{kind}_refused", code=exc.code, reason=str(exc))
        elif isinstance(exc, ConsistencyError):
            logger.critical(f"{kind}_inconsistent", code=exc.code, reason=str(exc))
        else:
            logger.warning(f"{kind}_unavailable", code=exc.code, reason=str(exc))

    # ──────────────────────────────────────────────
    # Cards
    # ──────────────────────────────────────────────

    async def issue_card(
        self, card_id: str, account_id: str, program_id: str, kyc_level: int = 1
    ) -> IssuedCard:
        """Snapshot the stored program's current terms onto a card.

        Raises:
            InvalidConfiguration: If the program is unknown or inactive.
        """
        program = await self._config.get_card_program(program_id)
        if program is None:
            raise InvalidConfiguration(f"Card program {program_id} not found")
        return IssuedCard.issue(card_id, account_id, program, kyc_level=kyc_level)

    async def _card_fee(self, card: IssuedCard, amount: Decimal, currency: str) -> Fee:
        # waiver > program terms > fee table
        if self.cards.is_fee_waived(card):
            return FeeCalculator.waived(currency, "card")
        terms = self.cards.fee_terms(card, currency)
        if terms is not None:
            return FeeCalculator.apply_config(terms, amount)
        return await self._table_fee(amount, currency, "card")

    async def authorize_card_transaction(
        self, request: CardTransactionRequest
    ) -> CardAuthorization:
        """Evaluate and, when approved, post a card transaction.

        Declines (policy decisions and limit or funds refusals) are COMPLETED
        records carrying a Decline. Configuration problems produce a FAILED
        record. A BNPL approval reserves limit capacity but moves no balance;
        its principal is amount plus fee, and the installment plan built on
        it is the caller's to create.
        """
        async with self._reference_locks.hold(f"card:{request.reference}"):
            existing = await self._log.get_card_authorization(request.reference)
            if existing is not None:
                logger.info("card_duplicate_reference", reference=request.reference)
                return existing

            card = request.card
            with bound_operation(
                reference=request.reference, card_id=card.card_id, account_id=card.account_id
            ):
                try:
                    authorization = await self._run_card(request)
                except PolicyViolation as exc:
                    self._log_failure("card", exc)
                    authorization = self._card_record(request, Decline(exc.code))
                except ConsistencyError as exc:
                    self._log_failure("card", exc)
                    await self._log.save_card_authorization(
                        self._card_failure(request, exc.code, str(exc))
                    )
                    raise
                except PolicyError as exc:
                    self._log_failure("card", exc)
                    authorization = self._card_failure(request, exc.code, str(exc))

                await self._log.save_card_authorization(authorization)
                logger.info(
                    "card_authorization_recorded",
                    decision=type(authorization.decision).__name__,
                    amount=str(authorization.amount),
                    fee_amount=str(authorization.fee_amount),
                    status=authorization.status.value,
                )
                return authorization

    def _card_record(
        self,
        request: CardTransactionRequest,
        decision: Decision,
        fee_amount: Decimal = _ZERO,
        cashback_amount: Decimal = _ZERO,
    ) -> CardAuthorization:
        return CardAuthorization(
            reference=request.reference,
            card_id=request.card.card_id,
            account_id=request.card.account_id,
            user_type=request.user_type,
            currency=request.currency,
            amount=request.amount,
            decision=decision,
            fee_amount=fee_amount,
            cashback_amount=cashback_amount,
        )

    def _card_failure(
        self, request: CardTransactionRequest, code: str, message: str
    ) -> CardAuthorization:
        return replace(
            self._card_record(request, Decline(code)),
            status=TransactionStatus.FAILED,
            error_code=code,
            error_message=message,
        )

    async def _run_card(self, request: CardTransactionRequest) -> CardAuthorization:
        card = request.card
        account_id = card.account_id

        fee = await self._card_fee(card, request.amount, request.currency)
        fee_amount = self._quantize(fee.amount)
        total = request.amount + fee_amount
        cashback_amount = self._quantize(
            self.cards.cashback(card, request.amount), rounding=ROUND_DOWN
        )
        transfer_limit = await self._config.get_transfer_limit(
            LimitTier.of(request.user_type), request.currency
        )
        caps = self.cards.limit_caps(card, transfer_limit)
        tz = await self._accounts.get_timezone(account_id)

        async with self._ledger.hold(account_id):
            balance = await self._accounts.get_balance(account_id, request.currency)
            decision = self.cards.evaluate(card, total, balance, use_bnpl=request.use_bnpl)
            if isinstance(decision, Decline):
                return self._card_record(request, decision, fee_amount=fee_amount)

            reservation = await self._ledger.check_and_reserve(
                account_id, f"card:{request.currency}", request.amount, caps, tz=tz
            )
            try:
                # an installment principal already carries the fee
                if not isinstance(decision, ApproveAsInstallment):
                    movements = [
                        BalanceMovement(
                            account_id,
                            request.currency,
                            -total,
                            floor=self.cards.balance_floor(card),
                        )
                    ]
                    movements.extend(self._fee_credit(request.currency, fee_amount))
                    await self._accounts.apply(movements)
                await self._ledger.commit(reservation)
            except BaseException:
                await self._ledger.release(reservation)
                raise

        return self._card_record(
            request, decision, fee_amount=fee_amount, cashback_amount=cashback_amount
        )

    async def settle_card_transaction(self, reference: str) -> CardAuthorization:
        """Mark an approved authorization settled and credit its cashback once.

        Settling an already settled authorization returns it unchanged.

        Raises:
            TransactionNotFound: If no authorization exists for the reference.
            TransactionImmutable: If the authorization was declined or failed.
        """
        async with self._reference_locks.hold(f"card:{reference}"):
            authorization = await self._log.get_card_authorization(reference)
            if authorization is None:
                raise TransactionNotFound(f"No card authorization for reference {reference}")
            if authorization.settled:
                return authorization

            settled = authorization.settle()
            if settled.cashback_amount > _ZERO:
                movements = [
                    BalanceMovement(
                        settled.account_id, settled.currency, settled.cashback_amount
                    )
                ]
                if self._settings.cashback_account_id:
                    movements.append(
                        BalanceMovement(
                            self._settings.cashback_account_id,
                            settled.currency,
                            -settled.cashback_amount,
                        )
                    )
                await self._accounts.apply(movements)

            await self._log.save_card_authorization(settled)
            logger.info(
                "card_settled",
                reference=reference,
                account_id=settled.account_id,
                cashback_amount=str(settled.cashback_amount),
            )
            return settled

    # ──────────────────────────────────────────────
    # Configuration
    # ──────────────────────────────────────────────

    async def save_card_program(self, program: CardProgram) -> CardProgram:
        await self._config.save_card_program(program)
        logger.info("card_program_saved", program_id=program.id, features=len(program.features))
        return program
